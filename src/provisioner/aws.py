"""boto3 implementation of the provider contract.

One handler per resource kind, each speaking to a single service client.
Every AwsProvider owns its session and clients; add-on workers each build
their own provider through the factory returned by ``provider_factory``.

Error mapping:
- A not-found code from a describe call raises ResourceNotFound
- A not-found code from a delete call means the resource is already gone
- Every other ClientError, BotoCoreError or WaiterError raises ProviderError

Transient failures (throttling, 5xx) are retried by botocore's standard
retry mode before they surface here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .config import (
    DEFAULT_ADDON_TIMEOUT_SECONDS,
    DEFAULT_API_MAX_ATTEMPTS,
    DEFAULT_CLUSTER_TIMEOUT_SECONDS,
    WAITER_DELAY_SECONDS,
)
from .credentials import build_client_config, create_session
from .documents import GITHUB_OIDC_AUDIENCE
from .errors import ProviderError, ResourceNotFound
from .models import AddonStatus, ResourceDescriptor, ResourceKind, ResourceSpec, SubnetTier
from .provider import ProviderFactory, ProviderRecord

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "NoSuchEntity",
        "RepositoryNotFoundException",
    }
)

# Kubernetes load-balancer discovery tags per subnet tier
ELB_ROLE_TAGS = {
    SubnetTier.PUBLIC.value: "kubernetes.io/role/elb",
    SubnetTier.PRIVATE.value: "kubernetes.io/role/internal-elb",
}

DEFAULT_ROUTE_CIDR = "0.0.0.0/0"

VPC_DNS_ATTRIBUTES = (
    ("enableDnsSupport", "EnableDnsSupport"),
    ("enableDnsHostnames", "EnableDnsHostnames"),
)


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def is_not_found(exc: ClientError) -> bool:
    code = error_code(exc)
    return code in NOT_FOUND_CODES or code.endswith(".NotFound")


@contextmanager
def api_errors(operation: str, kind: ResourceKind, *, absence: bool = False) -> Iterator[None]:
    """Translate botocore exceptions into the provider contract."""
    try:
        yield
    except ClientError as e:
        if absence and is_not_found(e):
            raise ResourceNotFound(f"{kind.value} not found ({error_code(e)})") from e
        raise ProviderError(f"{operation} {kind.value} failed: {e}", code=error_code(e)) from e
    except WaiterError as e:
        raise ProviderError(f"waiting for {kind.value} failed: {e}", code="WaiterError") from e
    except BotoCoreError as e:
        raise ProviderError(f"{operation} {kind.value} failed: {e}") from e


def tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def tag_specifications(resource_type: str, tags: Mapping[str, str]) -> list[dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": tag_list(tags)}]


def ec2_filters(filters: Mapping[str, str]) -> list[dict[str, Any]]:
    return [{"Name": name, "Values": [value]} for name, value in sorted(filters.items())]


def record(resource_id: str, status: str, **attributes: Any) -> ProviderRecord:
    return {"id": resource_id, "status": status, "attributes": attributes}


class _Handler:
    """Base handler: create-or-leave kinds without sub-resources."""

    kind: ResourceKind

    def __init__(self, provider: AwsProvider) -> None:
        self.provider = provider

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        raise NotImplementedError

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        raise NotImplementedError

    def update(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ProviderRecord:
        raise ProviderError(f"{self.kind.value} does not support in-place update")

    def delete(self, descriptor: ResourceDescriptor) -> None:
        raise NotImplementedError

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        return []

    def remove_dependents(self, descriptor: ResourceDescriptor) -> list[str]:
        return []

    def _describe_one(self, filters: Mapping[str, str]) -> ProviderRecord:
        records = self.describe(filters)
        if len(records) != 1:
            raise ProviderError(
                f"{self.kind.value} {dict(filters)} not readable after create "
                f"({len(records)} matches)"
            )
        return records[0]


# =============================================================================
# Network
# =============================================================================


class NetworkHandler(_Handler):
    """VPC with DNS hostnames, an internet gateway and a default route."""

    kind = ResourceKind.NETWORK

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            vpcs = self.provider.ec2.describe_vpcs(Filters=ec2_filters(filters))["Vpcs"]
        return [
            record(vpc["VpcId"], vpc.get("State", "").upper(), cidr_block=vpc.get("CidrBlock"))
            for vpc in vpcs
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        ec2 = self.provider.ec2
        with api_errors("create", self.kind):
            vpc = ec2.create_vpc(
                CidrBlock=spec.attributes["cidr_block"],
                TagSpecifications=tag_specifications("vpc", spec.resource_tags),
            )["Vpc"]
            vpc_id = vpc["VpcId"]
            ec2.get_waiter("vpc_available").wait(
                VpcIds=[vpc_id], WaiterConfig=self.provider.waiter_config()
            )
            added = self._ensure(spec, vpc_id)

        logger.debug("Created VPC", extra={"vpc_id": vpc_id, "added": added})
        return record(vpc_id, "AVAILABLE", cidr_block=spec.attributes["cidr_block"])

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        with api_errors("ensure dependents of", self.kind):
            return self._ensure(spec, descriptor.resource_id)

    def _ensure(self, spec: ResourceSpec, vpc_id: str) -> list[str]:
        ec2 = self.provider.ec2
        added = []
        for attribute, key in VPC_DNS_ATTRIBUTES:
            current = ec2.describe_vpc_attribute(VpcId=vpc_id, Attribute=attribute)
            if not current.get(key, {}).get("Value"):
                ec2.modify_vpc_attribute(VpcId=vpc_id, **{key: {"Value": True}})
                added.append(f"attribute/{attribute}")

        gateway_id = self._attached_gateway(vpc_id)
        if gateway_id is None:
            gateway_id = self._detached_gateway(spec.name)
            if gateway_id is None:
                gateway_id = ec2.create_internet_gateway(
                    TagSpecifications=tag_specifications("internet-gateway", spec.resource_tags),
                )["InternetGateway"]["InternetGatewayId"]
            ec2.attach_internet_gateway(InternetGatewayId=gateway_id, VpcId=vpc_id)
            added.append(f"internet-gateway/{gateway_id}")

        route_tables = ec2.describe_route_tables(
            Filters=ec2_filters({"vpc-id": vpc_id, "association.main": "true"})
        )["RouteTables"]
        for table in route_tables:
            routes = table.get("Routes", [])
            if any(route.get("DestinationCidrBlock") == DEFAULT_ROUTE_CIDR for route in routes):
                continue
            ec2.create_route(
                RouteTableId=table["RouteTableId"],
                DestinationCidrBlock=DEFAULT_ROUTE_CIDR,
                GatewayId=gateway_id,
            )
            added.append(f"route/{table['RouteTableId']}")
        return added

    def _attached_gateway(self, vpc_id: str) -> str | None:
        gateways = self.provider.ec2.describe_internet_gateways(
            Filters=ec2_filters({"attachment.vpc-id": vpc_id})
        )["InternetGateways"]
        return gateways[0]["InternetGatewayId"] if gateways else None

    def _detached_gateway(self, name: str) -> str | None:
        # Left behind when an earlier run failed between create and attach
        gateways = self.provider.ec2.describe_internet_gateways(
            Filters=ec2_filters({"tag:Name": name})
        )["InternetGateways"]
        for gateway in gateways:
            if not gateway.get("Attachments"):
                return gateway["InternetGatewayId"]
        return None

    def remove_dependents(self, descriptor: ResourceDescriptor) -> list[str]:
        ec2 = self.provider.ec2
        removed = []
        with api_errors("remove dependents of", self.kind):
            gateways = ec2.describe_internet_gateways(
                Filters=ec2_filters({"attachment.vpc-id": descriptor.resource_id})
            )["InternetGateways"]
            for gateway in gateways:
                gateway_id = gateway["InternetGatewayId"]
                ec2.detach_internet_gateway(
                    InternetGatewayId=gateway_id, VpcId=descriptor.resource_id
                )
                ec2.delete_internet_gateway(InternetGatewayId=gateway_id)
                removed.append(f"internet-gateway/{gateway_id}")
            detached = self._detached_gateway(descriptor.key)
            if detached is not None:
                ec2.delete_internet_gateway(InternetGatewayId=detached)
                removed.append(f"internet-gateway/{detached}")
        return removed

    def delete(self, descriptor: ResourceDescriptor) -> None:
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.ec2.delete_vpc(VpcId=descriptor.resource_id)
        except ResourceNotFound:
            pass


class SubnetHandler(_Handler):
    kind = ResourceKind.SUBNET

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            subnets = self.provider.ec2.describe_subnets(Filters=ec2_filters(filters))["Subnets"]
        return [
            record(
                subnet["SubnetId"],
                subnet.get("State", "").upper(),
                cidr_block=subnet.get("CidrBlock"),
                availability_zone=subnet.get("AvailabilityZone"),
                vpc_id=subnet.get("VpcId"),
                map_public_ip_on_launch=subnet.get("MapPublicIpOnLaunch", False),
            )
            for subnet in subnets
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        ec2 = self.provider.ec2
        tier = spec.attributes.get("tier", SubnetTier.PRIVATE.value)
        tags = {**spec.resource_tags, ELB_ROLE_TAGS[tier]: "1"}
        params: dict[str, Any] = {
            "VpcId": spec.scope["vpc-id"],
            "CidrBlock": spec.attributes["cidr_block"],
            "TagSpecifications": tag_specifications("subnet", tags),
        }
        if spec.attributes.get("availability_zone"):
            params["AvailabilityZone"] = spec.attributes["availability_zone"]

        with api_errors("create", self.kind):
            subnet_id = ec2.create_subnet(**params)["Subnet"]["SubnetId"]
            ec2.get_waiter("subnet_available").wait(
                SubnetIds=[subnet_id], WaiterConfig=self.provider.waiter_config()
            )
            self._ensure(spec, subnet_id, map_public_ip=False)
        return self._describe_one(spec.filters)

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        with api_errors("ensure dependents of", self.kind):
            return self._ensure(
                spec,
                descriptor.resource_id,
                map_public_ip=bool(descriptor.attributes.get("map_public_ip_on_launch")),
            )

    def _ensure(self, spec: ResourceSpec, subnet_id: str, map_public_ip: bool) -> list[str]:
        tier = spec.attributes.get("tier", SubnetTier.PRIVATE.value)
        if tier != SubnetTier.PUBLIC.value or map_public_ip:
            return []
        self.provider.ec2.modify_subnet_attribute(
            SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
        )
        return ["attribute/MapPublicIpOnLaunch"]

    def delete(self, descriptor: ResourceDescriptor) -> None:
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.ec2.delete_subnet(SubnetId=descriptor.resource_id)
        except ResourceNotFound:
            pass


class SecurityBoundaryHandler(_Handler):
    """Security group with the stack's ingress rules."""

    kind = ResourceKind.SECURITY_BOUNDARY

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            groups = self.provider.ec2.describe_security_groups(Filters=ec2_filters(filters))[
                "SecurityGroups"
            ]
        return [
            record(group["GroupId"], "AVAILABLE", group_name=group.get("GroupName"))
            for group in groups
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        ec2 = self.provider.ec2
        with api_errors("create", self.kind):
            group_id = ec2.create_security_group(
                GroupName=spec.name,
                Description=spec.attributes.get("description", spec.name),
                VpcId=spec.scope["vpc-id"],
                TagSpecifications=tag_specifications("security-group", spec.resource_tags),
            )["GroupId"]
            self._ensure(spec, group_id, existing=[])
        return record(group_id, "AVAILABLE", group_name=spec.name)

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        with api_errors("ensure dependents of", self.kind):
            groups = self.provider.ec2.describe_security_groups(
                GroupIds=[descriptor.resource_id]
            )["SecurityGroups"]
            existing = groups[0].get("IpPermissions", []) if groups else []
            return self._ensure(spec, descriptor.resource_id, existing)

    def _ensure(
        self, spec: ResourceSpec, group_id: str, existing: list[dict[str, Any]]
    ) -> list[str]:
        missing = [
            rule
            for rule in spec.attributes.get("ingress") or []
            if not any(_permits(permission, rule) for permission in existing)
        ]
        if not missing:
            return []
        self.provider.ec2.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[
                {
                    "IpProtocol": rule["protocol"],
                    "FromPort": rule["from_port"],
                    "ToPort": rule["to_port"],
                    "IpRanges": [{"CidrIp": rule["cidr"]}],
                }
                for rule in missing
            ],
        )
        return [
            f"ingress/{rule['protocol']}:{rule['from_port']}-{rule['to_port']}:{rule['cidr']}"
            for rule in missing
        ]

    def delete(self, descriptor: ResourceDescriptor) -> None:
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.ec2.delete_security_group(GroupId=descriptor.resource_id)
        except ResourceNotFound:
            pass


# =============================================================================
# Registry and cluster
# =============================================================================


class RegistryHandler(_Handler):
    kind = ResourceKind.REGISTRY

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            repositories = self.provider.ecr.describe_repositories(
                repositoryNames=[filters["repository-name"]]
            )["repositories"]
        return [
            record(
                repo["repositoryArn"],
                "AVAILABLE",
                name=repo["repositoryName"],
                uri=repo.get("repositoryUri"),
            )
            for repo in repositories
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        with api_errors("create", self.kind):
            repo = self.provider.ecr.create_repository(
                repositoryName=spec.name,
                imageScanningConfiguration={"scanOnPush": True},
                tags=tag_list(spec.resource_tags),
            )["repository"]
        return record(
            repo["repositoryArn"], "AVAILABLE", name=spec.name, uri=repo.get("repositoryUri")
        )

    def delete(self, descriptor: ResourceDescriptor) -> None:
        # force: images in the repository go with it
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.ecr.delete_repository(
                    repositoryName=descriptor.attributes.get("name", descriptor.key), force=True
                )
        except ResourceNotFound:
            pass


class ClusterHandler(_Handler):
    kind = ResourceKind.CLUSTER

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            cluster = self.provider.eks.describe_cluster(name=filters["cluster-name"])["cluster"]
        return [
            record(
                cluster["arn"],
                cluster.get("status", ""),
                name=cluster["name"],
                arn=cluster["arn"],
                endpoint=cluster.get("endpoint"),
                certificate_authority=(cluster.get("certificateAuthority") or {}).get("data"),
                version=cluster.get("version"),
            )
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        eks = self.provider.eks
        params: dict[str, Any] = {
            "name": spec.name,
            "roleArn": spec.attributes["role_arn"],
            "resourcesVpcConfig": {
                "subnetIds": list(spec.attributes["subnet_ids"]),
                "securityGroupIds": list(spec.attributes["security_group_ids"]),
            },
            "accessConfig": {"authenticationMode": "API_AND_CONFIG_MAP"},
            "tags": spec.resource_tags,
        }
        if spec.attributes.get("kubernetes_version"):
            params["version"] = spec.attributes["kubernetes_version"]

        with api_errors("create", self.kind):
            eks.create_cluster(**params)
            logger.info(
                "Waiting for cluster to become active",
                extra={"cluster_name": spec.name,
                       "timeout_seconds": self.provider.cluster_timeout_seconds},
            )
            eks.get_waiter("cluster_active").wait(
                name=spec.name,
                WaiterConfig=self.provider.waiter_config(self.provider.cluster_timeout_seconds),
            )
        return self._describe_one(spec.filters)

    def delete(self, descriptor: ResourceDescriptor) -> None:
        eks = self.provider.eks
        try:
            with api_errors("delete", self.kind, absence=True):
                eks.delete_cluster(name=descriptor.key)
        except ResourceNotFound:
            return
        with api_errors("delete", self.kind):
            eks.get_waiter("cluster_deleted").wait(
                name=descriptor.key,
                WaiterConfig=self.provider.waiter_config(self.provider.cluster_timeout_seconds),
            )


class AddonHandler(_Handler):
    kind = ResourceKind.ADDON

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            addon = self.provider.eks.describe_addon(
                clusterName=filters["cluster-name"], addonName=filters["addon-name"]
            )["addon"]
        return [self._to_record(addon)]

    @staticmethod
    def _to_record(addon: Mapping[str, Any]) -> ProviderRecord:
        issues = (addon.get("health") or {}).get("issues") or []
        return record(
            addon["addonArn"],
            AddonStatus.parse(addon.get("status")).value,
            name=addon["addonName"],
            cluster_name=addon.get("clusterName"),
            version=addon.get("addonVersion"),
            health_issues=[issue.get("code") for issue in issues],
        )

    def _params(self, spec: ResourceSpec) -> dict[str, Any]:
        params: dict[str, Any] = {
            "clusterName": spec.scope["cluster-name"],
            "addonName": spec.name,
            "resolveConflicts": "OVERWRITE",
        }
        if spec.attributes.get("version"):
            params["addonVersion"] = spec.attributes["version"]
        return params

    def _wait_active(self, spec: ResourceSpec) -> None:
        self.provider.eks.get_waiter("addon_active").wait(
            clusterName=spec.scope["cluster-name"],
            addonName=spec.name,
            WaiterConfig=self.provider.waiter_config(self.provider.addon_timeout_seconds),
        )

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        with api_errors("create", self.kind):
            self.provider.eks.create_addon(**self._params(spec), tags=spec.resource_tags)
            self._wait_active(spec)
        return self._describe_one(spec.filters)

    def update(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ProviderRecord:
        with api_errors("update", self.kind):
            self.provider.eks.update_addon(**self._params(spec))
            self._wait_active(spec)
        return self._describe_one(spec.filters)

    def delete(self, descriptor: ResourceDescriptor) -> None:
        eks = self.provider.eks
        cluster_name = descriptor.attributes["cluster_name"]
        try:
            with api_errors("delete", self.kind, absence=True):
                eks.delete_addon(clusterName=cluster_name, addonName=descriptor.key)
        except ResourceNotFound:
            return
        with api_errors("delete", self.kind):
            eks.get_waiter("addon_deleted").wait(
                clusterName=cluster_name,
                addonName=descriptor.key,
                WaiterConfig=self.provider.waiter_config(self.provider.addon_timeout_seconds),
            )


# =============================================================================
# Identity
# =============================================================================


class IdentityProviderHandler(_Handler):
    """OIDC identity provider for the CI issuer."""

    kind = ResourceKind.IDENTITY_PROVIDER

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        iam = self.provider.iam
        wanted = _strip_scheme(filters["url"])
        matches = []
        with api_errors("describe", self.kind, absence=True):
            providers = iam.list_open_id_connect_providers()["OpenIDConnectProviderList"]
            for entry in providers:
                arn = entry["Arn"]
                if not arn.endswith(f"/{wanted}"):
                    continue
                details = iam.get_open_id_connect_provider(OpenIDConnectProviderArn=arn)
                if _strip_scheme(details.get("Url", "")) == wanted:
                    matches.append(
                        record(arn, "AVAILABLE", url=wanted,
                               client_ids=details.get("ClientIDList", []))
                    )
        return matches

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        client_ids = list(spec.attributes.get("client_ids") or [GITHUB_OIDC_AUDIENCE])
        with api_errors("create", self.kind):
            arn = self.provider.iam.create_open_id_connect_provider(
                Url=spec.name,
                ClientIDList=client_ids,
                Tags=tag_list(spec.resource_tags),
            )["OpenIDConnectProviderArn"]
        return record(arn, "AVAILABLE", url=_strip_scheme(spec.name), client_ids=client_ids)

    def delete(self, descriptor: ResourceDescriptor) -> None:
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.iam.delete_open_id_connect_provider(
                    OpenIDConnectProviderArn=descriptor.resource_id
                )
        except ResourceNotFound:
            pass


class RoleHandler(_Handler):
    """Deployer role: trust document, inline permission document, managed policies."""

    kind = ResourceKind.ROLE

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            role = self.provider.iam.get_role(RoleName=filters["role-name"])["Role"]
        return [record(role["Arn"], "AVAILABLE", name=role["RoleName"], arn=role["Arn"])]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        iam = self.provider.iam
        attributes = spec.attributes
        with api_errors("create", self.kind):
            role = iam.create_role(
                RoleName=spec.name,
                AssumeRolePolicyDocument=json.dumps(attributes["trust_document"]),
                Description=attributes.get("description", f"Deployer role {spec.name}"),
                Tags=tag_list(spec.resource_tags),
            )["Role"]
            iam.get_waiter("role_exists").wait(
                RoleName=spec.name, WaiterConfig=self.provider.waiter_config()
            )
            self._ensure(spec, inline=set(), attached=set())
        return record(role["Arn"], "AVAILABLE", name=spec.name, arn=role["Arn"])

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        iam = self.provider.iam
        with api_errors("ensure dependents of", self.kind):
            inline = {
                name
                for page in iam.get_paginator("list_role_policies").paginate(RoleName=spec.name)
                for name in page["PolicyNames"]
            }
            attached = {
                policy["PolicyArn"]
                for page in iam.get_paginator("list_attached_role_policies").paginate(
                    RoleName=spec.name
                )
                for policy in page["AttachedPolicies"]
            }
            return self._ensure(spec, inline, attached)

    def _ensure(self, spec: ResourceSpec, inline: set[str], attached: set[str]) -> list[str]:
        iam = self.provider.iam
        attributes = spec.attributes
        added = []
        policy_name = attributes["permission_policy_name"]
        if policy_name not in inline:
            iam.put_role_policy(
                RoleName=spec.name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(attributes["permission_document"]),
            )
            added.append(f"inline/{policy_name}")
        for policy_arn in attributes.get("managed_policy_arns") or []:
            if policy_arn not in attached:
                iam.attach_role_policy(RoleName=spec.name, PolicyArn=policy_arn)
                added.append(f"attached/{policy_arn}")
        return added

    def remove_dependents(self, descriptor: ResourceDescriptor) -> list[str]:
        iam = self.provider.iam
        role_name = descriptor.key
        removed = []
        with api_errors("remove dependents of", self.kind):
            for page in iam.get_paginator("list_role_policies").paginate(RoleName=role_name):
                for policy_name in page["PolicyNames"]:
                    iam.delete_role_policy(RoleName=role_name, PolicyName=policy_name)
                    removed.append(f"inline/{policy_name}")
            paginator = iam.get_paginator("list_attached_role_policies")
            for page in paginator.paginate(RoleName=role_name):
                for policy in page["AttachedPolicies"]:
                    iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])
                    removed.append(f"attached/{policy['PolicyArn']}")
        return removed

    def delete(self, descriptor: ResourceDescriptor) -> None:
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.iam.delete_role(RoleName=descriptor.key)
        except ResourceNotFound:
            pass


class AccessBindingHandler(_Handler):
    """Cluster access entry for the deployer role plus its policy association."""

    kind = ResourceKind.ACCESS_BINDING

    def describe(self, filters: Mapping[str, str]) -> list[ProviderRecord]:
        with api_errors("describe", self.kind, absence=True):
            entry = self.provider.eks.describe_access_entry(
                clusterName=filters["cluster-name"], principalArn=filters["principal-arn"]
            )["accessEntry"]
        return [
            record(
                entry["accessEntryArn"],
                "AVAILABLE",
                principal_arn=entry["principalArn"],
                cluster_name=entry["clusterName"],
            )
        ]

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        eks = self.provider.eks
        cluster_name = spec.scope["cluster-name"]
        with api_errors("create", self.kind):
            entry = eks.create_access_entry(
                clusterName=cluster_name,
                principalArn=spec.name,
                tags=spec.resource_tags,
            )["accessEntry"]
            self._ensure(spec, associated=set())
        return record(
            entry["accessEntryArn"], "AVAILABLE", principal_arn=spec.name, cluster_name=cluster_name
        )

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        with api_errors("ensure dependents of", self.kind):
            policies = self.provider.eks.list_associated_access_policies(
                clusterName=spec.scope["cluster-name"], principalArn=spec.name
            )["associatedAccessPolicies"]
            return self._ensure(spec, {policy["policyArn"] for policy in policies})

    def _ensure(self, spec: ResourceSpec, associated: set[str]) -> list[str]:
        policy_arn = spec.attributes["policy_arn"]
        if policy_arn in associated:
            return []
        self.provider.eks.associate_access_policy(
            clusterName=spec.scope["cluster-name"],
            principalArn=spec.name,
            policyArn=policy_arn,
            accessScope={"type": "cluster"},
        )
        return [f"access-policy/{policy_arn}"]

    def delete(self, descriptor: ResourceDescriptor) -> None:
        # Deleting the entry drops its policy associations
        try:
            with api_errors("delete", self.kind, absence=True):
                self.provider.eks.delete_access_entry(
                    clusterName=descriptor.attributes["cluster_name"],
                    principalArn=descriptor.key,
                )
        except ResourceNotFound:
            pass


def _strip_scheme(url: str) -> str:
    return url.split("://", 1)[-1].rstrip("/")


def _permits(permission: Mapping[str, Any], rule: Mapping[str, Any]) -> bool:
    return (
        permission.get("IpProtocol") == rule["protocol"]
        and permission.get("FromPort") == rule["from_port"]
        and permission.get("ToPort") == rule["to_port"]
        and any(r.get("CidrIp") == rule["cidr"] for r in permission.get("IpRanges", []))
    )


# =============================================================================
# Provider
# =============================================================================


HANDLERS: tuple[type[_Handler], ...] = (
    NetworkHandler,
    SubnetHandler,
    SecurityBoundaryHandler,
    RegistryHandler,
    ClusterHandler,
    AddonHandler,
    IdentityProviderHandler,
    RoleHandler,
    AccessBindingHandler,
)


class AwsProvider:
    """Provider backed by boto3 clients from one session."""

    def __init__(
        self,
        session: boto3.session.Session,
        client_config: BotoConfig | None = None,
        cluster_timeout_seconds: int = DEFAULT_CLUSTER_TIMEOUT_SECONDS,
        addon_timeout_seconds: int = DEFAULT_ADDON_TIMEOUT_SECONDS,
    ) -> None:
        client_config = client_config or build_client_config(DEFAULT_API_MAX_ATTEMPTS)
        self.ec2 = session.client("ec2", config=client_config)
        self.ecr = session.client("ecr", config=client_config)
        self.eks = session.client("eks", config=client_config)
        self.iam = session.client("iam", config=client_config)
        self.cluster_timeout_seconds = cluster_timeout_seconds
        self.addon_timeout_seconds = addon_timeout_seconds
        self._handlers = {handler.kind: handler(self) for handler in HANDLERS}

    @classmethod
    def from_config(cls, config: Config) -> AwsProvider:
        return cls(
            create_session(config.region),
            build_client_config(config.api_max_attempts),
            cluster_timeout_seconds=config.cluster_timeout_seconds,
            addon_timeout_seconds=config.addon_timeout_seconds,
        )

    def waiter_config(self, timeout_seconds: int | None = None) -> dict[str, int]:
        if timeout_seconds is None:
            return {"Delay": WAITER_DELAY_SECONDS, "MaxAttempts": 40}
        return {
            "Delay": WAITER_DELAY_SECONDS,
            "MaxAttempts": max(1, timeout_seconds // WAITER_DELAY_SECONDS),
        }

    def describe(self, kind: ResourceKind, filters: Mapping[str, str]) -> list[ProviderRecord]:
        return self._handlers[kind].describe(filters)

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        return self._handlers[spec.kind].create(spec)

    def update(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ProviderRecord:
        return self._handlers[spec.kind].update(spec, descriptor)

    def delete(self, descriptor: ResourceDescriptor) -> None:
        self._handlers[descriptor.kind].delete(descriptor)

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        return self._handlers[spec.kind].ensure_dependents(spec, descriptor)

    def remove_dependents(self, descriptor: ResourceDescriptor) -> list[str]:
        return self._handlers[descriptor.kind].remove_dependents(descriptor)


def provider_factory(config: Config) -> ProviderFactory:
    """Factory giving every caller a provider with its own session."""

    def factory() -> AwsProvider:
        return AwsProvider.from_config(config)

    return factory
