"""Pydantic models for desired and observed resource state.

These models provide:
1. Kind-tagged desired state (ResourceSpec) with a stable lookup key
2. Immutable observed state (ResourceDescriptor)
3. The YAML stack specification with validation at the boundary
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Tags stamped on every created resource. The Name tag is what makes a
# later probe find the resource again.
NAME_TAG = "Name"
MANAGED_BY_TAG = "managed-by"
MANAGED_BY_VALUE = "provisioner"
STACK_TAG = "stack"


class ResourceKind(str, Enum):
    """Resource kinds in provisioning order."""

    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_BOUNDARY = "security-boundary"
    REGISTRY = "registry"
    CLUSTER = "cluster"
    ADDON = "add-on"
    IDENTITY_PROVIDER = "identity-provider"
    ROLE = "role"
    ACCESS_BINDING = "access-binding"


class SubnetTier(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


# Filter predicate that carries each kind's identifying key
KEY_FILTERS: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: "tag:Name",
    ResourceKind.SUBNET: "tag:Name",
    ResourceKind.SECURITY_BOUNDARY: "tag:Name",
    ResourceKind.REGISTRY: "repository-name",
    ResourceKind.CLUSTER: "cluster-name",
    ResourceKind.ADDON: "addon-name",
    ResourceKind.IDENTITY_PROVIDER: "url",
    ResourceKind.ROLE: "role-name",
    ResourceKind.ACCESS_BINDING: "principal-arn",
}


class AddonStatus(str, Enum):
    """Normalized add-on health as reported by the provider."""

    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"
    CREATING = "CREATING"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> AddonStatus:
        """Map a provider status string onto the known enum.

        Anything unrecognized becomes UNKNOWN; *_FAILED variants collapse
        into FAILED.
        """
        if not raw:
            return cls.UNKNOWN
        value = raw.upper()
        if value.endswith("FAILED"):
            return cls.FAILED
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ResourceSpec(BaseModel):
    """Desired state for one resource, immutable for the run.

    ``name`` is the stable identifying key. ``scope`` carries the parent
    identifiers the lookup is constrained to (e.g. ``vpc-id`` for a
    subnet, ``cluster-name`` for an add-on).
    """

    model_config = {"frozen": True, "extra": "forbid"}

    kind: ResourceKind
    name: Annotated[str, Field(min_length=1)]
    scope: dict[str, str] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def filters(self) -> dict[str, str]:
        """Exact-match predicates that identify this resource."""
        return {KEY_FILTERS[self.kind]: self.name, **self.scope}

    @property
    def resource_tags(self) -> dict[str, str]:
        """Tags to stamp on creation, always including the Name tag."""
        return {
            **self.tags,
            MANAGED_BY_TAG: MANAGED_BY_VALUE,
            NAME_TAG: self.name,
        }

    def describe(self) -> str:
        return f"{self.kind.value}/{self.name}"


class ResourceDescriptor(BaseModel):
    """Observed state after a probe or convergence action.

    Never mutated: convergence produces a new descriptor.
    """

    model_config = {"frozen": True}

    kind: ResourceKind
    key: str
    resource_id: Annotated[str, Field(min_length=1)]
    status: str = "ACTIVE"
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def addon_status(self) -> AddonStatus:
        return AddonStatus.parse(self.status)


# =============================================================================
# Stack specification (optional YAML)
# =============================================================================


def _validate_cidr(v: str) -> str:
    try:
        ipaddress.ip_network(v, strict=True)
    except ValueError as e:
        raise ValueError(f"must be a CIDR block (e.g. 10.0.0.0/16): {e}") from e
    return v


class SubnetConfig(BaseModel):
    """Subnet placement."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cidr: str
    availability_zone: str | None = Field(None, alias="availabilityZone")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class IngressRule(BaseModel):
    """Security boundary ingress rule."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    protocol: str = "tcp"
    from_port: Annotated[int, Field(ge=-1, le=65535, alias="fromPort")]
    to_port: Annotated[int, Field(ge=-1, le=65535, alias="toPort")]
    cidr: str = "0.0.0.0/0"

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        valid = {"tcp", "udp", "icmp", "-1"}
        if v not in valid:
            raise ValueError(f"protocol must be one of {sorted(valid)}")
        return v

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class AddonConfig(BaseModel):
    """A cluster add-on to keep installed and healthy."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=100)]
    version: str | None = None


DEFAULT_ADDONS = ("vpc-cni", "coredns", "kube-proxy")
DEFAULT_ACCESS_POLICY_ARN = (
    "arn:aws:eks::aws:cluster-access-policy/AmazonEKSClusterAdminPolicy"
)


class StackSpec(BaseModel):
    """Desired shape of the stack beyond resource names.

    Every field has a default so a stack can be provisioned without a
    spec file.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    vpc_cidr: str = Field("10.0.0.0/16", alias="vpcCidr")
    public_subnet: SubnetConfig = Field(
        default_factory=lambda: SubnetConfig(cidr="10.0.1.0/24"), alias="publicSubnet"
    )
    private_subnet: SubnetConfig = Field(
        default_factory=lambda: SubnetConfig(cidr="10.0.2.0/24"), alias="privateSubnet"
    )
    ingress: list[IngressRule] = Field(
        default_factory=lambda: [IngressRule(from_port=443, to_port=443, cidr="10.0.0.0/16")]
    )
    kubernetes_version: str | None = Field(None, alias="kubernetesVersion")
    cluster_role_name: str = Field("eksClusterRole", alias="clusterRoleName")
    addons: list[AddonConfig] = Field(
        default_factory=lambda: [AddonConfig(name=name) for name in DEFAULT_ADDONS]
    )
    managed_policy_arns: list[str] = Field(default_factory=list, alias="managedPolicyArns")
    access_policy_arn: str = Field(DEFAULT_ACCESS_POLICY_ARN, alias="accessPolicyArn")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("vpc_cidr")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        return _validate_cidr(v)

    @field_validator("addons")
    @classmethod
    def validate_unique_addons(cls, v: list[AddonConfig]) -> list[AddonConfig]:
        names = [addon.name for addon in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate add-ons: {duplicates}")
        return v

    def subnet(self, tier: SubnetTier) -> SubnetConfig:
        return self.public_subnet if tier is SubnetTier.PUBLIC else self.private_subnet
