"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from provisioner.models import (
    DEFAULT_ADDONS,
    MANAGED_BY_TAG,
    NAME_TAG,
    AddonStatus,
    ResourceDescriptor,
    ResourceKind,
    ResourceSpec,
    StackSpec,
    SubnetTier,
)


class TestResourceSpec:
    """Tests for ResourceSpec."""

    def test_filters_carry_key_and_scope(self) -> None:
        """Test that the identifying key and parent scope form the filters."""
        spec = ResourceSpec(
            kind=ResourceKind.SUBNET, name="web-public", scope={"vpc-id": "vpc-123"}
        )

        assert spec.filters == {"tag:Name": "web-public", "vpc-id": "vpc-123"}

    def test_key_filter_per_kind(self) -> None:
        """Test that describe-by-name kinds use their own key filter."""
        cluster = ResourceSpec(kind=ResourceKind.CLUSTER, name="web-cluster")
        addon = ResourceSpec(
            kind=ResourceKind.ADDON, name="coredns", scope={"cluster-name": "web-cluster"}
        )

        assert cluster.filters == {"cluster-name": "web-cluster"}
        assert addon.filters == {"addon-name": "coredns", "cluster-name": "web-cluster"}

    def test_resource_tags_always_include_name(self) -> None:
        """Test that created resources are tagged with their desired name."""
        spec = ResourceSpec(
            kind=ResourceKind.NETWORK, name="web-vpc", tags={"team": "platform", "Name": "x"}
        )

        tags = spec.resource_tags
        assert tags[NAME_TAG] == "web-vpc"
        assert tags[MANAGED_BY_TAG] == "provisioner"
        assert tags["team"] == "platform"

    def test_spec_is_immutable(self) -> None:
        """Test that a spec cannot be changed during a run."""
        spec = ResourceSpec(kind=ResourceKind.REGISTRY, name="web")

        with pytest.raises(ValidationError):
            spec.name = "other"  # type: ignore[misc]

    def test_empty_name_rejected(self) -> None:
        """Test that every resource needs an identifying key."""
        with pytest.raises(ValidationError):
            ResourceSpec(kind=ResourceKind.REGISTRY, name="")

    def test_unknown_field_rejected(self) -> None:
        """Test that typos in spec fields fail loudly."""
        with pytest.raises(ValidationError):
            ResourceSpec(kind=ResourceKind.REGISTRY, name="web", labels={})  # type: ignore[call-arg]


class TestResourceDescriptor:
    """Tests for ResourceDescriptor."""

    def test_requires_id(self) -> None:
        """Test that a descriptor without a provider id is invalid."""
        with pytest.raises(ValidationError):
            ResourceDescriptor(kind=ResourceKind.NETWORK, key="web-vpc", resource_id="")

    def test_addon_status(self) -> None:
        """Test status normalization on the descriptor."""
        descriptor = ResourceDescriptor(
            kind=ResourceKind.ADDON, key="coredns", resource_id="arn:addon", status="CREATE_FAILED"
        )

        assert descriptor.addon_status is AddonStatus.FAILED


class TestAddonStatus:
    """Tests for AddonStatus.parse."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("ACTIVE", AddonStatus.ACTIVE),
            ("active", AddonStatus.ACTIVE),
            ("DEGRADED", AddonStatus.DEGRADED),
            ("CREATING", AddonStatus.CREATING),
            ("UPDATE_FAILED", AddonStatus.FAILED),
            ("DELETE_FAILED", AddonStatus.FAILED),
            ("UPDATING", AddonStatus.UNKNOWN),
            ("SOMETHING_NEW", AddonStatus.UNKNOWN),
            ("", AddonStatus.UNKNOWN),
            (None, AddonStatus.UNKNOWN),
        ],
    )
    def test_parse(self, raw: str | None, expected: AddonStatus) -> None:
        """Test mapping of provider status strings."""
        assert AddonStatus.parse(raw) is expected


class TestStackSpec:
    """Tests for StackSpec."""

    def test_defaults(self) -> None:
        """Test that an empty spec yields a working stack."""
        spec = StackSpec()

        assert spec.vpc_cidr == "10.0.0.0/16"
        assert spec.subnet(SubnetTier.PUBLIC).cidr == "10.0.1.0/24"
        assert spec.subnet(SubnetTier.PRIVATE).cidr == "10.0.2.0/24"
        assert [addon.name for addon in spec.addons] == list(DEFAULT_ADDONS)
        assert spec.ingress[0].from_port == 443

    def test_camel_case_aliases(self) -> None:
        """Test parsing a spec written with camelCase keys."""
        data = {
            "vpcCidr": "10.10.0.0/16",
            "publicSubnet": {"cidr": "10.10.1.0/24", "availabilityZone": "il-central-1a"},
            "kubernetesVersion": "1.30",
            "addons": [{"name": "vpc-cni", "version": "v1.18.0-eksbuild.1"}],
            "managedPolicyArns": ["arn:aws:iam::aws:policy/ReadOnlyAccess"],
        }
        spec = StackSpec.model_validate(data)

        assert spec.vpc_cidr == "10.10.0.0/16"
        assert spec.public_subnet.availability_zone == "il-central-1a"
        assert spec.kubernetes_version == "1.30"
        assert spec.addons[0].version == "v1.18.0-eksbuild.1"
        assert spec.managed_policy_arns == ["arn:aws:iam::aws:policy/ReadOnlyAccess"]

    def test_invalid_cidr(self) -> None:
        """Test that a malformed CIDR raises validation error."""
        with pytest.raises(ValidationError) as exc_info:
            StackSpec.model_validate({"vpcCidr": "10.0.0.1/16"})

        assert "CIDR" in str(exc_info.value)

    def test_duplicate_addons(self) -> None:
        """Test that an add-on cannot be listed twice."""
        with pytest.raises(ValidationError) as exc_info:
            StackSpec.model_validate({"addons": [{"name": "coredns"}, {"name": "coredns"}]})

        assert "duplicate add-ons" in str(exc_info.value)

    def test_invalid_ingress_protocol(self) -> None:
        """Test that only known protocols are accepted."""
        with pytest.raises(ValidationError):
            StackSpec.model_validate(
                {"ingress": [{"protocol": "sctp", "fromPort": 1, "toPort": 2}]}
            )
