"""Tests for the add-on health repair state machine."""

from unittest.mock import MagicMock

import pytest

from aws_mock import MockProvider, MockProviderState
from provisioner.addons import (
    TRANSITIONS,
    AddonAction,
    AddonHealthStateMachine,
    AddonState,
    classify,
)
from provisioner.errors import DegradedResourceWarning, ProbeError, ProviderError, ResourceNotFound
from provisioner.models import ResourceDescriptor, ResourceKind, ResourceSpec
from provisioner.reconciler import ReconcileAction

CLUSTER_SCOPE = {"cluster-name": "web-cluster"}


def addon_spec(name: str = "coredns") -> ResourceSpec:
    return ResourceSpec(kind=ResourceKind.ADDON, name=name, scope=CLUSTER_SCOPE)


def addon_descriptor(status: str | None) -> ResourceDescriptor | None:
    if status is None:
        return None
    return ResourceDescriptor(
        kind=ResourceKind.ADDON, key="coredns", resource_id="arn:addon", status=status
    )


def prepare(state: MockProviderState, initial: AddonState, scenario: str) -> None:
    """Seed the add-on in ``initial`` and inject faults for ``scenario``.

    Scenarios: "ok" (primary succeeds), "primary-fails" (primary raises,
    compensation succeeds), "both-fail" (primary and compensation raise).
    """
    if initial is AddonState.ACTIVE:
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="ACTIVE")
        if scenario != "ok":
            state.fail_update.add("coredns")
            state.fail_create.add("coredns")
    elif initial is AddonState.DEGRADED:
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="DEGRADED")
        if scenario != "ok":
            state.fail_update.add("coredns")
        if scenario == "both-fail":
            state.fail_create.add("coredns")
    else:
        if scenario == "primary-fails":
            state.fail_create_once.add("coredns")
        elif scenario == "both-fail":
            state.fail_create.add("coredns")


class TestClassify:
    """Tests for state classification."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (None, AddonState.NOT_INSTALLED),
            ("ACTIVE", AddonState.ACTIVE),
            ("DEGRADED", AddonState.DEGRADED),
            ("CREATING", AddonState.DEGRADED),
            ("CREATE_FAILED", AddonState.DEGRADED),
            ("SOMETHING_NEW", AddonState.DEGRADED),
            ("UNKNOWN", AddonState.DEGRADED),
        ],
    )
    def test_classify(self, status: str | None, expected: AddonState) -> None:
        """Test that only ACTIVE counts as healthy."""
        assert classify(addon_descriptor(status)) is expected

    def test_transition_table(self) -> None:
        """Test the primary and compensating action for every state."""
        assert TRANSITIONS[AddonState.NOT_INSTALLED] == (AddonAction.INSTALL, AddonAction.RECREATE)
        assert TRANSITIONS[AddonState.ACTIVE] == (AddonAction.NONE, AddonAction.NONE)
        assert TRANSITIONS[AddonState.DEGRADED] == (AddonAction.UPDATE, AddonAction.RECREATE)


class TestStateMachine:
    """Tests for AddonHealthStateMachine.evaluate across every state and outcome."""

    @pytest.mark.parametrize(
        ("initial", "scenario", "action", "creates", "updates", "deletes"),
        [
            (AddonState.NOT_INSTALLED, "ok", ReconcileAction.CREATED, 1, 0, 0),
            (AddonState.NOT_INSTALLED, "primary-fails", ReconcileAction.RECREATED, 2, 0, 0),
            (AddonState.NOT_INSTALLED, "both-fail", ReconcileAction.DEGRADED, 2, 0, 0),
            (AddonState.ACTIVE, "ok", ReconcileAction.PRESENT, 0, 0, 0),
            (AddonState.ACTIVE, "primary-fails", ReconcileAction.PRESENT, 0, 0, 0),
            (AddonState.ACTIVE, "both-fail", ReconcileAction.PRESENT, 0, 0, 0),
            (AddonState.DEGRADED, "ok", ReconcileAction.REPAIRED, 0, 1, 0),
            (AddonState.DEGRADED, "primary-fails", ReconcileAction.RECREATED, 1, 1, 1),
            (AddonState.DEGRADED, "both-fail", ReconcileAction.DEGRADED, 1, 1, 1),
        ],
    )
    def test_transitions(
        self,
        initial: AddonState,
        scenario: str,
        action: ReconcileAction,
        creates: int,
        updates: int,
        deletes: int,
    ) -> None:
        """Test the outcome and exact call counts for each state and scenario."""
        state = MockProviderState()
        prepare(state, initial, scenario)
        machine = AddonHealthStateMachine(MockProvider(state))

        outcome = machine.evaluate(addon_spec())

        assert outcome.action is action
        assert state.count("create", ResourceKind.ADDON) == creates
        assert state.count("update", ResourceKind.ADDON) == updates
        assert state.count("delete", ResourceKind.ADDON) == deletes

    def test_degraded_outcome_carries_warning(self) -> None:
        """Test that a failed repair is reported as a warning, not raised."""
        state = MockProviderState()
        prepare(state, AddonState.DEGRADED, "both-fail")

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert isinstance(outcome.warning, DegradedResourceWarning)
        assert outcome.warning.key == "coredns"
        assert "recreate failed" in outcome.warning.detail

    def test_unknown_status_is_repaired(self) -> None:
        """Test that an unrecognized status is treated as degraded."""
        state = MockProviderState()
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="SOMETHING_NEW")

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.REPAIRED
        assert state.count("update") == 1

    def test_update_leaves_addon_unhealthy(self) -> None:
        """Test that an update that returns but stays unhealthy does not recreate."""
        state = MockProviderState()
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="DEGRADED")
        state.status_after_update["coredns"] = "DEGRADED"

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.DEGRADED
        assert state.count("update") == 1
        assert state.count("create") == 0
        assert state.count("delete") == 0

    def test_recreate_leaves_addon_unhealthy(self) -> None:
        """Test that compensation is not repeated when the recreate stays unhealthy."""
        state = MockProviderState()
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="DEGRADED")
        state.fail_update.add("coredns")
        state.status_after_create["coredns"] = "CREATE_FAILED"

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.DEGRADED
        assert outcome.warning is not None
        assert outcome.warning.status == "CREATE_FAILED"
        assert state.count("create") == 1

    def test_created_unhealthy(self) -> None:
        """Test that an install reporting a non-ACTIVE status is degraded."""
        state = MockProviderState()
        state.status_after_create["coredns"] = "CREATING"

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.DEGRADED
        assert state.count("create") == 1

    def test_failed_install_remnant_is_deleted(self) -> None:
        """Test that a remnant left by a failed install is deleted before recreate."""
        provider = MagicMock()
        provider.describe.side_effect = [
            ResourceNotFound("coredns"),
            [{"id": "arn:addon", "status": "CREATE_FAILED"}],
            [{"id": "arn:addon-2", "status": "ACTIVE"}],
        ]
        provider.create.side_effect = [
            ProviderError("install failed"),
            {"id": "arn:addon-2", "status": "ACTIVE"},
        ]

        outcome = AddonHealthStateMachine(provider).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.RECREATED
        assert outcome.resource_id == "arn:addon-2"
        provider.delete.assert_called_once()
        assert provider.delete.call_args.args[0].resource_id == "arn:addon"
        assert provider.describe.call_count == 3

    def test_recreated_but_not_discoverable(self) -> None:
        """Test that a recreate whose result cannot be found again is degraded."""
        state = MockProviderState()
        state.seed(ResourceKind.ADDON, "coredns", CLUSTER_SCOPE, status="DEGRADED")
        state.fail_update.add("coredns")
        state.undiscoverable.add("coredns")

        outcome = AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert outcome.action is ReconcileAction.DEGRADED
        assert outcome.warning is not None
        assert "not discoverable" in outcome.warning.detail
        assert state.count("create") == 1
        assert state.count("describe") == 2

    def test_probe_error_propagates(self) -> None:
        """Test that an unanswerable probe is fatal rather than degraded."""
        state = MockProviderState()
        state.fail_describe.add(ResourceKind.ADDON)

        with pytest.raises(ProbeError):
            AddonHealthStateMachine(MockProvider(state)).evaluate(addon_spec())

        assert state.mutating_calls() == []

    def test_addons_are_independent(self) -> None:
        """Test that one add-on's failure does not touch another."""
        state = MockProviderState()
        state.fail_create.add("coredns")
        machine = AddonHealthStateMachine(MockProvider(state))

        failed = machine.evaluate(addon_spec("coredns"))
        installed = machine.evaluate(addon_spec("kube-proxy"))

        assert failed.action is ReconcileAction.DEGRADED
        assert installed.action is ReconcileAction.CREATED
