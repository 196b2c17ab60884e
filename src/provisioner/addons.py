"""Add-on health repair state machine.

Every add-on is classified into one of three states and converged at most
once per run:

    state           primary action      compensating action (primary raised)
    NOT_INSTALLED   install             delete any remnant, then create again
    ACTIVE          none                none
    DEGRADED        update in place     delete, then recreate

Any installed status other than ACTIVE (CREATING, FAILED, DEGRADED, or a
status the provider invents later) is DEGRADED.

The compensating action runs exactly once and is never looped. When it
fails too, the add-on is recorded as degraded and the run continues; the
degraded add-on is reported on the run summary, never raised.
"""

from __future__ import annotations

import logging
from enum import Enum

from .errors import ConvergenceError, DegradedResourceWarning, ProviderError
from .models import AddonStatus, ResourceDescriptor, ResourceKind, ResourceSpec
from .probe import ResourceProbe, to_descriptor
from .provider import Provider
from .reconciler import ReconcileAction, ReconcileOutcome, Reconciler

logger = logging.getLogger(__name__)


class AddonState(str, Enum):
    NOT_INSTALLED = "not-installed"
    ACTIVE = "active"
    DEGRADED = "degraded"


class AddonAction(str, Enum):
    NONE = "none"
    INSTALL = "install"
    UPDATE = "update-in-place"
    RECREATE = "delete-then-recreate"


# state -> (primary action, compensating action)
TRANSITIONS: dict[AddonState, tuple[AddonAction, AddonAction]] = {
    AddonState.NOT_INSTALLED: (AddonAction.INSTALL, AddonAction.RECREATE),
    AddonState.ACTIVE: (AddonAction.NONE, AddonAction.NONE),
    AddonState.DEGRADED: (AddonAction.UPDATE, AddonAction.RECREATE),
}


def classify(descriptor: ResourceDescriptor | None) -> AddonState:
    """Map a probed add-on onto its repair state."""
    if descriptor is None:
        return AddonState.NOT_INSTALLED
    if descriptor.addon_status is AddonStatus.ACTIVE:
        return AddonState.ACTIVE
    return AddonState.DEGRADED


class AddonHealthStateMachine:
    """Health policy for add-ons.

    Registered with the reconciler for ResourceKind.ADDON, so present
    add-ons are handed to ``converge``. ``evaluate`` runs the whole cycle
    for one add-on, including the install path.
    """

    def __init__(self, provider: Provider, probe: ResourceProbe | None = None) -> None:
        self._provider = provider
        self._probe = probe or ResourceProbe(provider)

    def is_healthy(self, descriptor: ResourceDescriptor) -> bool:
        return classify(descriptor) is AddonState.ACTIVE

    def evaluate(self, spec: ResourceSpec) -> ReconcileOutcome:
        """Probe, classify and converge one add-on.

        Raises:
            ProbeError: If the add-on's state cannot be determined.
        """
        reconciler = Reconciler(self._provider, self._probe, {ResourceKind.ADDON: self})
        try:
            return reconciler.reconcile(spec)
        except ConvergenceError as e:
            logger.warning(
                "Add-on install failed, running compensating action",
                extra={"kind": spec.kind.value, "key": spec.name,
                       "action": AddonAction.RECREATE.value, "error": str(e)},
            )
            remnant = self._probe.probe(spec.kind, spec.filters)
            return self._recreate(spec, remnant, e)

    def converge(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ReconcileOutcome:
        """Converge an installed add-on according to its state."""
        state = classify(descriptor)
        primary, _ = TRANSITIONS[state]

        if primary is AddonAction.NONE:
            logger.info(
                "Add-on healthy, no action",
                extra={"kind": spec.kind.value, "key": spec.name, "state": state.value,
                       "action": primary.value},
            )
            return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.PRESENT, descriptor)

        logger.info(
            "Add-on unhealthy, updating in place",
            extra={"kind": spec.kind.value, "key": spec.name, "state": state.value,
                   "status": descriptor.status, "action": primary.value},
        )
        try:
            record = self._provider.update(spec, descriptor)
        except ProviderError as e:
            logger.warning(
                "Add-on update failed, running compensating action",
                extra={"kind": spec.kind.value, "key": spec.name,
                       "action": AddonAction.RECREATE.value, "error": str(e)},
            )
            return self._recreate(spec, descriptor, e)

        updated = to_descriptor(spec.kind, spec.name, record, spec.filters)
        if not self.is_healthy(updated):
            return self._degraded(spec, updated, "still unhealthy after in-place update")

        logger.info(
            "Add-on repaired",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "repaired"},
        )
        return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.REPAIRED, updated)

    def _recreate(
        self,
        spec: ResourceSpec,
        descriptor: ResourceDescriptor | None,
        cause: Exception,
    ) -> ReconcileOutcome:
        # Single compensating attempt
        try:
            if descriptor is not None:
                self._provider.delete(descriptor)
            self._provider.create(spec)
        except ProviderError as e:
            return self._degraded(
                spec, descriptor, f"primary action failed ({cause}); recreate failed ({e})"
            )

        recreated = self._probe.probe(spec.kind, spec.filters)
        if recreated is None:
            return self._degraded(
                spec, None, "recreated add-on is not discoverable by its identifying key"
            )
        if not self.is_healthy(recreated):
            return self._degraded(spec, recreated, "still unhealthy after recreate")

        logger.info(
            "Add-on recreated",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "recreated"},
        )
        return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.RECREATED, recreated)

    def _degraded(
        self,
        spec: ResourceSpec,
        descriptor: ResourceDescriptor | None,
        detail: str,
    ) -> ReconcileOutcome:
        status = descriptor.status if descriptor is not None else AddonStatus.UNKNOWN.value
        warning = DegradedResourceWarning(spec.kind.value, spec.name, status, detail)
        logger.warning(
            str(warning),
            extra={"kind": spec.kind.value, "key": spec.name, "action": "degraded",
                   "status": status},
        )
        return ReconcileOutcome(
            spec.kind, spec.name, ReconcileAction.DEGRADED, descriptor, warning
        )
