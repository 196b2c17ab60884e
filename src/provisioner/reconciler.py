"""Existence-check-then-converge reconciliation.

For every resource kind the reconciler applies the same rule:

1. Probe by the spec's identifying key
2. Absent: create, then re-probe to confirm the resource is discoverable
   by the same key (the Name tag landed)
3. Present: add any managed sub-resource an interrupted create left out
   (inline policies, gateway attachments, ingress rules), then leave it as
   it is, unless the kind registers a health policy, in which case the
   policy decides how to converge it

Only add-ons register a health policy. The parent of a network or
identity resource is create-or-leave: changing it in place (e.g. a live
network's CIDR) is unsafe, so only its missing sub-resources are added.

A second reconcile of the same spec with no external drift issues only
reads and returns an equal descriptor.

Teardown uses the same probe-first discipline in reverse: absence is
success, and a delete is only reported once a re-probe stops finding the
resource.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .errors import ConvergenceError, DegradedResourceWarning, ProviderError
from .models import ResourceDescriptor, ResourceKind, ResourceSpec
from .probe import ResourceProbe
from .provider import Provider

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    """Decision taken for one resource."""

    # Provisioning
    CREATED = "created"
    PRESENT = "present"
    REPAIRED = "repaired"
    RECREATED = "recreated"
    DEGRADED = "degraded"

    # Teardown
    DELETED = "deleted"
    ABSENT = "absent"
    RETAINED = "retained"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of reconciling (or removing) one resource."""

    kind: ResourceKind
    key: str
    action: ReconcileAction
    descriptor: ResourceDescriptor | None = None
    warning: DegradedResourceWarning | None = None

    @property
    def resource_id(self) -> str | None:
        return self.descriptor.resource_id if self.descriptor else None


class HealthPolicy(Protocol):
    """Per-kind repair policy for resources that are present."""

    def is_healthy(self, descriptor: ResourceDescriptor) -> bool: ...

    def converge(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ReconcileOutcome: ...


class Reconciler:
    """Converges single resources against a provider."""

    def __init__(
        self,
        provider: Provider,
        probe: ResourceProbe | None = None,
        health_policies: Mapping[ResourceKind, HealthPolicy] | None = None,
    ) -> None:
        self._provider = provider
        self._probe = probe or ResourceProbe(provider)
        self._health_policies = dict(health_policies or {})

    @property
    def probe(self) -> ResourceProbe:
        return self._probe

    def reconcile(self, spec: ResourceSpec) -> ReconcileOutcome:
        """Bring one resource to its desired shape.

        Raises:
            ProbeError: If existence cannot be determined.
            ConvergenceError: If the create call fails, the created
                resource cannot be found again by its key, or a missing
                sub-resource cannot be added.
        """
        existing = self._probe.probe(spec.kind, spec.filters)

        if existing is None:
            return self._create(spec)

        policy = self._health_policies.get(spec.kind)
        if policy is None:
            added = self._ensure_dependents(spec, existing)
            if added:
                logger.info(
                    "Restored managed sub-resources",
                    extra={"kind": spec.kind.value, "key": spec.name, "action": "repair",
                           "resource_id": existing.resource_id, "added": added},
                )
                return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.REPAIRED, existing)
            logger.info(
                "Resource present, no action",
                extra={"kind": spec.kind.value, "key": spec.name, "action": "none",
                       "resource_id": existing.resource_id},
            )
            return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.PRESENT, existing)

        return policy.converge(spec, existing)

    def _ensure_dependents(self, spec: ResourceSpec, existing: ResourceDescriptor) -> list[str]:
        try:
            return self._provider.ensure_dependents(spec, existing)
        except ProviderError as e:
            logger.error(
                "Restoring sub-resources failed",
                extra={"kind": spec.kind.value, "key": spec.name, "error": str(e)},
            )
            raise ConvergenceError(spec.kind.value, spec.name, "ensure-dependents", str(e)) from e

    def _create(self, spec: ResourceSpec) -> ReconcileOutcome:
        logger.info(
            "Resource absent, creating",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "create"},
        )
        try:
            self._provider.create(spec)
        except ProviderError as e:
            logger.error(
                "Create failed",
                extra={"kind": spec.kind.value, "key": spec.name, "error": str(e)},
            )
            raise ConvergenceError(spec.kind.value, spec.name, "create", str(e)) from e

        created = self._probe.probe(spec.kind, spec.filters)
        if created is None:
            raise ConvergenceError(
                spec.kind.value,
                spec.name,
                "create",
                "created resource is not discoverable by its identifying key",
            )

        warning = None
        policy = self._health_policies.get(spec.kind)
        if policy is not None and not policy.is_healthy(created):
            warning = DegradedResourceWarning(
                spec.kind.value, spec.name, created.status, "unhealthy after create"
            )
            logger.warning(str(warning), extra={"kind": spec.kind.value, "key": spec.name})

        logger.info(
            "Resource created",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "created",
                   "resource_id": created.resource_id},
        )
        action = ReconcileAction.DEGRADED if warning else ReconcileAction.CREATED
        return ReconcileOutcome(spec.kind, spec.name, action, created, warning)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def remove_dependents(self, spec: ResourceSpec) -> list[str]:
        """Remove managed sub-resources of ``spec`` ahead of its deletion."""
        existing = self._probe.probe(spec.kind, spec.filters)
        if existing is None:
            return []
        try:
            removed = self._provider.remove_dependents(existing)
        except ProviderError as e:
            raise ConvergenceError(spec.kind.value, spec.name, "remove-dependents", str(e)) from e
        if removed:
            logger.info(
                "Removed managed sub-resources",
                extra={"kind": spec.kind.value, "key": spec.name, "removed": removed},
            )
        return removed

    def remove(self, spec: ResourceSpec) -> ReconcileOutcome:
        """Delete one resource if it exists.

        Raises:
            ProbeError: If existence cannot be determined.
            ConvergenceError: If the delete fails or the resource is still
                reported after it.
        """
        existing = self._probe.probe(spec.kind, spec.filters)
        if existing is None:
            logger.info(
                "Resource already absent",
                extra={"kind": spec.kind.value, "key": spec.name, "action": "none"},
            )
            return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.ABSENT)

        logger.info(
            "Deleting resource",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "delete",
                   "resource_id": existing.resource_id},
        )
        try:
            self._provider.delete(existing)
        except ProviderError as e:
            raise ConvergenceError(spec.kind.value, spec.name, "delete", str(e)) from e

        if self._probe.probe(spec.kind, spec.filters) is not None:
            raise ConvergenceError(
                spec.kind.value, spec.name, "delete", "resource still present after delete"
            )

        logger.info(
            "Resource deleted",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "deleted"},
        )
        return ReconcileOutcome(spec.kind, spec.name, ReconcileAction.DELETED, existing)

    def retain(self, spec: ResourceSpec) -> ReconcileOutcome:
        """Probe a shared resource that teardown must never delete."""
        existing = self._probe.probe(spec.kind, spec.filters)
        action = ReconcileAction.RETAINED if existing else ReconcileAction.ABSENT
        logger.info(
            "Shared resource retained" if existing else "Shared resource absent",
            extra={"kind": spec.kind.value, "key": spec.name, "action": "none"},
        )
        return ReconcileOutcome(spec.kind, spec.name, action, existing)
