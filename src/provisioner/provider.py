"""Provider contract consumed by the probe, reconciler and sequencer.

A provider exposes the convergence actions for every resource kind behind
one kind-dispatched interface. All provider-specific parsing stays behind
this boundary; callers only ever see raw records of the shape::

    {"id": "<provider id>", "status": "<provider status>", "attributes": {...}}

Absence is signalled either by an empty list from ``describe`` or by
raising ResourceNotFound; every other failure is raised as ProviderError.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from .models import ResourceDescriptor, ResourceKind, ResourceSpec

ProviderRecord = dict[str, Any]


class Provider(Protocol):
    """Kind-dispatched CRUD surface of the infrastructure provider."""

    def describe(self, kind: ResourceKind, filters: Mapping[str, str]) -> list[ProviderRecord]:
        """Return every resource of ``kind`` matching all ``filters``."""
        ...

    def create(self, spec: ResourceSpec) -> ProviderRecord:
        """Create the resource, tagged with its desired name."""
        ...

    def update(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> ProviderRecord:
        """Converge an existing resource in place."""
        ...

    def delete(self, descriptor: ResourceDescriptor) -> None:
        """Delete the resource and wait until the provider reports it gone."""
        ...

    def ensure_dependents(self, spec: ResourceSpec, descriptor: ResourceDescriptor) -> list[str]:
        """Add the managed sub-resources of an existing resource that are missing.

        Reads first and mutates only what is missing. Returns the names of
        the added sub-resources (empty when nothing was missing).
        """
        ...

    def remove_dependents(self, descriptor: ResourceDescriptor) -> list[str]:
        """Remove managed sub-resources that block deleting ``descriptor``.

        Returns the names of the removed sub-resources.
        """
        ...


# Each add-on worker calls the factory to get a client it owns outright
ProviderFactory = Callable[[], Provider]
