"""Resource existence checks.

The probe is the single place where the provider's two absence idioms
(a not-found error from a describe-by-name call, and an empty listing
from a filtered query) collapse into one answer: None.

Anything that prevents an accurate present/absent answer is a ProbeError.
Probe errors are not retried; the reconciler's decisions are only as good
as the probe's answer.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import ProbeError, ProviderError, ResourceNotFound
from .models import KEY_FILTERS, ResourceDescriptor, ResourceKind
from .provider import Provider

logger = logging.getLogger(__name__)


class ResourceProbe:
    """Read-only lookups against a provider."""

    def __init__(self, provider: Provider) -> None:
        self._provider = provider

    def probe(self, kind: ResourceKind, filters: Mapping[str, str]) -> ResourceDescriptor | None:
        """Return the single resource matching ``filters``, or None.

        Raises:
            ProbeError: If the provider fails, returns malformed data, or
                more than one resource matches.
        """
        filters = dict(filters)
        try:
            records = self._provider.describe(kind, filters)
        except ResourceNotFound:
            logger.debug("Probe: not found", extra={"kind": kind.value, "filters": filters})
            return None
        except ProviderError as e:
            raise ProbeError(kind.value, filters, f"provider error: {e}") from e

        if records is None or not isinstance(records, list):
            raise ProbeError(
                kind.value, filters, f"expected a list of records, got {type(records).__name__}"
            )

        if not records:
            logger.debug("Probe: empty result", extra={"kind": kind.value, "filters": filters})
            return None

        if len(records) > 1:
            ids = [r.get("id") if isinstance(r, dict) else r for r in records]
            raise ProbeError(kind.value, filters, f"ambiguous: {len(records)} matches {ids}")

        return to_descriptor(kind, _key_from_filters(kind, filters), records[0], filters)


def to_descriptor(
    kind: ResourceKind,
    key: str,
    record: Any,
    filters: Mapping[str, str] | None = None,
) -> ResourceDescriptor:
    """Validate a raw provider record into a descriptor.

    Raises:
        ProbeError: If the record is not a mapping with a non-empty id.
    """
    if not isinstance(record, dict):
        raise ProbeError(kind.value, dict(filters or {}), f"malformed record: {record!r}")
    try:
        return ResourceDescriptor(
            kind=kind,
            key=key,
            resource_id=record.get("id"),
            status=record.get("status") or "UNKNOWN",
            attributes=record.get("attributes") or {},
        )
    except ValidationError as e:
        raise ProbeError(kind.value, dict(filters or {}), f"malformed record: {e}") from e


def _key_from_filters(kind: ResourceKind, filters: Mapping[str, str]) -> str:
    return filters.get(KEY_FILTERS[kind], "")
