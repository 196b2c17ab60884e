"""Error taxonomy for provisioning and teardown runs.

Fatal errors abort the remaining stage sequence. A partially provisioned
stack is an expected outcome of a fatal error; the next idempotent run
picks up where this one stopped.

Non-fatal conditions (an add-on that ends its repair sequence unhealthy)
are recorded as DegradedResourceWarning instances on the run summary and
are never raised.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for all fatal run errors."""

    pass


class ProbeError(ProvisionerError):
    """Raised when an existence check cannot be answered reliably.

    Covers unreachable providers, unparsable responses and ambiguous
    lookups. Never retried: acting on a guessed absence risks duplicate
    or conflicting resources.
    """

    def __init__(self, kind: str, filters: dict[str, str], reason: str) -> None:
        self.kind = kind
        self.filters = dict(filters)
        self.reason = reason
        super().__init__(f"Probe failed for {kind} {self.filters}: {reason}")


class ConvergenceError(ProvisionerError):
    """Raised when a create, update or delete call fails."""

    def __init__(self, kind: str, key: str, operation: str, reason: str) -> None:
        self.kind = kind
        self.key = key
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed for {kind} '{key}': {reason}")


class IncompleteSubstitutionError(ProvisionerError):
    """Raised when a document placeholder has no supplied value."""

    def __init__(self, document: str, missing: list[str]) -> None:
        self.document = document
        self.missing = sorted(missing)
        super().__init__(
            f"Document '{document}' has unsubstituted placeholders: {self.missing}"
        )


class SequencingError(ProvisionerError):
    """Raised when a stage is reached without the identifiers it requires."""

    pass


class ResourceNotFound(Exception):
    """Provider-level absence signal.

    Raised by provider handlers for the "describe by name returned not
    found" idiom. The probe folds it into the same None result as an
    empty listing; it never escapes the probe.
    """

    pass


class ProviderError(Exception):
    """Provider-level failure (API error, transport error, waiter failure)."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class DegradedResourceWarning(UserWarning):
    """An add-on ended its repair sequence still unhealthy."""

    def __init__(self, kind: str, key: str, status: str, detail: str = "") -> None:
        self.kind = kind
        self.key = key
        self.status = status
        self.detail = detail
        message = f"{kind} '{key}' is degraded (status={status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
