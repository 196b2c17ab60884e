"""Run summary for audit and the final report.

Every run ends with exactly one summary log entry answering:
- "What did this run create, leave alone, repair or delete?"
- "Which add-ons are still degraded?"
- "Which commit of the provisioner ran, against which account?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import DegradedResourceWarning
from .reconciler import ReconcileAction, ReconcileOutcome

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class ResourceRecord:
    """One line of the summary."""

    kind: str
    key: str
    action: str
    resource_id: str | None = None


@dataclass
class RunSummary:
    """Aggregated outcome of a provision or teardown run."""

    operation: str
    stack_name: str = ""
    account_id: str = ""
    region: str = ""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    git_commit_sha: str = field(default_factory=lambda: os.environ.get("GIT_COMMIT_SHA", ""))
    provisioner_version: str = PROVISIONER_VERSION

    resources: list[ResourceRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    patched_documents: list[str] = field(default_factory=list)

    error: str | None = None
    error_type: str | None = None

    def record(self, outcome: ReconcileOutcome) -> None:
        """Append one resource outcome (and its warning, if any)."""
        self.resources.append(
            ResourceRecord(
                kind=outcome.kind.value,
                key=outcome.key,
                action=outcome.action.value,
                resource_id=outcome.resource_id,
            )
        )
        if outcome.warning is not None:
            self.add_warning(outcome.warning)

    def add_warning(self, warning: DegradedResourceWarning) -> None:
        self.warnings.append(str(warning))

    def fail(self, error: BaseException) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__

    def finish(self) -> None:
        self.finished_at = datetime.now(UTC)

    def keys_with(self, action: ReconcileAction) -> list[str]:
        return [f"{r.kind}/{r.key}" for r in self.resources if r.action == action.value]

    @property
    def created(self) -> list[str]:
        return self.keys_with(ReconcileAction.CREATED)

    @property
    def present(self) -> list[str]:
        return self.keys_with(ReconcileAction.PRESENT)

    @property
    def repaired(self) -> list[str]:
        return self.keys_with(ReconcileAction.REPAIRED) + self.keys_with(
            ReconcileAction.RECREATED
        )

    @property
    def degraded(self) -> list[str]:
        return self.keys_with(ReconcileAction.DEGRADED)

    @property
    def deleted(self) -> list[str]:
        return self.keys_with(ReconcileAction.DELETED)

    @property
    def absent(self) -> list[str]:
        return self.keys_with(ReconcileAction.ABSENT)

    @property
    def retained(self) -> list[str]:
        return self.keys_with(ReconcileAction.RETAINED)

    @property
    def succeeded(self) -> bool:
        """Degraded add-ons do not fail a run."""
        return self.error is None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if self.degraded:
            return "degraded"
        return "succeeded"

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["started_at"] = self.started_at.isoformat()
        result["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        result["status"] = self.status
        result["duration_seconds"] = self.duration_seconds
        return result

    def counts(self) -> dict[str, int]:
        if self.operation == "teardown":
            return {
                "deleted": len(self.deleted),
                "absent": len(self.absent),
                "retained": len(self.retained),
            }
        return {
            "created": len(self.created),
            "present": len(self.present),
            "repaired": len(self.repaired),
            "degraded": len(self.degraded),
        }


def log_summary(summary: RunSummary) -> None:
    """Log a completed run summary.

    Level is ERROR for a failed run, WARNING when add-ons are degraded,
    INFO otherwise.
    """
    log_level = logging.INFO
    if summary.error:
        log_level = logging.ERROR
    elif summary.degraded:
        log_level = logging.WARNING

    logger.log(
        log_level,
        "Run summary",
        extra={
            "summary": summary.to_dict(),
            # Flatten key fields for easier querying
            "operation": summary.operation,
            "status": summary.status,
            "stack_name": summary.stack_name,
            "git_commit": summary.git_commit_sha,
            "duration_seconds": summary.duration_seconds,
            # "created" would collide with LogRecord.created
            **{f"{name}_count": count for name, count in summary.counts().items()},
        },
    )


def format_summary(summary: RunSummary) -> str:
    """Human-readable report for the CLI."""
    lines = [f"{summary.operation} {summary.stack_name}: {summary.status}"]
    sections = (
        ("deleted", summary.deleted),
        ("already absent", summary.absent),
        ("retained", summary.retained),
    ) if summary.operation == "teardown" else (
        ("created", summary.created),
        ("already present", summary.present),
        ("repaired", summary.repaired),
        ("degraded", summary.degraded),
    )
    for label, keys in sections:
        lines.append(f"  {label} ({len(keys)})")
        lines.extend(f"    - {key}" for key in keys)
    for document in summary.patched_documents:
        lines.append(f"  patched: {document}")
    for warning in summary.warnings:
        lines.append(f"  warning: {warning}")
    if summary.error:
        lines.append(f"  error: {summary.error_type}: {summary.error}")
    return "\n".join(lines)
