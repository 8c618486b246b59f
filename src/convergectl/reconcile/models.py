"""Data models and helpers for reconciliation runs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

AttributeValue = str | bool

# Desired value meaning "present with any value".
ANY_VALUE = "*"


class ResourceKind(str, Enum):
    """Kinds of external resources the provisioner understands."""

    IDENTITY_PROVIDER = "IdentityProvider"
    POLICY = "Policy"
    SERVICE_ACCOUNT_BINDING = "ServiceAccountBinding"
    SUBNET_TAG = "SubnetTag"
    HELM_RELEASE = "HelmRelease"

    @classmethod
    def parse(cls, value: str) -> ResourceKind:
        """Return the kind matching *value* (case-insensitive)."""
        normalized = value.strip().lower()
        for kind in cls:
            if kind.value.lower() == normalized:
                return kind
        raise ValueError(f"Unknown resource kind: {value!r}")


class FailurePolicy(str, Enum):
    """What the orchestrator does after a resource fails."""

    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


class OutcomeStatus(str, Enum):
    """Per-resource reconciliation result."""

    ALREADY_SATISFIED = "already-satisfied"
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        """Return ``True`` when dependents may proceed."""
        return self in (OutcomeStatus.ALREADY_SATISFIED, OutcomeStatus.CREATED)


class RunStatus(str, Enum):
    """Aggregate status for a whole run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial-failure"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class ResourceSpec:
    """Desired state of one external resource."""

    kind: ResourceKind
    key: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    failure_policy: FailurePolicy | None = None
    owned: bool = False
    validate_only: bool = False


@dataclass(slots=True, frozen=True)
class ObservedState:
    """Snapshot of a resource as reported by its control plane."""

    present: bool
    attributes: Mapping[str, Any] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @classmethod
    def absent(cls) -> ObservedState:
        """Return an observation for a resource that does not exist."""
        return cls(present=False)


@dataclass(slots=True, frozen=True)
class RolloutHandle:
    """Long-running mutation the waiter must poll."""

    resource_key: str
    kind: ResourceKind
    started_at: datetime
    timeout_budget: float


@dataclass(slots=True, frozen=True)
class DiagnosticBundle:
    """Point-in-time failure context gathered for operator triage."""

    resource_key: str
    status_snapshot: Mapping[str, Any] = field(default_factory=dict)
    recent_log_lines: Sequence[str] = field(default_factory=tuple)
    describe_output: str = ""
    hint: str = ""
    errors: Sequence[str] = field(default_factory=tuple)
    collected_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(slots=True, frozen=True)
class ReconciliationOutcome:
    """Result of reconciling one resource."""

    key: str
    kind: ResourceKind
    status: OutcomeStatus
    action: str | None = None
    reason: str | None = None
    error: str | None = None
    error_kind: str | None = None
    rollout: RolloutHandle | None = None
    diagnostics: DiagnosticBundle | None = None
    duration_ms: int | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the resource failed."""
        return self.status is OutcomeStatus.FAILED


@dataclass(slots=True, frozen=True)
class ReconciliationReport:
    """Ordered outcomes plus the aggregate run status."""

    outcomes: Sequence[ReconciliationOutcome]
    status: RunStatus
    error: str | None = None
    cancelled: bool = False
    metadata: Mapping[str, Any] | None = None

    def outcome_for(self, key: str) -> ReconciliationOutcome | None:
        """Return the outcome recorded for *key*, if any."""
        for outcome in self.outcomes:
            if outcome.key == key:
                return outcome
        return None

    @property
    def totals(self) -> Mapping[OutcomeStatus, int]:
        """Return outcome counts keyed by status."""
        counts = {status: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status] += 1
        return counts


def aggregate_status(outcomes: Iterable[ReconciliationOutcome], *, aborted: bool) -> RunStatus:
    """Derive the run status from outcomes."""
    if aborted:
        return RunStatus.FATAL
    for outcome in outcomes:
        if not outcome.status.is_success:
            return RunStatus.PARTIAL_FAILURE
    return RunStatus.SUCCESS


def build_report(
    outcomes: Sequence[ReconciliationOutcome],
    *,
    aborted: bool = False,
    error: str | None = None,
    cancelled: bool = False,
    metadata: Mapping[str, Any] | None = None,
) -> ReconciliationReport:
    """Create a full report from ordered outcomes."""
    return ReconciliationReport(
        outcomes=tuple(outcomes),
        status=aggregate_status(outcomes, aborted=aborted),
        error=error,
        cancelled=cancelled,
        metadata=metadata,
    )


__all__ = [
    "ANY_VALUE",
    "AttributeValue",
    "DiagnosticBundle",
    "FailurePolicy",
    "ObservedState",
    "OutcomeStatus",
    "ReconciliationOutcome",
    "ReconciliationReport",
    "ResourceKind",
    "ResourceSpec",
    "RolloutHandle",
    "RunStatus",
    "aggregate_status",
    "build_report",
]
