"""Desired-versus-observed reconciliation for a single resource."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..errors import MutationError
from ..providers.base import (
    CloudControlPlane,
    CloudProviderError,
    ClusterControlPlane,
    ClusterProviderError,
)
from .models import (
    ANY_VALUE,
    AttributeValue,
    ObservedState,
    OutcomeStatus,
    ReconciliationOutcome,
    ResourceSpec,
    RolloutHandle,
)
from .traits import KindTraits, traits_for
from .waiter import is_converged

DEFAULT_TIMEOUT_BUDGET = 300.0
IMMUTABLE_REASON = "immutable, manual intervention required"
NOT_READY_REASON = "present but not ready"
MUTATING_ACTIONS = frozenset({"create", "update", "reinstall"})

Drift = Mapping[str, tuple[AttributeValue, Any]]


def _normalise(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def diff_attributes(spec: ResourceSpec, observed: ObservedState) -> dict[str, tuple[AttributeValue, Any]]:
    """Return ``{key: (desired, observed)}`` for every drifted attribute.

    Only desired keys are compared; create-only inputs of the kind are ignored
    because control planes do not report them back. A desired value of
    ``ANY_VALUE`` only requires the attribute to be present.
    """
    traits = traits_for(spec.kind)
    drift: dict[str, tuple[AttributeValue, Any]] = {}
    for key, desired in spec.attributes.items():
        if key in traits.create_only:
            continue
        actual = observed.attributes.get(key)
        if desired == ANY_VALUE:
            if actual is None:
                drift[key] = (desired, actual)
            continue
        if _normalise(desired) != _normalise(actual):
            drift[key] = (desired, actual)
    return drift


def _format_drift(drift: Drift) -> str:
    parts = [f"{key}: {actual!r} != {desired!r}" for key, (desired, actual) in sorted(drift.items())]
    return "; ".join(parts)


def _comparable_attributes(spec: ResourceSpec, traits: KindTraits) -> dict[str, AttributeValue]:
    return {
        key: value
        for key, value in spec.attributes.items()
        if key not in traits.create_only and value != ANY_VALUE
    }


@dataclass(slots=True, frozen=True)
class PlannedAction:
    """What reconciliation would do for one resource, without doing it."""

    action: str
    reason: str | None = None

    @property
    def mutates(self) -> bool:
        """Return ``True`` when the action changes the control plane."""
        return self.action in MUTATING_ACTIONS


def plan_action(spec: ResourceSpec, observed: ObservedState, *, force: bool = False) -> PlannedAction:
    """Apply the per-kind decision table to *spec* and its *observed* state.

    ``force`` plans a delete-and-recreate, but only for specs the provisioner
    owns and kinds that support deletion.
    """
    traits = traits_for(spec.kind)
    if force and observed.present and spec.owned and traits.deletable and not spec.validate_only:
        return PlannedAction("reinstall")

    if not observed.present:
        if spec.validate_only:
            return PlannedAction(
                "skip", f"{spec.kind.value} '{spec.key}' not found (validation only)."
            )
        if not traits.creatable:
            return PlannedAction(
                "skip", f"{spec.kind.value} '{spec.key}' not found and cannot be created."
            )
        return PlannedAction("create")

    drift = diff_attributes(spec, observed)
    if not drift:
        if traits.long_running and not is_converged(observed.attributes):
            return PlannedAction("wait", NOT_READY_REASON)
        return PlannedAction("none")

    detail = _format_drift(drift)
    if spec.validate_only:
        return PlannedAction("skip", f"attributes differ (validation only): {detail}")
    if not traits.mutable:
        return PlannedAction("skip", f"{IMMUTABLE_REASON}: {detail}")
    return PlannedAction("update", detail)


class ResourceReconciler:
    """Create-or-skip reconciliation following the per-kind decision table."""

    def __init__(
        self,
        cloud: CloudControlPlane,
        cluster: ClusterControlPlane,
        *,
        timeout_budget: float = DEFAULT_TIMEOUT_BUDGET,
    ) -> None:
        """Store control plane clients and the default rollout budget."""
        self._cloud = cloud
        self._cluster = cluster
        self._timeout_budget = timeout_budget

    def reconcile(
        self,
        spec: ResourceSpec,
        observed: ObservedState,
        *,
        force: bool = False,
        timeout_budget: float | None = None,
    ) -> ReconciliationOutcome:
        """Converge *spec* given its *observed* state."""
        start = time.perf_counter()
        traits = traits_for(spec.kind)
        budget = self._timeout_budget if timeout_budget is None else timeout_budget

        def finish(**kwargs: Any) -> ReconciliationOutcome:
            return ReconciliationOutcome(
                key=spec.key,
                kind=spec.kind,
                duration_ms=int((time.perf_counter() - start) * 1000),
                **kwargs,
            )

        plan = plan_action(spec, observed, force=force)
        if plan.action == "none":
            return finish(status=OutcomeStatus.ALREADY_SATISFIED)
        if plan.action == "wait":
            return finish(
                status=OutcomeStatus.ALREADY_SATISFIED,
                action="wait",
                reason=plan.reason,
                rollout=self._handle(spec, datetime.now(tz=UTC), budget),
            )
        if plan.action == "skip":
            return finish(status=OutcomeStatus.SKIPPED, reason=plan.reason)
        if plan.action == "reinstall":
            return self._mutate(spec, traits, "reinstall", budget, finish, self._reinstall)
        if plan.action == "create":
            return self._mutate(spec, traits, "create", budget, finish, self._create)

        def _update(spec: ResourceSpec, traits: KindTraits) -> None:
            self._update(spec, traits, observed)

        return self._mutate(spec, traits, "update", budget, finish, _update)

    # ------------------------------------------------------------------
    def _mutate(
        self,
        spec: ResourceSpec,
        traits: KindTraits,
        action: str,
        budget: float,
        finish: Callable[..., ReconciliationOutcome],
        operation: Callable[[ResourceSpec, KindTraits], None],
    ) -> ReconciliationOutcome:
        started_at = datetime.now(tz=UTC)
        try:
            operation(spec, traits)
        except (CloudProviderError, ClusterProviderError) as exc:
            error = MutationError(f"{action} of {spec.kind.value} '{spec.key}' failed: {exc}")
            return finish(
                status=OutcomeStatus.FAILED,
                action=action,
                error=str(error),
                error_kind=error.kind,
            )
        rollout = self._handle(spec, started_at, budget) if traits.long_running else None
        return finish(status=OutcomeStatus.CREATED, action=action, rollout=rollout)

    @staticmethod
    def _handle(spec: ResourceSpec, started_at: datetime, budget: float) -> RolloutHandle:
        return RolloutHandle(
            resource_key=spec.key,
            kind=spec.kind,
            started_at=started_at,
            timeout_budget=budget,
        )

    def _create(self, spec: ResourceSpec, traits: KindTraits) -> None:
        if traits.plane == "cloud":
            self._cloud.create(spec.kind, spec.key, dict(spec.attributes))
            return
        if traits.cloud_prerequisite:
            self._cloud.create(spec.kind, spec.key, dict(spec.attributes))
        self._cluster.apply(spec.kind, spec.key, dict(spec.attributes))

    def _update(self, spec: ResourceSpec, traits: KindTraits, observed: ObservedState) -> None:
        if traits.plane == "cloud":
            resource_id = str(observed.attributes.get("id") or spec.key)
            self._cloud.tag(resource_id, _comparable_attributes(spec, traits))
            return
        self._create(spec, traits)

    def _reinstall(self, spec: ResourceSpec, traits: KindTraits) -> None:
        self._cluster.delete(spec.kind, spec.key)
        self._create(spec, traits)


__all__ = [
    "DEFAULT_TIMEOUT_BUDGET",
    "IMMUTABLE_REASON",
    "NOT_READY_REASON",
    "PlannedAction",
    "ResourceReconciler",
    "diff_attributes",
    "plan_action",
]
