"""Provisioning orchestrator: sequencing, reconciliation, waits and reporting."""

from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import Cancelled, ConfigurationError, ConvergeError, ProbeError, RolloutTimeoutError
from .diagnostics import DiagnosticCollector
from .models import (
    FailurePolicy,
    OutcomeStatus,
    ReconciliationOutcome,
    ReconciliationReport,
    ResourceSpec,
    build_report,
)
from .probes import ResourceProbe
from .reconcilers import DEFAULT_TIMEOUT_BUDGET, ResourceReconciler
from .sequencer import dependents_of, levels, order
from .waiter import CancellationToken, RolloutWaiter

if TYPE_CHECKING:
    from ..logging import OperationScope

ALWAYS_FATAL = frozenset({"configuration", "cancelled"})


class RunState(str, Enum):
    """States of a provisioning run."""

    INIT = "init"
    SEQUENCING = "sequencing"
    RECONCILING = "reconciling"
    WAITING = "waiting"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RunOptions:
    """Run-level knobs supplied by the caller."""

    timeout_budget: float = DEFAULT_TIMEOUT_BUDGET
    failure_policy: FailurePolicy | None = None
    policy_overrides: Mapping[str, FailurePolicy] = field(default_factory=dict)
    force_reinstall: bool = False
    max_concurrency: int = 1
    collect_on_cancel: bool = False


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _not_attempted(spec: ResourceSpec, reason: str) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        key=spec.key,
        kind=spec.kind,
        status=OutcomeStatus.SKIPPED,
        reason=f"not attempted: {reason}",
    )


def _failed(spec: ResourceSpec, exc: ConvergeError, start: float) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        key=spec.key,
        kind=spec.kind,
        status=OutcomeStatus.FAILED,
        error=str(exc),
        error_kind=exc.kind,
        duration_ms=_duration_ms(start),
    )


class ProvisioningOrchestrator:
    """Drive specs through sequencing, reconciliation and rollout waits."""

    def __init__(
        self,
        probe: ResourceProbe,
        reconciler: ResourceReconciler,
        waiter: RolloutWaiter,
        collector: DiagnosticCollector,
    ) -> None:
        """Store the collaborating components."""
        self._probe = probe
        self._reconciler = reconciler
        self._waiter = waiter
        self._collector = collector

    def run(
        self,
        specs: Sequence[ResourceSpec],
        options: RunOptions | None = None,
        *,
        token: CancellationToken | None = None,
        op: OperationScope | None = None,
    ) -> ReconciliationReport:
        """Reconcile *specs* and return a report naming every resource."""
        options = options or RunOptions()
        token = token or CancellationToken()
        start = time.perf_counter()
        specs = list(specs)
        _step(op, RunState.INIT, detail=f"{len(specs)} resource(s)")

        try:
            ordered = order(specs)
            groups = levels(specs) if options.max_concurrency > 1 else [(spec,) for spec in ordered]
        except ConfigurationError as exc:
            _step(op, RunState.FAILED, status="error", detail=str(exc))
            outcomes = [_not_attempted(spec, f"configuration error ({exc})") for spec in specs]
            return build_report(
                outcomes,
                aborted=True,
                error=str(exc),
                metadata={**self._metadata(options, specs, start), "error_kind": exc.kind},
            )
        _step(op, RunState.SEQUENCING, detail=", ".join(spec.key for spec in ordered))

        dependents = dependents_of(ordered)
        results: dict[str, ReconciliationOutcome] = {}
        abort_reason: str | None = None
        cancelled = False

        for group in groups:
            pending: list[ResourceSpec] = []
            for spec in group:
                if token.cancelled:
                    cancelled = True
                    abort_reason = "run cancelled"
                    break
                blocked = sorted(
                    dep for dep in spec.depends_on if not results[dep].status.is_success
                )
                if blocked:
                    results[spec.key] = ReconciliationOutcome(
                        key=spec.key,
                        kind=spec.kind,
                        status=OutcomeStatus.SKIPPED,
                        reason=f"dependency not satisfied: {', '.join(blocked)}",
                    )
                    _step(op, RunState.RECONCILING, spec.key, status="skipped", detail="blocked")
                    continue
                pending.append(spec)
            if abort_reason is not None:
                break

            for spec, outcome in self._execute(pending, options, token, op):
                results[spec.key] = outcome

            for spec in pending:
                outcome = results[spec.key]
                if not outcome.is_failure:
                    continue
                policy = self._policy_for(spec, options, dependents)
                if outcome.error_kind in ALWAYS_FATAL or policy is FailurePolicy.FATAL:
                    cancelled = cancelled or token.cancelled or outcome.error_kind == "cancelled"
                    abort_reason = f"'{spec.key}' failed ({outcome.error_kind})"
                    break
            if abort_reason is not None:
                break

        if abort_reason is None and token.cancelled and any(
            outcome.is_failure for outcome in results.values()
        ):
            cancelled = True
            abort_reason = "run cancelled"

        outcomes: list[ReconciliationOutcome] = []
        for spec in ordered:
            outcome = results.get(spec.key)
            if outcome is None:
                outcome = _not_attempted(spec, f"run aborted after {abort_reason}")
            outcomes.append(outcome)

        aborted = abort_reason is not None
        _step(
            op,
            RunState.FAILED if aborted else RunState.DONE,
            status="error" if aborted else "success",
            detail=abort_reason,
        )
        return build_report(
            outcomes,
            aborted=aborted,
            error=abort_reason,
            cancelled=cancelled,
            metadata=self._metadata(options, ordered, start),
        )

    # ------------------------------------------------------------------
    def _execute(
        self,
        pending: Sequence[ResourceSpec],
        options: RunOptions,
        token: CancellationToken,
        op: OperationScope | None,
    ) -> list[tuple[ResourceSpec, ReconciliationOutcome]]:
        max_workers = max(1, options.max_concurrency)
        if max_workers == 1 or len(pending) <= 1:
            return [(spec, self._process(spec, options, token, op)) for spec in pending]

        results: list[ReconciliationOutcome | None] = [None] * len(pending)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_index: dict[concurrent.futures.Future[ReconciliationOutcome], int] = {}
            for index, spec in enumerate(pending):
                future = executor.submit(self._process, spec, options, token, op)
                future_to_index[future] = index
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return [
            (spec, outcome)
            for spec, outcome in zip(pending, results, strict=True)
            if outcome is not None
        ]

    def _process(
        self,
        spec: ResourceSpec,
        options: RunOptions,
        token: CancellationToken,
        op: OperationScope | None,
    ) -> ReconciliationOutcome:
        start = time.perf_counter()
        try:
            observed = self._probe.probe(spec)
        except (ConfigurationError, ProbeError) as exc:
            _step(op, RunState.RECONCILING, spec.key, status="error", detail=str(exc))
            return _failed(spec, exc, start)

        outcome = self._reconciler.reconcile(
            spec,
            observed,
            force=options.force_reinstall,
            timeout_budget=options.timeout_budget,
        )
        _step(
            op,
            RunState.RECONCILING,
            spec.key,
            status=outcome.status.value,
            detail=outcome.reason or outcome.error or outcome.action,
        )

        if outcome.is_failure:
            bundle = self._collector.collect(spec.kind, spec.key, category="mutation")
            return replace(outcome, diagnostics=bundle, duration_ms=_duration_ms(start))

        if outcome.rollout is None:
            return replace(outcome, duration_ms=_duration_ms(start))

        try:
            converged = self._waiter.wait(outcome.rollout, token=token)
        except RolloutTimeoutError as exc:
            _step(op, RunState.WAITING, spec.key, status="error", detail=str(exc))
            bundle = self._collector.collect(spec.kind, spec.key, category="timeout")
            return replace(
                outcome,
                status=OutcomeStatus.FAILED,
                error=str(exc),
                error_kind=exc.kind,
                diagnostics=bundle,
                duration_ms=_duration_ms(start),
            )
        except Cancelled as exc:
            _step(op, RunState.WAITING, spec.key, status="cancelled", detail=str(exc))
            bundle = None
            if options.collect_on_cancel:
                bundle = self._collector.collect(spec.kind, spec.key, category="cancelled")
            return replace(
                outcome,
                status=OutcomeStatus.FAILED,
                error=str(exc),
                error_kind=exc.kind,
                diagnostics=bundle,
                duration_ms=_duration_ms(start),
            )
        _step(op, RunState.WAITING, spec.key, detail=f"converged after {converged.polls} poll(s)")
        return replace(outcome, duration_ms=_duration_ms(start))

    @staticmethod
    def _policy_for(
        spec: ResourceSpec,
        options: RunOptions,
        dependents: Mapping[str, frozenset[str]],
    ) -> FailurePolicy:
        override = options.policy_overrides.get(spec.key)
        if override is not None:
            return override
        if spec.failure_policy is not None:
            return spec.failure_policy
        if options.failure_policy is not None:
            return options.failure_policy
        if dependents.get(spec.key):
            return FailurePolicy.FATAL
        return FailurePolicy.BEST_EFFORT

    @staticmethod
    def _metadata(
        options: RunOptions,
        specs: Sequence[ResourceSpec],
        start: float,
    ) -> dict[str, object]:
        return {
            "duration_ms": _duration_ms(start),
            "resource_count": len(specs),
            "order": [spec.key for spec in specs],
            "timeout_budget": options.timeout_budget,
            "max_concurrency": options.max_concurrency,
            "force_reinstall": options.force_reinstall,
        }


def _step(
    op: OperationScope | None,
    state: RunState,
    key: str | None = None,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is None:
        return
    name = state.value if key is None else f"{state.value}:{key}"
    op.add_step(name, status=status, detail=detail)


__all__ = ["ProvisioningOrchestrator", "RunOptions", "RunState"]
