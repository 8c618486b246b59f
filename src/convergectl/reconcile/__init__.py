"""Reconciliation core: probe, reconcile, sequence, wait and diagnose."""

from __future__ import annotations

from .diagnostics import DiagnosticCollector
from .engine import ProvisioningOrchestrator, RunOptions, RunState
from .models import (
    DiagnosticBundle,
    FailurePolicy,
    ObservedState,
    OutcomeStatus,
    ReconciliationOutcome,
    ReconciliationReport,
    ResourceKind,
    ResourceSpec,
    RolloutHandle,
    RunStatus,
    aggregate_status,
    build_report,
)
from .probes import ResourceProbe
from .reconcilers import PlannedAction, ResourceReconciler, diff_attributes, plan_action
from .sequencer import levels, order
from .waiter import CancellationToken, Converged, RolloutWaiter

__all__ = [
    "CancellationToken",
    "Converged",
    "DiagnosticBundle",
    "DiagnosticCollector",
    "FailurePolicy",
    "ObservedState",
    "OutcomeStatus",
    "PlannedAction",
    "ProvisioningOrchestrator",
    "ReconciliationOutcome",
    "ReconciliationReport",
    "ResourceKind",
    "ResourceProbe",
    "ResourceReconciler",
    "ResourceSpec",
    "RolloutHandle",
    "RolloutWaiter",
    "RunOptions",
    "RunState",
    "RunStatus",
    "aggregate_status",
    "build_report",
    "diff_attributes",
    "levels",
    "order",
    "plan_action",
]
