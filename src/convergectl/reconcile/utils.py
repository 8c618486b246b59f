"""Utility helpers for serialising reconciliation reports."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

from .models import DiagnosticBundle, OutcomeStatus, ReconciliationReport, RolloutHandle


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def serialize_bundle(bundle: DiagnosticBundle) -> dict[str, object]:
    """Convert a diagnostic bundle into a JSON-serialisable mapping."""
    return {
        "resource_key": bundle.resource_key,
        "collected_at": bundle.collected_at.isoformat(),
        "status": _sanitize_payload(bundle.status_snapshot),
        "describe": bundle.describe_output,
        "logs": list(bundle.recent_log_lines),
        "hint": bundle.hint,
        "errors": list(bundle.errors),
    }


def _serialize_rollout(handle: RolloutHandle) -> dict[str, object]:
    return {
        "resource_key": handle.resource_key,
        "started_at": handle.started_at.isoformat(),
        "timeout_budget": handle.timeout_budget,
    }


def serialize_report(report: ReconciliationReport) -> dict[str, object]:
    """Convert a reconciliation report into a JSON-serialisable mapping."""
    totals = {status.value: int(report.totals.get(status, 0)) for status in OutcomeStatus}
    summary_payload: dict[str, object] = {
        "status": report.status.value,
        "totals": totals,
        "cancelled": report.cancelled,
    }
    if report.error:
        summary_payload["error"] = report.error

    outcomes_payload: list[dict[str, object]] = []
    for outcome in report.outcomes:
        payload: dict[str, object] = {
            "key": outcome.key,
            "kind": outcome.kind.value,
            "status": outcome.status.value,
        }
        if outcome.action:
            payload["action"] = outcome.action
        if outcome.reason:
            payload["reason"] = outcome.reason
        if outcome.error:
            payload["error"] = outcome.error
            payload["error_kind"] = outcome.error_kind
        if outcome.rollout is not None:
            payload["rollout"] = _serialize_rollout(outcome.rollout)
        if outcome.diagnostics is not None:
            payload["diagnostics"] = serialize_bundle(outcome.diagnostics)
        if outcome.duration_ms is not None:
            payload["duration_ms"] = outcome.duration_ms
        outcomes_payload.append(payload)

    metadata_payload = _sanitize_payload(report.metadata) if report.metadata else {}
    return {
        "summary": summary_payload,
        "outcomes": outcomes_payload,
        "metadata": metadata_payload,
    }


__all__ = ["serialize_bundle", "serialize_report"]
