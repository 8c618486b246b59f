"""Tests for report serialisation helpers."""
from __future__ import annotations

import json
from datetime import UTC, datetime

from convergectl.reconcile.models import (
    DiagnosticBundle,
    OutcomeStatus,
    ReconciliationOutcome,
    ResourceKind,
    RolloutHandle,
    build_report,
)
from convergectl.reconcile.utils import serialize_bundle, serialize_report

STARTED = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def test_serialize_report_is_json_safe() -> None:
    """Reports become plain mappings with enum values and ISO timestamps."""
    bundle = DiagnosticBundle(
        resource_key="kube-system/controller",
        status_snapshot={"ready": False, "replicas": {"desired": 2}},
        recent_log_lines=("error: AccessDenied",),
        hint="check IAM",
        collected_at=STARTED,
    )
    outcomes = [
        ReconciliationOutcome(
            key="ControllerPolicy",
            kind=ResourceKind.POLICY,
            status=OutcomeStatus.ALREADY_SATISFIED,
            duration_ms=3,
        ),
        ReconciliationOutcome(
            key="kube-system/controller",
            kind=ResourceKind.HELM_RELEASE,
            status=OutcomeStatus.FAILED,
            action="create",
            error="did not converge",
            error_kind="timeout",
            rollout=RolloutHandle(
                resource_key="kube-system/controller",
                kind=ResourceKind.HELM_RELEASE,
                started_at=STARTED,
                timeout_budget=300.0,
            ),
            diagnostics=bundle,
        ),
    ]
    report = build_report(outcomes, metadata={"order": ("ControllerPolicy", "kube-system/controller")})

    payload = serialize_report(report)

    assert payload["summary"] == {
        "status": "partial-failure",
        "totals": {"already-satisfied": 1, "created": 0, "skipped": 0, "failed": 1},
        "cancelled": False,
    }
    first, second = payload["outcomes"]
    assert first == {
        "key": "ControllerPolicy",
        "kind": "Policy",
        "status": "already-satisfied",
        "duration_ms": 3,
    }
    assert second["error_kind"] == "timeout"
    assert second["rollout"]["started_at"] == "2024-05-01T12:00:00+00:00"
    assert second["diagnostics"]["logs"] == ["error: AccessDenied"]
    assert payload["metadata"] == {"order": ["ControllerPolicy", "kube-system/controller"]}
    json.dumps(payload)


def test_serialize_report_includes_run_error() -> None:
    """A fatal run carries its error in the summary."""
    report = build_report([], aborted=True, error="cycle", cancelled=True)

    payload = serialize_report(report)

    assert payload["summary"]["status"] == "fatal"
    assert payload["summary"]["error"] == "cycle"
    assert payload["summary"]["cancelled"] is True
    assert payload["metadata"] == {}


def test_serialize_bundle_stringifies_unknown_values() -> None:
    """Status values that are not JSON types are converted to strings."""
    bundle = DiagnosticBundle(
        resource_key="subnet-a",
        status_snapshot={"fetched": STARTED, "extra": object},
        errors=("status: forbidden",),
        collected_at=STARTED,
    )

    payload = serialize_bundle(bundle)

    assert payload["status"]["fetched"] == "2024-05-01T12:00:00+00:00"
    assert payload["status"]["extra"] == str(object)
    assert payload["errors"] == ["status: forbidden"]
    assert payload["describe"] == ""
