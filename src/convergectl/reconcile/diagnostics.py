"""Best-effort diagnostic gathering for failed resources."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from ..providers.base import CloudControlPlane, ClusterControlPlane
from .models import DiagnosticBundle, ResourceKind
from .traits import KIND_TRAITS

DEFAULT_LOG_LINES = 80

HINTS: Mapping[str, str] = {
    "timeout": (
        "Check: service account IAM annotation, IAM permissions, subnet tags, "
        "security group rules, and chart/controller versions."
    ),
    "mutation": (
        "The control plane rejected the change. Verify credentials and quotas, "
        "then re-run; completed resources are skipped."
    ),
    "probe": (
        "The control plane could not be queried. Check network access and "
        "credentials (aws sts get-caller-identity, kubectl get nodes)."
    ),
    "cancelled": "The wait was interrupted. Re-run to resume; completed resources are skipped.",
    "configuration": "Fix the resource configuration; this failure is never retried.",
}

T = TypeVar("T")


class DiagnosticCollector:
    """Gather status, describe output and recent logs without ever raising."""

    def __init__(
        self,
        cloud: CloudControlPlane,
        cluster: ClusterControlPlane,
        *,
        log_lines: int = DEFAULT_LOG_LINES,
    ) -> None:
        """Store control plane clients and the log tail bound."""
        self._cloud = cloud
        self._cluster = cluster
        self._log_lines = max(log_lines, 0)

    def collect(
        self,
        kind: ResourceKind,
        resource_key: str,
        *,
        category: str = "timeout",
    ) -> DiagnosticBundle:
        """Return a bundle for *resource_key*; missing pieces stay empty."""
        errors: list[str] = []
        traits = KIND_TRAITS.get(kind)
        on_cluster = traits is None or traits.plane == "cluster"

        if on_cluster:
            status = self._attempt(
                "status", errors, lambda: self._cluster.get_status(kind, resource_key)
            )
            describe = self._attempt(
                "describe", errors, lambda: self._cluster.describe(kind, resource_key)
            )
            logs = self._attempt(
                "logs",
                errors,
                lambda: self._cluster.get_logs(kind, resource_key, self._log_lines),
            )
        else:
            status = self._attempt(
                "status", errors, lambda: self._cloud.describe(kind, resource_key)
            )
            describe = None
            logs = None

        return DiagnosticBundle(
            resource_key=resource_key,
            status_snapshot=_as_snapshot(status),
            recent_log_lines=self._tail(logs),
            describe_output=describe if isinstance(describe, str) else "",
            hint=HINTS.get(category, ""),
            errors=tuple(errors),
        )

    def _tail(self, text: object) -> tuple[str, ...]:
        if not isinstance(text, str) or not text or self._log_lines == 0:
            return ()
        lines = text.splitlines()
        return tuple(lines[-self._log_lines :])

    @staticmethod
    def _attempt(label: str, errors: list[str], fetch: Callable[[], T]) -> T | None:
        try:
            return fetch()
        except Exception as exc:  # noqa: BLE001 - diagnostics must not raise
            errors.append(f"{label}: {exc}")
            return None


def _as_snapshot(value: object) -> dict[str, Any]:
    if isinstance(value, Mapping):
        return {str(key): item for key, item in value.items()}
    return {}


__all__ = ["DEFAULT_LOG_LINES", "DiagnosticCollector", "HINTS"]
