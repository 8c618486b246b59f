"""Control plane contracts consumed by the reconciliation core."""
from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..reconcile.models import AttributeValue, ResourceKind


class CloudProviderError(RuntimeError):
    """Raised when a cloud control plane call fails."""


class ClusterProviderError(RuntimeError):
    """Raised when a cluster control plane call fails."""


class CloudControlPlane(Protocol):
    """Cloud API surface (identity providers, policies, subnets)."""

    def describe(self, kind: ResourceKind, key: str) -> Mapping[str, Any] | None:
        """Return the resource attributes, or ``None`` when absent."""
        ...

    def create(
        self,
        kind: ResourceKind,
        key: str,
        attributes: Mapping[str, AttributeValue],
    ) -> str:
        """Create the resource and return its provider identifier."""
        ...

    def tag(self, resource_id: str, tags: Mapping[str, AttributeValue]) -> None:
        """Apply *tags* to an existing resource."""
        ...


class ClusterControlPlane(Protocol):
    """Cluster API surface (service accounts, Helm releases)."""

    def get_status(self, kind: ResourceKind, key: str) -> Mapping[str, Any] | None:
        """Return the resource status, or ``None`` when absent."""
        ...

    def apply(
        self,
        kind: ResourceKind,
        key: str,
        spec: Mapping[str, AttributeValue],
    ) -> None:
        """Create or update the resource."""
        ...

    def get_logs(self, kind: ResourceKind, key: str, tail_lines: int) -> str:
        """Return recent log output for the resource's workload."""
        ...

    def describe(self, kind: ResourceKind, key: str) -> str:
        """Return human-readable describe output for triage."""
        ...

    def delete(self, kind: ResourceKind, key: str) -> None:
        """Remove the resource. Used only by force-reinstall."""
        ...


__all__ = [
    "CloudControlPlane",
    "CloudProviderError",
    "ClusterControlPlane",
    "ClusterProviderError",
]
