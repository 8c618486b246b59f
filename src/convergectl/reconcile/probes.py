"""Read-only observation of external resources."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..errors import ProbeError
from ..providers.base import (
    CloudControlPlane,
    CloudProviderError,
    ClusterControlPlane,
    ClusterProviderError,
)
from .models import ObservedState, ResourceSpec
from .traits import traits_for


class ResourceProbe:
    """Query the owning control plane for the current state of a resource."""

    def __init__(self, cloud: CloudControlPlane, cluster: ClusterControlPlane) -> None:
        """Store the control plane clients."""
        self._cloud = cloud
        self._cluster = cluster

    def probe(self, spec: ResourceSpec) -> ObservedState:
        """Return the observed state of *spec*.

        Absence is a valid observation. Transport or authentication failures
        raise :class:`ProbeError`; unsupported kinds raise
        :class:`~convergectl.errors.UnsupportedKindError`.
        """
        traits = traits_for(spec.kind)
        try:
            if traits.plane == "cloud":
                raw = self._cloud.describe(spec.kind, spec.key)
            else:
                raw = self._cluster.get_status(spec.kind, spec.key)
        except (CloudProviderError, ClusterProviderError) as exc:
            raise ProbeError(f"Failed to probe {spec.kind.value} '{spec.key}': {exc}") from exc
        if raw is None:
            return ObservedState.absent()
        return ObservedState(present=True, attributes=_freeze(raw))


def _freeze(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): value for key, value in raw.items()}


__all__ = ["ResourceProbe"]
