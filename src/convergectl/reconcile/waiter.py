"""Bounded, cancellable polling for rollout convergence."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import Cancelled, RolloutTimeoutError
from ..providers.base import ClusterControlPlane, ClusterProviderError
from .models import RolloutHandle

DEFAULT_POLL_INTERVAL = 5.0


class CancellationToken:
    """Cooperative cancellation flag that doubles as an interruptible sleep."""

    def __init__(self) -> None:
        """Create an un-cancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; waiters wake immediately."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if cancelled."""
        return self._event.wait(max(timeout, 0.0))


@dataclass(slots=True, frozen=True)
class Converged:
    """Success signal returned by :meth:`RolloutWaiter.wait`."""

    resource_key: str
    polls: int
    elapsed: float
    status: Mapping[str, Any] = field(default_factory=dict)


def is_converged(status: Mapping[str, Any] | None) -> bool:
    """Return ``True`` when a status mapping reports readiness."""
    if not status:
        return False
    ready = status.get("ready")
    if isinstance(ready, str):
        return ready.strip().lower() == "true"
    return ready is True


class RolloutWaiter:
    """Poll the cluster until a rollout is ready or its budget elapses."""

    def __init__(
        self,
        cluster: ClusterControlPlane,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Store the cluster client, poll interval and clock."""
        self._cluster = cluster
        self._poll_interval = max(poll_interval, 0.0)
        self._clock = clock

    def wait(self, handle: RolloutHandle, *, token: CancellationToken | None = None) -> Converged:
        """Block until *handle* converges.

        Raises :class:`RolloutTimeoutError` with the last observed status once
        ``handle.timeout_budget`` elapses, or :class:`Cancelled` when *token*
        is cancelled. The mutation itself is never retried here.
        """
        token = token or CancellationToken()
        start = self._clock()
        deadline = start + handle.timeout_budget
        last_status: dict[str, Any] = {}
        polls = 0
        while True:
            if token.cancelled:
                raise Cancelled(f"Wait for '{handle.resource_key}' was cancelled.")
            polls += 1
            last_status = self._poll(handle)
            if is_converged(last_status):
                return Converged(
                    resource_key=handle.resource_key,
                    polls=polls,
                    elapsed=self._clock() - start,
                    status=last_status,
                )
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RolloutTimeoutError(handle.resource_key, handle.timeout_budget, last_status)
            if token.wait(min(self._poll_interval, remaining)):
                raise Cancelled(f"Wait for '{handle.resource_key}' was cancelled.")

    def _poll(self, handle: RolloutHandle) -> dict[str, Any]:
        try:
            status = self._cluster.get_status(handle.kind, handle.resource_key)
        except ClusterProviderError as exc:
            return {"ready": False, "error": str(exc)}
        if status is None:
            return {"ready": False, "present": False}
        return dict(status)


__all__ = [
    "CancellationToken",
    "Converged",
    "DEFAULT_POLL_INTERVAL",
    "RolloutWaiter",
    "is_converged",
]
