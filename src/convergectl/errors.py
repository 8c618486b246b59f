"""Exception taxonomy shared by the reconciliation core."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class ConvergeError(RuntimeError):
    """Base class for reconciliation failures."""

    kind = "error"


class ConfigurationError(ConvergeError):
    """Raised for invalid resource configuration. Always fatal."""

    kind = "configuration"


class CycleError(ConfigurationError):
    """Raised when ``depends_on`` relations form a cycle."""

    def __init__(self, members: Sequence[str]) -> None:
        """Store the keys participating in the cycle."""
        self.members = tuple(members)
        chain = " -> ".join([*self.members, self.members[0]]) if self.members else ""
        super().__init__(f"Dependency cycle detected: {chain}")


class UnsupportedKindError(ConfigurationError):
    """Raised when no control plane handles a resource kind."""


class ProbeError(ConvergeError):
    """Raised when a control plane cannot be queried (transport/auth)."""

    kind = "probe"


class MutationError(ConvergeError):
    """Raised when a create, update or delete call fails."""

    kind = "mutation"


class RolloutTimeoutError(ConvergeError):
    """Raised when a rollout does not converge within its budget."""

    kind = "timeout"

    def __init__(
        self,
        resource_key: str,
        timeout_budget: float,
        last_status: Mapping[str, Any] | None = None,
    ) -> None:
        """Record the budget and the last status seen while polling."""
        self.resource_key = resource_key
        self.timeout_budget = timeout_budget
        self.last_status = dict(last_status) if last_status else {}
        super().__init__(
            f"Rollout of '{resource_key}' did not converge within {timeout_budget:g}s."
        )


class Cancelled(ConvergeError):
    """Raised when a wait is interrupted by its cancellation token."""

    kind = "cancelled"


__all__ = [
    "Cancelled",
    "ConfigurationError",
    "ConvergeError",
    "CycleError",
    "MutationError",
    "ProbeError",
    "RolloutTimeoutError",
    "UnsupportedKindError",
]
