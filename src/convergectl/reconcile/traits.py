"""Per-kind behaviour table shared by the probe and reconciler."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from ..errors import UnsupportedKindError
from .models import ResourceKind

Plane = Literal["cloud", "cluster"]


@dataclass(slots=True, frozen=True)
class KindTraits:
    """How a resource kind is observed and mutated."""

    plane: Plane
    mutable: bool
    creatable: bool = True
    deletable: bool = False
    long_running: bool = False
    cloud_prerequisite: bool = False
    create_only: frozenset[str] = frozenset()


KIND_TRAITS: Mapping[ResourceKind, KindTraits] = {
    ResourceKind.IDENTITY_PROVIDER: KindTraits(
        plane="cloud",
        mutable=False,
        create_only=frozenset({"thumbprint", "client_id"}),
    ),
    ResourceKind.POLICY: KindTraits(
        plane="cloud",
        mutable=False,
        create_only=frozenset({"document", "document_url"}),
    ),
    ResourceKind.SUBNET_TAG: KindTraits(
        plane="cloud",
        mutable=True,
        creatable=False,
    ),
    ResourceKind.SERVICE_ACCOUNT_BINDING: KindTraits(
        plane="cluster",
        mutable=True,
        cloud_prerequisite=True,
        create_only=frozenset({"role_name", "policy_arn", "oidc_provider_arn", "oidc_issuer"}),
    ),
    ResourceKind.HELM_RELEASE: KindTraits(
        plane="cluster",
        mutable=True,
        deletable=True,
        long_running=True,
        create_only=frozenset({"chart", "repo_name", "repo_url", "deployment"}),
    ),
}


def traits_for(kind: ResourceKind) -> KindTraits:
    """Return the traits for *kind* or raise :class:`UnsupportedKindError`."""
    try:
        return KIND_TRAITS[kind]
    except KeyError as exc:
        raise UnsupportedKindError(f"Resource kind '{kind}' is not supported.") from exc


__all__ = ["KIND_TRAITS", "KindTraits", "Plane", "traits_for"]
