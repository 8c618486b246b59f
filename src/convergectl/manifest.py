"""Load resource specs from a YAML manifest.

A manifest is a mapping with a ``resources`` list::

    resources:
      - kind: Policy
        key: AWSLoadBalancerControllerIAMPolicy
        attributes:
          document_url: https://example.com/iam_policy.json
      - kind: HelmRelease
        key: kube-system/aws-load-balancer-controller
        depends_on: [AWSLoadBalancerControllerIAMPolicy]
        owned: true
        failure_policy: fatal
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

import yaml

from .config import ConfigError
from .reconcile.models import AttributeValue, FailurePolicy, ResourceKind, ResourceSpec

ALLOWED_ENTRY_KEYS = {
    "kind",
    "key",
    "attributes",
    "depends_on",
    "failure_policy",
    "owned",
    "validate_only",
}


def load_specs(path: Path) -> list[ResourceSpec]:
    """Read *path* and return its resource specs in file order."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read manifest {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse manifest {path}: {exc}") from exc
    return parse_specs(data, source=str(path))


def parse_specs(data: object, *, source: str = "manifest") -> list[ResourceSpec]:
    """Convert decoded manifest *data* into :class:`ResourceSpec` objects."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"{source} must contain a mapping at the top level.")
    entries = data.get("resources")
    if entries is None:
        raise ConfigError(f"{source} has no 'resources' list.")
    if isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
        raise ConfigError(f"{source}: 'resources' must be a list.")
    return [_parse_entry(entry, f"{source}: resources[{index}]") for index, entry in enumerate(entries)]


def _parse_entry(entry: object, label: str) -> ResourceSpec:
    if not isinstance(entry, Mapping):
        raise ConfigError(f"{label} must be a mapping.")
    unknown = set(entry.keys()) - ALLOWED_ENTRY_KEYS
    if unknown:
        raise ConfigError(f"{label} has unknown keys: {', '.join(sorted(map(str, unknown)))}.")

    try:
        kind = ResourceKind.parse(str(entry.get("kind", "")))
    except ValueError as exc:
        raise ConfigError(f"{label}: {exc}") from exc

    key = entry.get("key")
    if not isinstance(key, str) or not key.strip():
        raise ConfigError(f"{label} needs a non-empty string 'key'.")

    return ResourceSpec(
        kind=kind,
        key=key.strip(),
        attributes=_parse_attributes(entry.get("attributes"), label),
        depends_on=_parse_depends_on(entry.get("depends_on"), label),
        failure_policy=_parse_failure_policy(entry.get("failure_policy"), label),
        owned=_parse_flag(entry.get("owned"), f"{label}.owned"),
        validate_only=_parse_flag(entry.get("validate_only"), f"{label}.validate_only"),
    )


def _parse_attributes(value: object, label: str) -> dict[str, AttributeValue]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label}.attributes must be a mapping.")
    attributes: dict[str, AttributeValue] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            attributes[str(key)] = item
        elif isinstance(item, (str, int, float)):
            attributes[str(key)] = str(item)
        else:
            raise ConfigError(
                f"{label}.attributes.{key} must be a string or boolean, not {type(item).__name__}."
            )
    return attributes


def _parse_depends_on(value: object, label: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    if not isinstance(value, Sequence):
        raise ConfigError(f"{label}.depends_on must be a list of keys.")
    return frozenset(str(item) for item in value)


def _parse_failure_policy(value: object, label: str) -> FailurePolicy | None:
    if value is None:
        return None
    text = str(value).strip().lower().replace("_", "-")
    try:
        return FailurePolicy(text)
    except ValueError as exc:
        raise ConfigError(f"{label}.failure_policy must be 'fatal' or 'best-effort'.") from exc


def _parse_flag(value: object, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{label} must be a boolean.")


__all__ = ["load_specs", "parse_specs"]
