"""Configuration loader for convergectl.

Values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/convergectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CONVERGECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CONVERGECTL_ROLLOUT__TIMEOUT=600
    export CONVERGECTL_SUBNETS__AUTO_TAG_PUBLIC=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is an immutable :class:`RunConfiguration`.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import cast

import yaml

from .reconcile.engine import RunOptions
from .reconcile.models import FailurePolicy

ENV_PREFIX = "CONVERGECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

EKS_CONTEXT_PATTERN = re.compile(
    r"^arn:(?P<partition>[\w-]+):eks:(?P<region>[a-z0-9-]+):(?P<account>\d+):cluster/(?P<name>.+)$"
)
EKSCTL_CONTEXT_PATTERN = re.compile(
    r"^[^@]+@(?P<name>[^.]+)\.(?P<region>[a-z0-9-]+)\.eksctl\.io$"
)
POLICY_DOCUMENT_URL = (
    "https://raw.githubusercontent.com/kubernetes-sigs/aws-load-balancer-controller/"
    "{controller_version}/docs/install/iam_policy.json"
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ChartConfig:
    """Helm chart coordinates for the controller release."""

    name: str = "aws-load-balancer-controller"
    repo_name: str = "eks"
    repo_url: str = "https://aws.github.io/eks-charts"
    version: str = "1.7.2"
    controller_version: str = "v2.7.2"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "repo_name": self.repo_name,
            "repo_url": self.repo_url,
            "version": self.version,
            "controller_version": self.controller_version,
        }


@dataclass(frozen=True)
class SubnetConfig:
    """Subnet validation and tagging behaviour."""

    check: bool = True
    auto_tag_public: bool = False
    explicit_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "check": self.check,
            "auto_tag_public": self.auto_tag_public,
            "explicit_ids": list(self.explicit_ids),
        }


@dataclass(frozen=True)
class RolloutConfig:
    """Rollout wait budget."""

    timeout: float = 300.0
    poll_interval: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "poll_interval": self.poll_interval}


@dataclass(frozen=True)
class FailurePolicyConfig:
    """Run-wide failure policy and per-resource overrides."""

    default: FailurePolicy | None = None
    overrides: Mapping[str, FailurePolicy] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "default": self.default.value if self.default is not None else "auto",
            "overrides": {key: value.value for key, value in sorted(self.overrides.items())},
        }


@dataclass(frozen=True)
class ToolsConfig:
    """External binaries used by the cluster adapter."""

    kubectl: str = "kubectl"
    helm: str = "helm"
    kube_context: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"kubectl": self.kubectl, "helm": self.helm, "kube_context": self.kube_context}


@dataclass(frozen=True)
class RunConfiguration:
    """Resolved configuration values for convergectl."""

    config_file: Path
    logs_dir: Path
    cluster_name: str | None
    region: str | None
    vpc_id: str | None
    namespace: str
    policy_name: str
    policy_document_url: str
    service_account: str
    role_name: str
    chart: ChartConfig
    subnets: SubnetConfig
    extra_args: Mapping[str, str]
    force_reinstall: bool
    rollout: RolloutConfig
    failure_policy: FailurePolicyConfig
    max_concurrency: int
    tools: ToolsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "cluster_name": self.cluster_name,
            "region": self.region,
            "vpc_id": self.vpc_id,
            "namespace": self.namespace,
            "policy_name": self.policy_name,
            "policy_document_url": self.policy_document_url,
            "service_account": self.service_account,
            "role_name": self.role_name,
            "chart": self.chart.to_dict(),
            "subnets": self.subnets.to_dict(),
            "extra_args": dict(sorted(self.extra_args.items())),
            "force_reinstall": self.force_reinstall,
            "rollout": self.rollout.to_dict(),
            "failure_policy": self.failure_policy.to_dict(),
            "max_concurrency": self.max_concurrency,
            "tools": self.tools.to_dict(),
        }

    def with_cluster(self, cluster_name: str | None, region: str | None) -> RunConfiguration:
        """Return a copy with missing cluster name and region filled in."""
        return replace(
            self,
            cluster_name=self.cluster_name or cluster_name,
            region=self.region or region,
        )

    def to_run_options(self) -> RunOptions:
        """Translate the configuration into orchestrator options."""
        return RunOptions(
            timeout_budget=self.rollout.timeout,
            failure_policy=self.failure_policy.default,
            policy_overrides=dict(self.failure_policy.overrides),
            force_reinstall=self.force_reinstall,
            max_concurrency=self.max_concurrency,
        )


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/convergectl/config.yml",
    "logs_dir": "/var/log/convergectl",
    "cluster_name": None,
    "region": None,
    "vpc_id": None,
    "namespace": "kube-system",
    "policy_name": "AWSLoadBalancerControllerIAMPolicy",
    "policy_document_url": None,  # derived from chart.controller_version when absent
    "service_account": "aws-load-balancer-controller",
    "role_name": "AmazonEKSLoadBalancerControllerRole",
    "chart": {
        "name": "aws-load-balancer-controller",
        "repo_name": "eks",
        "repo_url": "https://aws.github.io/eks-charts",
        "version": "1.7.2",
        "controller_version": "v2.7.2",
    },
    "subnets": {
        "check": True,
        "auto_tag_public": False,
        "explicit_ids": [],
    },
    "extra_args": {},
    "force_reinstall": False,
    "rollout": {
        "timeout": 300.0,
        "poll_interval": 5.0,
    },
    "failure_policy": {
        "default": "auto",
        "overrides": {},
    },
    "max_concurrency": 1,
    "tools": {
        "kubectl": "kubectl",
        "helm": "helm",
        "kube_context": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_NESTED_KEYS: dict[str, set[str]] = {
    "chart": {"name", "repo_name", "repo_url", "version", "controller_version"},
    "subnets": {"check", "auto_tag_public", "explicit_ids"},
    "rollout": {"timeout", "poll_interval"},
    "failure_policy": {"default", "overrides"},
    "tools": {"kubectl", "helm", "kube_context"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> RunConfiguration:
    """Load and merge configuration sources into a :class:`RunConfiguration`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = str(merged["config_file"])
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_run_configuration(merged)


def infer_cluster_context(context: str | None) -> tuple[str | None, str | None]:
    """Return ``(cluster_name, region)`` parsed from a kube context name.

    EKS contexts usually look like ``arn:aws:eks:<region>:<account>:cluster/<name>``;
    eksctl writes ``<user>@<name>.<region>.eksctl.io``. Any other context
    yields its last path segment as the cluster name and no region.
    """
    if not context:
        return None, None
    text = context.strip()
    match = EKS_CONTEXT_PATTERN.match(text)
    if match:
        return match.group("name"), match.group("region")
    match = EKSCTL_CONTEXT_PATTERN.match(text)
    if match:
        return match.group("name"), match.group("region")
    name = text.rsplit("/", 1)[-1]
    return name or None, None


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    policy_map = _as_dict(raw.get("failure_policy"), "failure_policy")
    _parse_policy(policy_map.get("default"), "failure_policy.default", allow_auto=True)
    overrides = _as_dict(policy_map.get("overrides"), "failure_policy.overrides")
    for key, value in overrides.items():
        _parse_policy(value, f"failure_policy.overrides.{key}", allow_auto=False)

    max_concurrency = _expect_int(raw.get("max_concurrency"), "max_concurrency", default=1)
    if max_concurrency < 1:
        raise ConfigError("max_concurrency must be at least 1.")


def _build_run_configuration(raw: Mapping[str, object]) -> RunConfiguration:
    chart_mapping = _as_dict(raw.get("chart"), "chart")
    chart = ChartConfig(
        name=_expect_str(chart_mapping.get("name", ChartConfig.name), "chart.name"),
        repo_name=_expect_str(chart_mapping.get("repo_name", ChartConfig.repo_name), "chart.repo_name"),
        repo_url=_expect_str(chart_mapping.get("repo_url", ChartConfig.repo_url), "chart.repo_url"),
        version=_expect_str(chart_mapping.get("version", ChartConfig.version), "chart.version"),
        controller_version=_expect_str(
            chart_mapping.get("controller_version", ChartConfig.controller_version),
            "chart.controller_version",
        ),
    )

    subnets_mapping = _as_dict(raw.get("subnets"), "subnets")
    subnets = SubnetConfig(
        check=_expect_bool(subnets_mapping.get("check"), "subnets.check", default=True),
        auto_tag_public=_expect_bool(
            subnets_mapping.get("auto_tag_public"), "subnets.auto_tag_public", default=False
        ),
        explicit_ids=_parse_id_list(subnets_mapping.get("explicit_ids"), "subnets.explicit_ids"),
    )

    rollout_mapping = _as_dict(raw.get("rollout"), "rollout")
    rollout = RolloutConfig(
        timeout=_expect_positive_float(rollout_mapping.get("timeout"), "rollout.timeout", default=300.0),
        poll_interval=_expect_positive_float(
            rollout_mapping.get("poll_interval"), "rollout.poll_interval", default=5.0
        ),
    )

    policy_mapping = _as_dict(raw.get("failure_policy"), "failure_policy")
    overrides_mapping = _as_dict(policy_mapping.get("overrides"), "failure_policy.overrides")
    failure_policy = FailurePolicyConfig(
        default=_parse_policy(policy_mapping.get("default"), "failure_policy.default", allow_auto=True),
        overrides={
            str(key): cast(
                FailurePolicy,
                _parse_policy(value, f"failure_policy.overrides.{key}", allow_auto=False),
            )
            for key, value in overrides_mapping.items()
        },
    )

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(
        kubectl=_expect_str(tools_mapping.get("kubectl", "kubectl"), "tools.kubectl"),
        helm=_expect_str(tools_mapping.get("helm", "helm"), "tools.helm"),
        kube_context=_optional_str(tools_mapping.get("kube_context"), "tools.kube_context"),
    )

    extra_args_mapping = _as_dict(raw.get("extra_args"), "extra_args")
    extra_args = {str(key): _scalar_text(value) for key, value in extra_args_mapping.items()}

    document_url = _optional_str(raw.get("policy_document_url"), "policy_document_url")
    if document_url is None:
        document_url = POLICY_DOCUMENT_URL.format(controller_version=chart.controller_version)

    return RunConfiguration(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        cluster_name=_optional_str(raw.get("cluster_name"), "cluster_name"),
        region=_optional_str(raw.get("region"), "region"),
        vpc_id=_optional_str(raw.get("vpc_id"), "vpc_id"),
        namespace=_expect_str(raw.get("namespace", "kube-system"), "namespace"),
        policy_name=_expect_str(raw.get("policy_name"), "policy_name"),
        policy_document_url=document_url,
        service_account=_expect_str(raw.get("service_account"), "service_account"),
        role_name=_expect_str(raw.get("role_name"), "role_name"),
        chart=chart,
        subnets=subnets,
        extra_args=extra_args,
        force_reinstall=_expect_bool(raw.get("force_reinstall"), "force_reinstall", default=False),
        rollout=rollout,
        failure_policy=failure_policy,
        max_concurrency=_expect_int(raw.get("max_concurrency"), "max_concurrency", default=1),
        tools=tools,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _parse_policy(value: object, label: str, *, allow_auto: bool) -> FailurePolicy | None:
    if value is None or (allow_auto and str(value).strip().lower() == "auto"):
        if allow_auto:
            return None
        raise ConfigError(f"{label} must be 'fatal' or 'best-effort'.")
    text = str(value).strip().lower().replace("_", "-")
    try:
        return FailurePolicy(text)
    except ValueError as exc:
        allowed = "'auto', 'fatal' or 'best-effort'" if allow_auto else "'fatal' or 'best-effort'"
        raise ConfigError(f"{label} must be {allowed}. Got {value!r}.") from exc


def _parse_id_list(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if isinstance(value, Sequence):
        return tuple(str(item).strip() for item in value if str(item).strip())
    raise ConfigError(f"Expected {label} to be a list or comma separated string.")


def _scalar_text(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a number. Got {type(value).__name__}.")
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return number


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, label: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"Expected {label} to be a non-empty string. Got {value!r}.")


def _optional_str(value: object, label: str) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value).strip() or None
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _as_dict(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(key): item for key, item in value.items()}
    raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")


__all__ = [
    "ChartConfig",
    "ConfigError",
    "FailurePolicyConfig",
    "RolloutConfig",
    "RunConfiguration",
    "SubnetConfig",
    "ToolsConfig",
    "infer_cluster_context",
    "load_config",
]
