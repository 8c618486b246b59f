"""Cluster control plane adapter backed by ``kubectl`` and ``helm``."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..reconcile.models import AttributeValue, ResourceKind
from .base import ClusterProviderError

ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "convergectl"
VALUES_PREFIX = "values."
NOT_FOUND_MARKERS = ("not found", "notfound")


def split_key(key: str, default_namespace: str = "default") -> tuple[str, str]:
    """Split a ``namespace/name`` key; bare names use *default_namespace*.

    A type segment between the two, as in ``kube-system/serviceaccount/name``,
    is ignored.
    """
    namespace, _, rest = key.partition("/")
    if not rest:
        return default_namespace, key
    return namespace or default_namespace, rest.rsplit("/", 1)[-1]


def flatten_values(values: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested Helm values into dotted paths."""
    flat: dict[str, Any] = {}
    for key, value in values.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(flatten_values(value, f"{path}."))
        else:
            flat[path] = value
    return flat


def deployment_ready(payload: Mapping[str, Any]) -> bool:
    """Return ``True`` when a Deployment has fully rolled out."""
    metadata = payload.get("metadata") or {}
    spec = payload.get("spec") or {}
    status = payload.get("status") or {}
    desired = int(spec.get("replicas", 1) or 0)
    generation = int(metadata.get("generation", 0) or 0)
    observed_generation = int(status.get("observedGeneration", 0) or 0)
    updated = int(status.get("updatedReplicas", 0) or 0)
    current = int(status.get("replicas", 0) or 0)
    available = int(status.get("availableReplicas", 0) or 0)
    if observed_generation < generation:
        return False
    if updated < desired:
        return False
    if current > updated:
        return False
    return available >= updated


def _is_not_found(result: subprocess.CompletedProcess[str]) -> bool:
    text = f"{result.stderr or ''} {result.stdout or ''}".lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)


def _escape_set_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,")


@dataclass(slots=True)
class KubernetesProvider:
    """Observe and mutate cluster resources through kubectl and helm."""

    kubectl_bin: str = "kubectl"
    helm_bin: str = "helm"
    context: str | None = None
    command_timeout: float = 120.0

    # Context ----------------------------------------------------------
    def current_context(self) -> str | None:
        """Return the active kubeconfig context name, if any."""
        result = self._kubectl(["config", "current-context"], check=False)
        if result.returncode != 0:
            return None
        name = (result.stdout or "").strip()
        return name or None

    def check_access(self) -> None:
        """Raise :class:`ClusterProviderError` when the cluster is unreachable."""
        self._kubectl(["get", "nodes", "-o", "name"])

    # Control plane contract -------------------------------------------
    def get_status(self, kind: ResourceKind, key: str) -> Mapping[str, Any] | None:
        """Return status attributes for *key*, or ``None`` when absent."""
        namespace, name = split_key(key)
        if kind is ResourceKind.SERVICE_ACCOUNT_BINDING:
            return self._service_account_status(namespace, name)
        if kind is ResourceKind.HELM_RELEASE:
            return self._release_status(namespace, name)
        raise ClusterProviderError(f"{kind.value} resources are not managed by the cluster.")

    def apply(
        self,
        kind: ResourceKind,
        key: str,
        spec: Mapping[str, AttributeValue],
    ) -> None:
        """Create or update the resource described by *spec*."""
        namespace, name = split_key(key)
        if kind is ResourceKind.SERVICE_ACCOUNT_BINDING:
            self._apply_service_account(namespace, name, spec)
            return
        if kind is ResourceKind.HELM_RELEASE:
            self._apply_release(namespace, name, spec)
            return
        raise ClusterProviderError(f"{kind.value} resources are not managed by the cluster.")

    def get_logs(self, kind: ResourceKind, key: str, tail_lines: int) -> str:
        """Return the last *tail_lines* log lines of the resource's workload."""
        if kind is not ResourceKind.HELM_RELEASE:
            return ""
        namespace, name = split_key(key)
        result = self._kubectl(
            [
                "logs",
                f"deployment/{name}",
                "-n",
                namespace,
                f"--tail={tail_lines}",
                "--all-containers=true",
            ]
        )
        return result.stdout or ""

    def describe(self, kind: ResourceKind, key: str) -> str:
        """Return ``kubectl describe`` output for the resource."""
        namespace, name = split_key(key)
        if kind is ResourceKind.SERVICE_ACCOUNT_BINDING:
            return self._kubectl(["describe", "serviceaccount", name, "-n", namespace]).stdout or ""
        if kind is ResourceKind.HELM_RELEASE:
            deployment = self._kubectl(["describe", "deployment", name, "-n", namespace])
            pods = self._kubectl(
                [
                    "describe",
                    "pods",
                    "-n",
                    namespace,
                    "-l",
                    f"app.kubernetes.io/instance={name}",
                ],
                check=False,
            )
            return "\n".join(part for part in (deployment.stdout, pods.stdout) if part)
        raise ClusterProviderError(f"{kind.value} resources are not managed by the cluster.")

    def delete(self, kind: ResourceKind, key: str) -> None:
        """Uninstall a Helm release and its deployment."""
        if kind is not ResourceKind.HELM_RELEASE:
            raise ClusterProviderError(f"Refusing to delete {kind.value} '{key}'.")
        namespace, name = split_key(key)
        result = self._helm(["uninstall", name, "-n", namespace], check=False)
        if result.returncode != 0 and not _is_not_found(result):
            message = (result.stderr or result.stdout or "no output").strip()
            raise ClusterProviderError(f"{self.helm_bin} uninstall failed: {message}")
        self._kubectl(["delete", "deployment", name, "-n", namespace, "--ignore-not-found"])

    # Service accounts -------------------------------------------------
    def _service_account_status(self, namespace: str, name: str) -> Mapping[str, Any] | None:
        payload = self._get_json(["get", "serviceaccount", name, "-n", namespace, "-o", "json"])
        if payload is None:
            return None
        metadata = payload.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        labels = metadata.get("labels") or {}
        return {
            "name": name,
            "namespace": namespace,
            "role_arn": annotations.get(ROLE_ARN_ANNOTATION),
            "managed_by": labels.get(MANAGED_BY_LABEL),
        }

    def _apply_service_account(
        self,
        namespace: str,
        name: str,
        spec: Mapping[str, AttributeValue],
    ) -> None:
        annotations: dict[str, str] = {}
        role_arn = spec.get("role_arn")
        if role_arn:
            annotations[ROLE_ARN_ANNOTATION] = str(role_arn)
        manifest = {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                "annotations": annotations,
            },
        }
        self._kubectl(["apply", "-f", "-"], input_text=json.dumps(manifest))

    # Helm releases ----------------------------------------------------
    def _release_status(self, namespace: str, name: str) -> Mapping[str, Any] | None:
        result = self._helm(["status", name, "-n", namespace, "-o", "json"], check=False)
        if result.returncode != 0:
            if _is_not_found(result):
                return None
            message = (result.stderr or result.stdout or "no output").strip()
            raise ClusterProviderError(f"{self.helm_bin} status {name} failed: {message}")
        release = self._parse_json(result, f"helm status {name}")
        info = release.get("info") or {}
        chart_meta = (release.get("chart") or {}).get("metadata") or {}

        values_result = self._helm(["get", "values", name, "-n", namespace, "-o", "json"])
        values = self._parse_json(values_result, f"helm get values {name}") or {}

        status: dict[str, Any] = {
            "status": info.get("status"),
            "revision": release.get("version"),
            "chart_version": chart_meta.get("version"),
            "app_version": chart_meta.get("appVersion"),
        }
        for path, value in flatten_values(values).items():
            status[f"{VALUES_PREFIX}{path}"] = value

        deployment = self._get_json(["get", "deployment", name, "-n", namespace, "-o", "json"])
        if deployment is None:
            status["ready"] = False
            status["deployment"] = "missing"
        else:
            deployment_status = deployment.get("status") or {}
            status["ready"] = deployment_ready(deployment)
            status["replicas"] = deployment_status.get("replicas", 0)
            status["available_replicas"] = deployment_status.get("availableReplicas", 0)
            status["updated_replicas"] = deployment_status.get("updatedReplicas", 0)
        return status

    def _apply_release(
        self,
        namespace: str,
        name: str,
        spec: Mapping[str, AttributeValue],
    ) -> None:
        chart = str(spec.get("chart") or name)
        repo_name = spec.get("repo_name")
        repo_url = spec.get("repo_url")
        if repo_name and repo_url:
            self._ensure_repo(str(repo_name), str(repo_url))
            chart = f"{repo_name}/{chart}"

        args = ["upgrade", "--install", name, chart, "-n", namespace]
        chart_version = spec.get("chart_version")
        if chart_version:
            args.extend(["--version", str(chart_version)])
        for key in sorted(spec):
            if not key.startswith(VALUES_PREFIX):
                continue
            path = key[len(VALUES_PREFIX) :]
            value = spec[key]
            if isinstance(value, bool):
                args.extend(["--set", f"{path}={'true' if value else 'false'}"])
            else:
                args.extend(["--set-string", f"{path}={_escape_set_value(str(value))}"])
        self._helm(args)

    def _ensure_repo(self, repo_name: str, repo_url: str) -> None:
        listing = self._helm(["repo", "list", "-o", "json"], check=False)
        known: set[str] = set()
        if listing.returncode == 0 and listing.stdout.strip():
            try:
                entries = json.loads(listing.stdout)
            except json.JSONDecodeError:
                entries = []
            known = {
                str(entry.get("name"))
                for entry in entries
                if isinstance(entry, Mapping)
            }
        if repo_name not in known:
            self._helm(["repo", "add", repo_name, repo_url])
        self._helm(["repo", "update", repo_name])

    # ------------------------------------------------------------------
    def _get_json(self, args: Sequence[str]) -> dict[str, Any] | None:
        result = self._kubectl(args, check=False)
        if result.returncode != 0:
            if _is_not_found(result):
                return None
            message = (result.stderr or result.stdout or "no output").strip()
            joined = " ".join(args[:3])
            raise ClusterProviderError(f"{self.kubectl_bin} {joined} failed: {message}")
        return self._parse_json(result, " ".join(args[:3]))

    @staticmethod
    def _parse_json(result: subprocess.CompletedProcess[str], label: str) -> dict[str, Any]:
        text = (result.stdout or "").strip()
        if not text or text == "null":
            return {}
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ClusterProviderError(f"Invalid JSON from {label}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ClusterProviderError(f"Unexpected payload from {label}.")
        return payload

    def _kubectl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.kubectl_bin]
        if self.context:
            command.extend(["--context", self.context])
        command.extend(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.kubectl_bin} {' '.join(args[:2])}".rstrip(),
            input_text=input_text,
        )

    def _helm(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.helm_bin, *args]
        if self.context:
            command.extend(["--kube-context", self.context])
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.helm_bin} {' '.join(args[:2])}".rstrip(),
            input_text=None,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        input_text: str | None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                input=input_text,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ClusterProviderError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ClusterProviderError(
                f"{error_prefix} timed out after {self.command_timeout:g}s"
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ClusterProviderError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "KubernetesProvider",
    "deployment_ready",
    "flatten_values",
    "split_key",
]
