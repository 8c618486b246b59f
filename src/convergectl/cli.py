"""Typer-powered command line interface for ``convergectl``.

``plan`` shows what a run would change, ``apply`` converges every resource
and ``diagnose`` gathers failure context on demand. Resources come from a YAML
manifest or, by default, from the AWS Load Balancer Controller blueprint.
"""
from __future__ import annotations

import json
import shutil
import signal
import textwrap
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .blueprint import build_controller_specs
from .config import ConfigError, RunConfiguration, infer_cluster_context, load_config
from .errors import ConfigurationError, ProbeError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .manifest import load_specs
from .providers import (
    AwsCloudProvider,
    CloudProviderError,
    KubernetesProvider,
)
from .providers.base import CloudControlPlane, ClusterControlPlane, ClusterProviderError
from .reconcile import (
    CancellationToken,
    DiagnosticBundle,
    DiagnosticCollector,
    FailurePolicy,
    OutcomeStatus,
    ProvisioningOrchestrator,
    ReconciliationReport,
    ResourceKind,
    ResourceProbe,
    ResourceReconciler,
    ResourceSpec,
    RolloutWaiter,
    RunOptions,
    RunStatus,
    order,
    plan_action,
)
from .reconcile.utils import serialize_bundle, serialize_report

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)
MANIFEST_OPTION = typer.Option(
    None,
    "--manifest",
    "-m",
    help="YAML manifest of resources (defaults to the controller blueprint).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

_STATUS_STYLE = {
    OutcomeStatus.ALREADY_SATISFIED: "[green]already-satisfied[/green]",
    OutcomeStatus.CREATED: "[cyan]created[/cyan]",
    OutcomeStatus.SKIPPED: "[yellow]skipped[/yellow]",
    OutcomeStatus.FAILED: "[red]failed[/red]",
}
_RUN_STATUS_STYLE = {
    RunStatus.SUCCESS: "[green]success[/green]",
    RunStatus.PARTIAL_FAILURE: "[yellow]partial-failure[/yellow]",
    RunStatus.FATAL: "[red]fatal[/red]",
}
_REQUIRED_TOOLS = ("kubectl", "helm")
_LOG_PREVIEW_LINES = 10

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Idempotent provisioner for cluster add-ons and their cloud prerequisites.

        Every run probes live state first; resources that already match are
        left untouched, so re-running after a failure resumes where it stopped.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: RunConfiguration
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.call_on_close(runtime.logger.close)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _build_cloud(config: RunConfiguration) -> CloudControlPlane:
    return AwsCloudProvider(region=config.region or "")


def _build_cluster(config: RunConfiguration) -> ClusterControlPlane:
    return KubernetesProvider(
        kubectl_bin=config.tools.kubectl,
        helm_bin=config.tools.helm,
        context=config.tools.kube_context,
    )


def _build_orchestrator(
    config: RunConfiguration,
    cloud: CloudControlPlane,
    cluster: ClusterControlPlane,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        probe=ResourceProbe(cloud, cluster),
        reconciler=ResourceReconciler(cloud, cluster, timeout_budget=config.rollout.timeout),
        waiter=RolloutWaiter(cluster, poll_interval=config.rollout.poll_interval),
        collector=DiagnosticCollector(cloud, cluster),
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the convergectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"convergectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _preflight(op: OperationScope, config: RunConfiguration) -> None:
    """Fail with the environment exit code when required tools are missing."""
    binaries = {"kubectl": config.tools.kubectl, "helm": config.tools.helm}
    missing = [
        f"{tool} ({binaries[tool]})"
        for tool in _REQUIRED_TOOLS
        if shutil.which(binaries[tool]) is None
    ]
    if missing:
        _command_error(
            op,
            f"Required tools not found on PATH: {', '.join(missing)}.",
            rc=ExitCode.ENVIRONMENT,
        )
    op.add_step("preflight.tools", detail=", ".join(binaries.values()))


def _check_access(op: OperationScope, cluster: ClusterControlPlane) -> None:
    """Fail with the environment exit code when the cluster cannot be reached."""
    check = getattr(cluster, "check_access", None)
    if not callable(check):
        return
    try:
        check()
    except ClusterProviderError as exc:
        _command_error(op, f"Cannot access the cluster: {exc}", rc=ExitCode.ENVIRONMENT)
    op.add_step("preflight.access")


def _resolve_context(
    op: OperationScope,
    config: RunConfiguration,
    cluster: ClusterControlPlane,
) -> RunConfiguration:
    """Fill cluster name and region from the current kube context when unset."""
    if config.cluster_name and config.region:
        return config
    current = getattr(cluster, "current_context", None)
    context = current() if callable(current) else None
    name, region = infer_cluster_context(context)
    resolved = config.with_cluster(name, region)
    op.add_step(
        "preflight.context",
        detail=f"context={context} cluster={resolved.cluster_name} region={resolved.region}",
    )
    if not resolved.region:
        _command_error(
            op,
            "Region not supplied and could not be inferred from the kube context.",
            rc=ExitCode.ENVIRONMENT,
        )
    return resolved


def _collect_specs(
    op: OperationScope,
    config: RunConfiguration,
    cloud: CloudControlPlane,
    manifest: Path | None,
) -> list[ResourceSpec]:
    if manifest is not None:
        try:
            specs = load_specs(manifest)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        op.add_step("specs.manifest", detail=f"{manifest} ({len(specs)} resource(s))")
        return specs

    if not config.cluster_name:
        _command_error(
            op,
            "Cluster name not supplied and could not be inferred from the kube context.",
            rc=ExitCode.ENVIRONMENT,
        )
    if not hasattr(cloud, "discover_cluster"):
        _command_error(op, "The cloud provider cannot discover clusters.", rc=ExitCode.PROVIDER)
    try:
        facts = cloud.discover_cluster(config.cluster_name)  # type: ignore[attr-defined]
        public_subnets: list[str] = []
        vpc_id = config.vpc_id or facts.vpc_id
        if config.subnets.auto_tag_public and vpc_id:
            public_subnets = cloud.public_subnet_ids(vpc_id)  # type: ignore[attr-defined]
    except CloudProviderError as exc:
        _command_error(op, f"Cluster discovery failed: {exc}", rc=ExitCode.PROVIDER)
    specs = build_controller_specs(config, facts, public_subnets)
    op.add_step(
        "specs.blueprint",
        detail=f"cluster={facts.cluster_name} vpc={vpc_id} ({len(specs)} resource(s))",
    )
    return specs


@contextmanager
def _sigint_cancels(token: CancellationToken) -> Iterator[None]:
    """Route ``SIGINT`` to *token* while the block runs on the main thread."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        console.print("[yellow]Interrupt received; cancelling run...[/yellow]")
        token.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_options(
    op: OperationScope,
    config: RunConfiguration,
    *,
    force_reinstall: bool,
    timeout: float | None,
    best_effort: Sequence[str],
    fatal: Sequence[str],
    max_concurrency: int | None,
) -> RunOptions:
    overlap = sorted(set(best_effort) & set(fatal))
    if overlap:
        _command_error(
            op,
            f"Keys cannot be both --best-effort and --fatal: {', '.join(overlap)}.",
            rc=ExitCode.VALIDATION,
        )
    options = config.to_run_options()
    overrides = dict(options.policy_overrides)
    overrides.update({key: FailurePolicy.BEST_EFFORT for key in best_effort})
    overrides.update({key: FailurePolicy.FATAL for key in fatal})
    return replace(
        options,
        force_reinstall=options.force_reinstall or force_reinstall,
        timeout_budget=timeout if timeout is not None else options.timeout_budget,
        policy_overrides=overrides,
        max_concurrency=max_concurrency if max_concurrency is not None else options.max_concurrency,
    )


def _render_bundle(bundle: DiagnosticBundle, *, preview: int | None = None) -> None:
    console.print(f"  [bold]Diagnostics for {bundle.resource_key}[/bold]")
    if bundle.status_snapshot:
        console.print(f"  status: {json.dumps(dict(bundle.status_snapshot), sort_keys=True, default=str)}")
    lines = list(bundle.recent_log_lines)
    if preview is not None:
        lines = lines[-preview:]
    if lines:
        console.print(f"  recent logs (last {len(lines)} line(s)):")
        for line in lines:
            console.print(f"    {line}", markup=False, highlight=False)
    if bundle.hint:
        console.print(f"  [yellow]hint:[/yellow] {bundle.hint}")
    for error in bundle.errors:
        console.print(f"  [red]collection error:[/red] {error}")


def _render_report(report: ReconciliationReport) -> None:
    """Render a reconciliation report in a human-friendly format."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Resource", style="bold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Action")
    table.add_column("Detail")
    table.add_column("Duration", justify="right")
    for outcome in report.outcomes:
        detail = outcome.error or outcome.reason or ""
        duration = f"{outcome.duration_ms} ms" if outcome.duration_ms is not None else "-"
        table.add_row(
            outcome.key,
            outcome.kind.value,
            _STATUS_STYLE[outcome.status],
            outcome.action or "-",
            detail,
            duration,
        )
    console.print(table)

    for outcome in report.outcomes:
        if outcome.diagnostics is not None:
            _render_bundle(outcome.diagnostics, preview=_LOG_PREVIEW_LINES)

    totals = " ".join(f"{status.value}={count}" for status, count in report.totals.items())
    console.print(f"Run status: {_RUN_STATUS_STYLE[report.status]} ({totals})")
    if report.error:
        console.print(f"[red]{report.error}[/red]")


def _report_exit_code(report: ReconciliationReport) -> ExitCode:
    if report.cancelled:
        return ExitCode.CANCELLED
    if report.status is RunStatus.SUCCESS:
        return ExitCode.OK
    if report.status is RunStatus.PARTIAL_FAILURE:
        return ExitCode.PARTIAL
    metadata = report.metadata or {}
    configuration_failure = metadata.get("error_kind") == "configuration" or any(
        outcome.error_kind == "configuration" for outcome in report.outcomes
    )
    return ExitCode.VALIDATION if configuration_failure else ExitCode.PROVIDER


@app.command()
def plan(
    ctx: typer.Context,
    manifest: Path | None = MANIFEST_OPTION,
    force_reinstall: bool = typer.Option(
        False,
        "--force-reinstall",
        help="Plan a reinstall of owned resources that support it.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Sequence resources and probe each one without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"manifest": str(manifest) if manifest else None, "json": json_output},
        target={"kind": "resources", "scope": "plan"},
    ) as op:
        _preflight(op, runtime.config)
        cluster = _build_cluster(runtime.config)
        _check_access(op, cluster)
        config = _resolve_context(op, runtime.config, cluster)
        cloud = _build_cloud(config)
        specs = _collect_specs(op, config, cloud, manifest)
        try:
            ordered = order(specs)
        except ConfigurationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        probe = ResourceProbe(cloud, cluster)
        rows: list[dict[str, object]] = []
        errors: list[str] = []
        for spec in ordered:
            row: dict[str, object] = {
                "key": spec.key,
                "kind": spec.kind.value,
                "depends_on": sorted(spec.depends_on),
            }
            try:
                observed = probe.probe(spec)
            except ProbeError as exc:
                row.update({"present": None, "action": "unknown", "reason": str(exc)})
                errors.append(str(exc))
                rows.append(row)
                continue
            planned = plan_action(spec, observed, force=force_reinstall or runtime.config.force_reinstall)
            row.update({"present": observed.present, "action": planned.action})
            if planned.reason:
                row["reason"] = planned.reason
            rows.append(row)

        changes = sum(1 for row in rows if row["action"] in {"create", "update", "reinstall"})
        payload = {"order": [spec.key for spec in ordered], "resources": rows, "changes": changes}
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Resource", style="bold")
            table.add_column("Kind")
            table.add_column("Present")
            table.add_column("Action")
            table.add_column("Detail")
            for row in rows:
                present = row["present"]
                table.add_row(
                    str(row["key"]),
                    str(row["kind"]),
                    "?" if present is None else ("yes" if present else "no"),
                    str(row["action"]),
                    str(row.get("reason", "")),
                )
            console.print(table)
            console.print(f"{changes} change(s) planned across {len(rows)} resource(s).")

        if errors:
            op.error(
                "Plan could not probe every resource.",
                rc=int(ExitCode.PROVIDER),
                errors=errors,
                context={"plan": payload},
            )
            raise typer.Exit(code=int(ExitCode.PROVIDER))
        op.success("Plan complete.", changed=0, context={"plan": payload})


@app.command()
def apply(
    ctx: typer.Context,
    manifest: Path | None = MANIFEST_OPTION,
    force_reinstall: bool = typer.Option(
        False,
        "--force-reinstall",
        help="Uninstall and reinstall owned resources that support it.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=1.0,
        help="Rollout wait budget in seconds (default from config).",
    ),
    best_effort: list[str] = typer.Option(
        [],
        "--best-effort",
        help="Continue the run when this resource key fails (repeatable).",
    ),
    fatal: list[str] = typer.Option(
        [],
        "--fatal",
        help="Abort the run when this resource key fails (repeatable).",
    ),
    max_concurrency: int | None = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Reconcile up to N independent resources in parallel.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge every resource and report per-resource outcomes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={
            "manifest": str(manifest) if manifest else None,
            "force_reinstall": force_reinstall,
            "timeout": timeout,
            "best_effort": list(best_effort),
            "fatal": list(fatal),
            "max_concurrency": max_concurrency,
            "json": json_output,
        },
        target={"kind": "resources", "scope": "apply"},
    ) as op:
        _preflight(op, runtime.config)
        cluster = _build_cluster(runtime.config)
        _check_access(op, cluster)
        config = _resolve_context(op, runtime.config, cluster)
        cloud = _build_cloud(config)
        specs = _collect_specs(op, config, cloud, manifest)
        options = _run_options(
            op,
            config,
            force_reinstall=force_reinstall,
            timeout=timeout,
            best_effort=best_effort,
            fatal=fatal,
            max_concurrency=max_concurrency,
        )

        orchestrator = _build_orchestrator(config, cloud, cluster)
        token = CancellationToken()
        with _sigint_cancels(token):
            report = orchestrator.run(specs, options, token=token, op=op)
        payload = serialize_report(report)

        if json_output:
            console.print_json(data=payload)
        else:
            _render_report(report)

        rc = _report_exit_code(report)
        changed = report.totals.get(OutcomeStatus.CREATED, 0)
        failed = [
            f"{outcome.key}: {outcome.error}"
            for outcome in report.outcomes
            if outcome.is_failure
        ]
        skipped = [
            f"{outcome.key}: {outcome.reason}"
            for outcome in report.outcomes
            if outcome.status is OutcomeStatus.SKIPPED
        ]
        log_context = {"report": payload}
        if rc is ExitCode.OK:
            op.success("All resources converged.", changed=changed, context=log_context)
            return
        if rc is ExitCode.PARTIAL:
            op.warning(
                "Run finished with failed or skipped resources.",
                warnings=skipped or None,
                errors=failed or None,
                changed=changed,
                context=log_context,
            )
            raise typer.Exit(code=int(rc))
        message = "Run cancelled." if rc is ExitCode.CANCELLED else f"Run aborted: {report.error}"
        op.error(message, rc=int(rc), errors=failed or None, context=log_context)
        raise typer.Exit(code=int(rc))


@app.command()
def diagnose(
    ctx: typer.Context,
    kind: str = typer.Argument(..., help="Resource kind, e.g. HelmRelease."),
    key: str = typer.Argument(..., help="Resource key, e.g. kube-system/aws-load-balancer-controller."),
    category: str = typer.Option(
        "timeout",
        "--category",
        help="Failure category used to pick the remediation hint.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Collect status, describe output and recent logs for one resource."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose",
        args={"kind": kind, "key": key, "category": category, "json": json_output},
        target={"kind": kind, "key": key},
    ) as op:
        try:
            resource_kind = ResourceKind.parse(kind)
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _preflight(op, runtime.config)
        cluster = _build_cluster(runtime.config)
        config = _resolve_context(op, runtime.config, cluster)
        cloud = _build_cloud(config)

        bundle = DiagnosticCollector(cloud, cluster).collect(resource_kind, key, category=category)
        payload = serialize_bundle(bundle)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_bundle(bundle)
            if bundle.describe_output:
                console.print("  describe:")
                for line in bundle.describe_output.splitlines():
                    console.print(f"    {line}", markup=False, highlight=False)

        if bundle.errors:
            op.warning(
                "Diagnostics collected with errors.",
                warnings=list(bundle.errors),
                context={"bundle": payload},
            )
            return
        op.success("Diagnostics collected.", changed=0, context={"bundle": payload})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
