"""Tests for single-resource reconciliation."""
from __future__ import annotations

from convergectl.reconcile.models import (
    ANY_VALUE,
    ObservedState,
    OutcomeStatus,
    ResourceKind,
    ResourceSpec,
)
from convergectl.reconcile.reconcilers import (
    IMMUTABLE_REASON,
    NOT_READY_REASON,
    ResourceReconciler,
    diff_attributes,
    plan_action,
)
from fakes import FakeCloud, FakeCluster

RELEASE_KEY = "kube-system/aws-load-balancer-controller"


def _release(**attributes: object) -> ResourceSpec:
    values: dict[str, object] = {
        "chart": "aws-load-balancer-controller",
        "chart_version": "1.7.2",
        "values.clusterName": "demo",
        "values.serviceAccount.create": False,
    }
    values.update(attributes)
    return ResourceSpec(
        kind=ResourceKind.HELM_RELEASE,
        key=RELEASE_KEY,
        attributes=values,  # type: ignore[arg-type]
        owned=True,
    )


def _observed(**attributes: object) -> ObservedState:
    return ObservedState(present=True, attributes=attributes)


def test_absent_resource_is_created(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Absent creatable resources are created."""
    spec = ResourceSpec(kind=ResourceKind.POLICY, key="Policy", attributes={"document": "{}"})
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, ObservedState.absent())

    assert outcome.status is OutcomeStatus.CREATED
    assert outcome.action == "create"
    assert outcome.rollout is None
    assert ("create", "Policy") in cloud.calls


def test_matching_resource_is_already_satisfied(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """No mutation happens when desired attributes match."""
    spec = _release()
    observed = _observed(
        chart_version="1.7.2",
        ready=True,
        **{"values.clusterName": "demo", "values.serviceAccount.create": "false"},
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, observed)

    assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
    assert outcome.rollout is None
    assert cluster.calls == []
    assert cloud.calls == []


def test_create_only_attributes_are_not_compared() -> None:
    """Inputs a control plane never reports back do not count as drift."""
    spec = ResourceSpec(
        kind=ResourceKind.POLICY,
        key="Policy",
        attributes={"document_url": "https://example.com/policy.json"},
    )

    assert diff_attributes(spec, _observed(arn="arn:aws:iam::1:policy/Policy")) == {}


def test_immutable_kind_with_drift_is_skipped(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Immutable kinds are never mutated; the reason asks for manual action."""
    spec = ResourceSpec(
        kind=ResourceKind.IDENTITY_PROVIDER,
        key="oidc.example.com/id/1",
        attributes={"url": "oidc.example.com/id/1"},
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, _observed(url="oidc.example.com/id/2"))

    assert outcome.status is OutcomeStatus.SKIPPED
    assert outcome.reason is not None
    assert outcome.reason.startswith(IMMUTABLE_REASON)
    assert cloud.calls == []


def test_mutable_cloud_kind_with_drift_is_tagged(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Drifted subnet tags are corrected in place."""
    cloud.seed(ResourceKind.SUBNET_TAG, "subnet-a")
    spec = ResourceSpec(
        kind=ResourceKind.SUBNET_TAG,
        key="subnet-a",
        attributes={"kubernetes.io/role/elb": "1"},
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, _observed(id="id-subnet-a"))

    assert outcome.status is OutcomeStatus.CREATED
    assert outcome.action == "update"
    assert ("tag", "id-subnet-a") in cloud.calls
    assert cloud.resources[(ResourceKind.SUBNET_TAG, "subnet-a")]["kubernetes.io/role/elb"] == "1"


def test_missing_subnet_cannot_be_created(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Subnets are never created; a missing one is skipped."""
    spec = ResourceSpec(kind=ResourceKind.SUBNET_TAG, key="subnet-x", attributes={"a": "b"})
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, ObservedState.absent())

    assert outcome.status is OutcomeStatus.SKIPPED
    assert "cannot be created" in (outcome.reason or "")
    assert cloud.calls == []


def test_validate_only_never_mutates(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Validation specs report differences without changing anything."""
    spec = ResourceSpec(
        kind=ResourceKind.SUBNET_TAG,
        key="subnet-a",
        attributes={"kubernetes.io/cluster/demo": "shared"},
        validate_only=True,
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, _observed(id="subnet-a"))

    assert outcome.status is OutcomeStatus.SKIPPED
    assert "validation only" in (outcome.reason or "")
    assert cloud.calls == []


def test_cluster_resource_with_cloud_prerequisite(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Service account bindings create the cloud role before the cluster object."""
    spec = ResourceSpec(
        kind=ResourceKind.SERVICE_ACCOUNT_BINDING,
        key="kube-system/controller",
        attributes={"role_arn": "arn:aws:iam::1:role/Controller", "role_name": "Controller"},
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, ObservedState.absent())

    assert outcome.status is OutcomeStatus.CREATED
    assert cloud.calls == [("create", "kube-system/controller")]
    assert cluster.calls == [("apply", "kube-system/controller")]


def test_long_running_kind_returns_rollout_handle(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Helm releases hand back a handle carrying the timeout budget."""
    reconciler = ResourceReconciler(cloud, cluster, timeout_budget=120.0)

    outcome = reconciler.reconcile(_release(), ObservedState.absent())

    assert outcome.rollout is not None
    assert outcome.rollout.resource_key == RELEASE_KEY
    assert outcome.rollout.timeout_budget == 120.0

    override = reconciler.reconcile(_release(), ObservedState.absent(), timeout_budget=5.0)
    assert override.rollout is not None
    assert override.rollout.timeout_budget == 5.0


def test_mutation_failure_is_reported_not_raised(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Control plane rejections become failed outcomes."""
    cluster.fail("apply", RELEASE_KEY, "chart not found")
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(_release(), ObservedState.absent())

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error_kind == "mutation"
    assert "chart not found" in (outcome.error or "")
    assert outcome.rollout is None


def test_force_reinstall_deletes_then_creates(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Forced reinstall applies only to owned, deletable resources."""
    reconciler = ResourceReconciler(cloud, cluster)
    observed = _observed(chart_version="1.7.2")

    outcome = reconciler.reconcile(_release(), observed, force=True)

    assert outcome.action == "reinstall"
    assert [name for name, _key in cluster.calls] == ["delete", "apply"]


def test_force_reinstall_ignores_unowned_resources(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Resources the provisioner does not own are never deleted."""
    spec = ResourceSpec(
        kind=ResourceKind.HELM_RELEASE,
        key=RELEASE_KEY,
        attributes={"chart_version": "1.7.2"},
    )
    reconciler = ResourceReconciler(cloud, cluster)

    outcome = reconciler.reconcile(spec, _observed(chart_version="1.7.2"), force=True)

    assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
    assert cluster.calls == []


def test_plan_action_reports_update_detail() -> None:
    """Planning names the drifted attributes without touching anything."""
    planned = plan_action(_release(chart_version="1.8.0"), _observed(chart_version="1.7.2"))

    assert planned.action == "update"
    assert planned.mutates
    assert "chart_version" in (planned.reason or "")


def test_reconcile_twice_is_idempotent(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """The second pass over converged state changes nothing."""
    spec = ResourceSpec(kind=ResourceKind.POLICY, key="Policy", attributes={"document": "{}"})
    reconciler = ResourceReconciler(cloud, cluster)

    first = reconciler.reconcile(spec, ObservedState.absent())
    observed = ObservedState(present=True, attributes=cloud.describe(spec.kind, spec.key) or {})
    second = reconciler.reconcile(spec, observed)

    assert first.status is OutcomeStatus.CREATED
    assert second.status is OutcomeStatus.ALREADY_SATISFIED
    assert cloud.calls.count(("create", "Policy")) == 1


def test_unready_release_is_handed_to_the_waiter(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """A release whose values match but whose deployment is not ready must be awaited."""
    observed = _observed(
        chart_version="1.7.2",
        ready=False,
        **{"values.clusterName": "demo", "values.serviceAccount.create": "false"},
    )
    reconciler = ResourceReconciler(cloud, cluster, timeout_budget=12.0)

    outcome = reconciler.reconcile(_release(), observed)

    assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
    assert outcome.action == "wait"
    assert outcome.reason == NOT_READY_REASON
    assert outcome.rollout is not None
    assert outcome.rollout.timeout_budget == 12.0
    assert cluster.calls == []
    assert plan_action(_release(), observed).mutates is False


def test_any_value_only_requires_presence() -> None:
    """A wildcard attribute accepts any observed value but not a missing one."""
    spec = ResourceSpec(
        kind=ResourceKind.SUBNET_TAG,
        key="subnet-a",
        attributes={"kubernetes.io/cluster/demo": ANY_VALUE},
        validate_only=True,
    )

    assert diff_attributes(spec, _observed(**{"kubernetes.io/cluster/demo": "owned"})) == {}
    assert diff_attributes(spec, _observed()) == {"kubernetes.io/cluster/demo": (ANY_VALUE, None)}
    assert plan_action(spec, _observed()).action == "skip"
