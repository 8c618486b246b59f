"""Tests for the diagnostic collector."""
from __future__ import annotations

from convergectl.reconcile.diagnostics import HINTS, DiagnosticCollector
from convergectl.reconcile.models import ResourceKind
from fakes import FakeCloud, FakeCluster

RELEASE = "kube-system/aws-load-balancer-controller"


def test_collect_cluster_resource(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Cluster kinds gather status, describe output and logs."""
    cluster.seed(ResourceKind.HELM_RELEASE, RELEASE, ready=False, deployment="present")
    cluster.logs[RELEASE] = "starting\nerror: AccessDenied\n"

    bundle = DiagnosticCollector(cloud, cluster).collect(ResourceKind.HELM_RELEASE, RELEASE)

    assert bundle.resource_key == RELEASE
    assert bundle.status_snapshot["ready"] is False
    assert bundle.describe_output == f"Name: {RELEASE}"
    assert bundle.recent_log_lines == ("starting", "error: AccessDenied")
    assert bundle.hint == HINTS["timeout"]
    assert bundle.errors == ()


def test_collect_bounds_log_tail(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Only the configured number of trailing lines is kept."""
    cluster.logs[RELEASE] = "\n".join(f"line {index}" for index in range(10))

    bundle = DiagnosticCollector(cloud, cluster, log_lines=3).collect(
        ResourceKind.HELM_RELEASE, RELEASE
    )

    assert bundle.recent_log_lines == ("line 7", "line 8", "line 9")


def test_collect_cloud_resource_skips_cluster(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Cloud kinds only describe the cloud resource."""
    cloud.seed(ResourceKind.POLICY, "ControllerPolicy", arn="arn:aws:iam::1:policy/ControllerPolicy")

    bundle = DiagnosticCollector(cloud, cluster).collect(
        ResourceKind.POLICY, "ControllerPolicy", category="mutation"
    )

    assert bundle.status_snapshot["arn"] == "arn:aws:iam::1:policy/ControllerPolicy"
    assert bundle.describe_output == ""
    assert bundle.recent_log_lines == ()
    assert bundle.hint == HINTS["mutation"]
    assert cluster.calls == []


def test_collect_never_raises(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Failures while collecting are recorded, not raised."""
    cluster.fail("get_status", RELEASE, "forbidden")
    cluster.fail("get_logs", RELEASE, "pod not found")

    bundle = DiagnosticCollector(cloud, cluster).collect(ResourceKind.HELM_RELEASE, RELEASE)

    assert bundle.status_snapshot == {}
    assert bundle.recent_log_lines == ()
    assert bundle.describe_output == f"Name: {RELEASE}"
    assert bundle.errors == ("status: forbidden", "logs: pod not found")


def test_collect_unknown_category_has_no_hint(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Categories without a hint leave the hint empty."""
    bundle = DiagnosticCollector(cloud, cluster).collect(
        ResourceKind.HELM_RELEASE, RELEASE, category="other"
    )

    assert bundle.hint == ""
    assert bundle.status_snapshot == {}
