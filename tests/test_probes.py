"""Tests for the resource probe."""
from __future__ import annotations

import pytest

from convergectl.errors import ProbeError
from convergectl.reconcile.models import ResourceKind, ResourceSpec
from convergectl.reconcile.probes import ResourceProbe
from fakes import FakeCloud, FakeCluster


def test_probe_routes_cloud_kinds_to_cloud(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Cloud kinds are described by the cloud control plane."""
    cloud.seed(ResourceKind.POLICY, "ControllerPolicy", name="ControllerPolicy")
    probe = ResourceProbe(cloud, cluster)

    observed = probe.probe(ResourceSpec(kind=ResourceKind.POLICY, key="ControllerPolicy"))

    assert observed.present is True
    assert observed.attributes["name"] == "ControllerPolicy"
    assert cloud.calls == [("describe", "ControllerPolicy")]
    assert cluster.calls == []


def test_probe_routes_cluster_kinds_to_cluster(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Cluster kinds are read through get_status."""
    cluster.seed(ResourceKind.HELM_RELEASE, "kube-system/controller", chart_version="1.7.2")
    probe = ResourceProbe(cloud, cluster)

    observed = probe.probe(
        ResourceSpec(kind=ResourceKind.HELM_RELEASE, key="kube-system/controller")
    )

    assert observed.present is True
    assert observed.attributes["chart_version"] == "1.7.2"
    assert cloud.calls == []


def test_probe_reports_absence_without_error(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """A missing resource is a valid observation."""
    probe = ResourceProbe(cloud, cluster)

    observed = probe.probe(ResourceSpec(kind=ResourceKind.IDENTITY_PROVIDER, key="oidc"))

    assert observed.present is False
    assert dict(observed.attributes) == {}
    assert observed.fetched_at.tzinfo is not None


def test_probe_wraps_transport_failures(cloud: FakeCloud, cluster: FakeCluster) -> None:
    """Provider errors surface as ProbeError."""
    cluster.fail("get_status", "kube-system/sa", "connection refused")
    probe = ResourceProbe(cloud, cluster)

    with pytest.raises(ProbeError, match="connection refused") as excinfo:
        probe.probe(ResourceSpec(kind=ResourceKind.SERVICE_ACCOUNT_BINDING, key="kube-system/sa"))

    assert excinfo.value.kind == "probe"
