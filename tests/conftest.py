"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import pytest

from fakes import FakeCloud, FakeCluster


@pytest.fixture
def cloud() -> FakeCloud:
    """Return an empty in-memory cloud control plane."""
    return FakeCloud()


@pytest.fixture
def cluster() -> FakeCluster:
    """Return an empty in-memory cluster control plane."""
    return FakeCluster()


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Point boto3 at fake credentials so moto never reaches AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")
