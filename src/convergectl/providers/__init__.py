"""Control plane adapters for convergectl."""
from __future__ import annotations

from .aws import AwsCloudProvider, ClusterFacts
from .base import (
    CloudControlPlane,
    CloudProviderError,
    ClusterControlPlane,
    ClusterProviderError,
)
from .kubernetes import KubernetesProvider

__all__ = [
    "AwsCloudProvider",
    "CloudControlPlane",
    "CloudProviderError",
    "ClusterControlPlane",
    "ClusterFacts",
    "ClusterProviderError",
    "KubernetesProvider",
]
