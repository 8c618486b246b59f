"""Tests for YAML resource manifests."""
from __future__ import annotations

from pathlib import Path

import pytest

from convergectl.config import ConfigError
from convergectl.manifest import load_specs, parse_specs
from convergectl.reconcile.models import FailurePolicy, ResourceKind


def test_load_specs_reads_entries_in_file_order(tmp_path: Path) -> None:
    """Entries become specs with normalised attributes and flags."""
    manifest = tmp_path / "resources.yml"
    manifest.write_text(
        "resources:\n"
        "  - kind: Policy\n"
        "    key: ControllerPolicy\n"
        "    attributes:\n"
        "      document_url: https://example.com/policy.json\n"
        "  - kind: helmrelease\n"
        "    key: kube-system/controller\n"
        "    depends_on: ControllerPolicy\n"
        "    owned: true\n"
        "    failure_policy: best_effort\n"
        "    attributes:\n"
        "      chart_version: 1.7\n"
        "      values.serviceAccount.create: false\n"
        "  - kind: SubnetTag\n"
        "    key: subnet-a\n"
        "    validate_only: true\n"
        "    depends_on: [ControllerPolicy, kube-system/controller]\n"
    )

    policy, release, subnet = load_specs(manifest)

    assert policy.kind is ResourceKind.POLICY
    assert policy.attributes == {"document_url": "https://example.com/policy.json"}
    assert policy.failure_policy is None
    assert release.kind is ResourceKind.HELM_RELEASE
    assert release.depends_on == frozenset({"ControllerPolicy"})
    assert release.owned is True
    assert release.failure_policy is FailurePolicy.BEST_EFFORT
    assert release.attributes == {"chart_version": "1.7", "values.serviceAccount.create": False}
    assert subnet.validate_only is True
    assert subnet.depends_on == frozenset({"ControllerPolicy", "kube-system/controller"})


def test_load_specs_missing_file(tmp_path: Path) -> None:
    """Unreadable manifests raise ConfigError."""
    with pytest.raises(ConfigError, match="Unable to read manifest"):
        load_specs(tmp_path / "absent.yml")


def test_load_specs_invalid_yaml(tmp_path: Path) -> None:
    """Malformed YAML raises ConfigError."""
    manifest = tmp_path / "resources.yml"
    manifest.write_text("resources: [\n")

    with pytest.raises(ConfigError, match="Failed to parse manifest"):
        load_specs(manifest)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (["not", "a", "mapping"], "mapping at the top level"),
        ({}, "no 'resources' list"),
        ({"resources": "Policy"}, "'resources' must be a list"),
        ({"resources": ["Policy"]}, r"resources\[0\] must be a mapping"),
        ({"resources": [{"kind": "Bucket", "key": "b"}]}, "Unknown resource kind"),
        ({"resources": [{"kind": "Policy"}]}, "non-empty string 'key'"),
        ({"resources": [{"kind": "Policy", "key": "p", "extra": 1}]}, "unknown keys: extra"),
        (
            {"resources": [{"kind": "Policy", "key": "p", "attributes": {"tags": ["a"]}}]},
            "must be a string or boolean",
        ),
        ({"resources": [{"kind": "Policy", "key": "p", "owned": "yes"}]}, "owned must be a boolean"),
        (
            {"resources": [{"kind": "Policy", "key": "p", "failure_policy": "retry"}]},
            "failure_policy must be",
        ),
        ({"resources": [{"kind": "Policy", "key": "p", "depends_on": 5}]}, "list of keys"),
    ],
)
def test_parse_specs_rejects_invalid_entries(data: object, message: str) -> None:
    """Invalid manifests name the offending entry."""
    with pytest.raises(ConfigError, match=message):
        parse_specs(data)
