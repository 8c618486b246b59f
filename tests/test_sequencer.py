"""Tests for dependency ordering."""
from __future__ import annotations

import pytest

from convergectl.errors import ConfigurationError, CycleError
from convergectl.reconcile.models import ResourceKind, ResourceSpec
from convergectl.reconcile.sequencer import dependents_of, levels, order


def _spec(key: str, *deps: str, kind: ResourceKind = ResourceKind.POLICY) -> ResourceSpec:
    return ResourceSpec(kind=kind, key=key, depends_on=frozenset(deps))


def test_order_places_dependencies_first() -> None:
    """Every spec appears after all of its dependencies."""
    specs = [
        _spec("release", "binding"),
        _spec("binding", "provider", "policy"),
        _spec("policy"),
        _spec("provider"),
    ]

    ordered = [spec.key for spec in order(specs)]

    assert ordered == ["policy", "provider", "binding", "release"]


def test_order_is_reproducible_for_independent_specs() -> None:
    """Independent specs are ordered by key regardless of input order."""
    first = [spec.key for spec in order([_spec("b"), _spec("c"), _spec("a")])]
    second = [spec.key for spec in order([_spec("c"), _spec("a"), _spec("b")])]

    assert first == second == ["a", "b", "c"]


def test_order_rejects_cycles_with_members() -> None:
    """A cycle raises CycleError naming the keys involved."""
    specs = [_spec("a", "c"), _spec("b", "a"), _spec("c", "b"), _spec("d")]

    with pytest.raises(CycleError) as excinfo:
        order(specs)

    assert set(excinfo.value.members) == {"a", "b", "c"}
    assert "d" not in excinfo.value.members
    assert "Dependency cycle detected" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    """A spec depending on itself is rejected."""
    with pytest.raises(CycleError) as excinfo:
        order([_spec("a", "a")])

    assert excinfo.value.members == ("a",)


def test_unknown_dependency_is_a_configuration_error() -> None:
    """Dependencies must name known specs."""
    with pytest.raises(ConfigurationError, match="unknown resource"):
        order([_spec("a", "missing")])


def test_duplicate_keys_are_rejected() -> None:
    """Keys must be unique within a run."""
    with pytest.raises(ConfigurationError, match="Duplicate resource key"):
        order([_spec("a"), _spec("a", kind=ResourceKind.SUBNET_TAG)])


def test_levels_group_independent_specs() -> None:
    """Levels contain specs whose dependencies all sit in earlier levels."""
    specs = [
        _spec("policy"),
        _spec("provider"),
        _spec("binding", "policy", "provider"),
        _spec("subnet"),
        _spec("release", "binding"),
    ]

    grouped = [[spec.key for spec in level] for level in levels(specs)]

    assert grouped == [["policy", "provider", "subnet"], ["binding"], ["release"]]


def test_dependents_of_maps_reverse_edges() -> None:
    """Reverse edges list direct dependents only."""
    specs = [_spec("a"), _spec("b", "a"), _spec("c", "b")]

    dependents = dependents_of(specs)

    assert dependents["a"] == frozenset({"b"})
    assert dependents["b"] == frozenset({"c"})
    assert dependents["c"] == frozenset()
