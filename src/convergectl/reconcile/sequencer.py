"""Dependency ordering for resource specs."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping, Sequence

from ..errors import ConfigurationError, CycleError
from .models import ResourceSpec


def _index(specs: Iterable[ResourceSpec]) -> dict[str, ResourceSpec]:
    by_key: dict[str, ResourceSpec] = {}
    for spec in specs:
        if spec.key in by_key:
            raise ConfigurationError(f"Duplicate resource key '{spec.key}'.")
        by_key[spec.key] = spec
    for spec in by_key.values():
        missing = sorted(dep for dep in spec.depends_on if dep not in by_key)
        if missing:
            joined = ", ".join(missing)
            raise ConfigurationError(
                f"Resource '{spec.key}' depends on unknown resource(s): {joined}."
            )
    return by_key


def _sort_key(spec: ResourceSpec) -> tuple[str, str]:
    return (spec.key, spec.kind.value)


def order(specs: Iterable[ResourceSpec]) -> list[ResourceSpec]:
    """Return *specs* in dependency order.

    Independent specs are ordered by key so that runs are reproducible.
    Raises :class:`CycleError` naming the cycle members when ``depends_on``
    is not acyclic.
    """
    by_key = _index(specs)
    remaining = {key: set(spec.depends_on) for key, spec in by_key.items()}
    dependents: dict[str, list[str]] = {key: [] for key in by_key}
    for key, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(key)

    ready = [_sort_key(by_key[key]) for key, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    ordered: list[ResourceSpec] = []
    while ready:
        key, _kind = heapq.heappop(ready)
        ordered.append(by_key[key])
        for dependent in dependents[key]:
            deps = remaining[dependent]
            deps.discard(key)
            if not deps:
                heapq.heappush(ready, _sort_key(by_key[dependent]))

    if len(ordered) != len(by_key):
        unresolved = {key: deps for key, deps in remaining.items() if deps}
        raise CycleError(_find_cycle(unresolved))
    return ordered


def levels(specs: Iterable[ResourceSpec]) -> list[tuple[ResourceSpec, ...]]:
    """Group ordered specs so each level depends only on earlier levels."""
    ordered = order(specs)
    depth: dict[str, int] = {}
    for spec in ordered:
        depth[spec.key] = 1 + max((depth[dep] for dep in spec.depends_on), default=-1)
    grouped: dict[int, list[ResourceSpec]] = {}
    for spec in ordered:
        grouped.setdefault(depth[spec.key], []).append(spec)
    return [tuple(grouped[index]) for index in sorted(grouped)]


def dependents_of(specs: Sequence[ResourceSpec]) -> Mapping[str, frozenset[str]]:
    """Return the keys that directly depend on each spec."""
    result: dict[str, set[str]] = {spec.key: set() for spec in specs}
    for spec in specs:
        for dep in spec.depends_on:
            result.setdefault(dep, set()).add(spec.key)
    return {key: frozenset(value) for key, value in result.items()}


def _find_cycle(graph: Mapping[str, set[str]]) -> list[str]:
    """Return one cycle from the unresolved portion of the graph."""
    for start in sorted(graph):
        path: list[str] = []
        positions: dict[str, int] = {}
        node = start
        while node not in positions:
            positions[node] = len(path)
            path.append(node)
            candidates = sorted(dep for dep in graph.get(node, ()) if dep in graph)
            if not candidates:
                break
            node = candidates[0]
        else:
            return path[positions[node]:]
    return sorted(graph)


__all__ = ["dependents_of", "levels", "order"]
