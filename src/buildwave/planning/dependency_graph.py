"""Validated, immutable feature dependency graph."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from types import MappingProxyType

from buildwave.domain.errors import (
    CyclicDependency,
    DuplicateFeature,
    UnknownDependency,
    ValidationError,
)
from buildwave.domain.models import Feature


class DependencyGraph:
    """Adjacency and reverse-adjacency view over a feature list.

    ``dependencies`` maps a feature to the features it needs; ``dependents`` maps a
    feature to the features that need it. Both preserve declaration order so every
    traversal is deterministic.
    """

    __slots__ = ("_order", "_dependencies", "_dependents", "_position")

    def __init__(self, order: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> None:
        self._order: tuple[str, ...] = tuple(order)
        self._position: dict[str, int] = {name: index for index, name in enumerate(self._order)}
        deps: dict[str, tuple[str, ...]] = {}
        dependents: dict[str, list[str]] = {name: [] for name in self._order}
        for name in self._order:
            ordered = tuple(sorted(dependencies.get(name, ()), key=self._position.__getitem__))
            deps[name] = ordered
            for parent in ordered:
                dependents[parent].append(name)
        self._dependencies = MappingProxyType(deps)
        self._dependents = MappingProxyType(
            {name: tuple(children) for name, children in dependents.items()}
        )

    @property
    def declaration_order(self) -> tuple[str, ...]:
        return self._order

    @property
    def dependencies(self) -> Mapping[str, tuple[str, ...]]:
        return self._dependencies

    @property
    def dependents(self) -> Mapping[str, tuple[str, ...]]:
        return self._dependents

    def __contains__(self, name: object) -> bool:
        return name in self._position

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def position(self, name: str) -> int:
        self._assert_known(name)
        return self._position[name]

    def dependencies_of(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(name)
        if not transitive:
            return self._dependencies[name]
        return self._closure(name, self._dependencies)

    def dependents_of(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(name)
        if not transitive:
            return self._dependents[name]
        return self._closure(name, self._dependents)

    def topological_order(self) -> tuple[str, ...]:
        """Dependencies before dependents; ties resolved by declaration order."""
        indegree = {name: len(self._dependencies[name]) for name in self._order}
        remaining = list(self._order)
        order: list[str] = []
        while remaining:
            ready = next((name for name in remaining if indegree[name] == 0), None)
            if ready is None:
                raise CyclicDependency(find_cycle(self._order, self._dependencies) or ())
            remaining.remove(ready)
            order.append(ready)
            for child in self._dependents[ready]:
                indegree[child] -= 1
        return tuple(order)

    def to_dict(self) -> dict[str, object]:
        return {
            "features": list(self._order),
            "edges": [
                [parent, child] for child in self._order for parent in self._dependencies[child]
            ],
        }

    def _closure(self, name: str, adjacency: Mapping[str, tuple[str, ...]]) -> tuple[str, ...]:
        visited: set[str] = set()
        pending = list(adjacency[name])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(neighbor for neighbor in adjacency[node] if neighbor not in visited)
        return tuple(sorted(visited, key=self._position.__getitem__))

    def _assert_known(self, name: str) -> None:
        if name not in self._position:
            raise KeyError(f"unknown feature: {name}")


def find_cycle(
    order: Sequence[str], dependencies: Mapping[str, Sequence[str]]
) -> tuple[str, ...] | None:
    """Return one dependency cycle as a closed path (``A -> B -> A``), or ``None``.

    Iterative DFS with white/grey/black colouring; start nodes and edges are visited in
    declaration order so the reported cycle is stable across runs.
    """
    known = set(order)
    state: dict[str, int] = {}
    for start in order:
        if state.get(start, 0) != 0:
            continue
        stack: list[str] = [start]
        stack_index: dict[str, int] = {start: 0}
        state[start] = 1
        frames: list[tuple[str, Iterator[str]]] = [
            (start, iter([dep for dep in dependencies.get(start, ()) if dep in known]))
        ]
        while frames:
            node, children = frames[-1]
            try:
                child = next(children)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue
            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append(
                    (child, iter([dep for dep in dependencies.get(child, ()) if dep in known]))
                )
            elif child_state == 1:
                return tuple(stack[stack_index[child] :]) + (child,)
    return None


def collect_graph_violations(features: Iterable[Feature]) -> list[ValidationError]:
    """Duplicate, unknown-dependency and cycle violations in declaration order."""
    items = list(features)
    names = [feature.name for feature in items]
    known = set(names)
    violations: list[ValidationError] = []
    seen: set[str] = set()
    for name in names:
        if name in seen:
            violations.append(DuplicateFeature(name))
        seen.add(name)
    for feature in items:
        for dependency in feature.dependencies:
            if dependency == feature.name:
                violations.append(CyclicDependency((feature.name, feature.name)))
            elif dependency not in known:
                violations.append(UnknownDependency(feature.name, dependency))
    dependencies = {
        feature.name: [dep for dep in feature.dependencies if dep in known and dep != feature.name]
        for feature in items
    }
    cycle = find_cycle(list(dict.fromkeys(names)), dependencies)
    if cycle is not None:
        violations.append(CyclicDependency(cycle))
    return violations


def build_dependency_graph(features: Sequence[Feature]) -> DependencyGraph:
    """Validate ``features`` and return the immutable graph.

    Raises the single violation directly when there is exactly one (so callers can
    catch ``CyclicDependency``/``UnknownDependency``), otherwise a ``ValidationError``
    listing all of them.
    """
    violations = collect_graph_violations(features)
    if len(violations) == 1:
        raise violations[0]
    if violations:
        raise ValidationError.combine(violations)
    return DependencyGraph(
        [feature.name for feature in features],
        {feature.name: feature.dependencies for feature in features},
    )


__all__ = [
    "DependencyGraph",
    "build_dependency_graph",
    "collect_graph_violations",
    "find_cycle",
]
