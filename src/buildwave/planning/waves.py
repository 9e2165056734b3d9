"""Wave scheduler: peel the dependency graph into ordered parallel levels."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from buildwave.domain.errors import CyclicDependency
from buildwave.domain.models import Wave
from buildwave.planning.dependency_graph import DependencyGraph, find_cycle


@dataclass(frozen=True, slots=True)
class WavePlan:
    """Ordered waves plus a feature -> wave index lookup."""

    waves: tuple[Wave, ...]
    graph: DependencyGraph

    def __iter__(self) -> Iterator[Wave]:
        return iter(self.waves)

    def __len__(self) -> int:
        return len(self.waves)

    @property
    def wave_index(self) -> Mapping[str, int]:
        return MappingProxyType(
            {name: wave.index for wave in self.waves for name in wave.features}
        )

    def wave_of(self, feature: str) -> int:
        for wave in self.waves:
            if feature in wave.features:
                return wave.index
        raise KeyError(f"unknown feature: {feature}")

    def as_lists(self) -> list[list[str]]:
        return [list(wave.features) for wave in self.waves]

    def ready(self, merged: Iterable[str], *, exclude: Iterable[str] = ()) -> tuple[str, ...]:
        """Features whose dependencies are all merged, in merge order.

        ``exclude`` removes features already handled (merged, in flight, failed).
        """
        merged_set = set(merged)
        excluded = set(exclude) | merged_set
        return tuple(
            name
            for name in self.merge_order()
            if name not in excluded
            and all(dep in merged_set for dep in self.graph.dependencies_of(name))
        )

    def merge_order(self) -> tuple[str, ...]:
        """Wave order, declaration order within a wave."""
        return tuple(name for wave in self.waves for name in wave.features)

    def critical_path(self) -> tuple[str, ...]:
        """Longest dependency chain, measured in waves; earliest declared on ties."""
        depth: dict[str, int] = {}
        previous: dict[str, str | None] = {}
        for name in self.merge_order():
            best: str | None = None
            for dep in self.graph.dependencies_of(name):
                if best is None or depth[dep] > depth[best]:
                    best = dep
            depth[name] = 1 if best is None else depth[best] + 1
            previous[name] = best
        if not depth:
            return ()
        end = max(self.merge_order(), key=lambda name: (depth[name], -self.graph.position(name)))
        path: list[str] = []
        cursor: str | None = end
        while cursor is not None:
            path.append(cursor)
            cursor = previous[cursor]
        path.reverse()
        return tuple(path)

    def to_dict(self) -> dict[str, object]:
        return {
            "waves": self.as_lists(),
            "critical_path": list(self.critical_path()),
        }


def schedule_waves(graph: DependencyGraph) -> WavePlan:
    """Repeated Kahn-style peel of ``graph``.

    Wave 0 holds features with no dependencies; each later wave holds the remaining
    features whose dependencies all sit in earlier, finalized waves. Within a wave the
    declaration order is kept so replays are deterministic.
    """
    remaining = list(graph.declaration_order)
    placed: set[str] = set()
    waves: list[Wave] = []
    while remaining:
        current = [
            name
            for name in remaining
            if all(dep in placed for dep in graph.dependencies_of(name))
        ]
        if not current:
            # Only reachable if validation was bypassed.
            cycle = find_cycle(remaining, {name: graph.dependencies_of(name) for name in remaining})
            raise CyclicDependency(cycle or tuple(remaining))
        waves.append(Wave(index=len(waves), features=tuple(current)))
        placed.update(current)
        current_set = set(current)
        remaining = [name for name in remaining if name not in current_set]
    return WavePlan(waves=tuple(waves), graph=graph)


__all__ = ["WavePlan", "schedule_waves"]
