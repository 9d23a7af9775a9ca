from __future__ import annotations

import enum
import heapq
import logging
from dataclasses import dataclass
from typing import Mapping

from .errors import PlanInvariantError
from .graph import DependencyGraph

logger = logging.getLogger(__name__)


class PlanAction(enum.Enum):
    INSTALL = "install"
    REINSTALL = "reinstall"  # installed at a different version; overwrite
    SKIP = "skip"  # same name and version already installed


@dataclass(frozen=True)
class PlanEntry:
    name: str
    version: str
    bundle_id: str
    dependencies: tuple[str, ...]
    action: PlanAction
    previous_versions: tuple[str, ...] = ()

    @property
    def needs_fetch(self) -> bool:
        return self.action is not PlanAction.SKIP


@dataclass(frozen=True)
class InstallPlan:
    """Dependency-first install order. Every entry's dependencies precede it."""

    root: str
    entries: tuple[PlanEntry, ...]

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.entries]

    @property
    def to_fetch(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.needs_fetch]

    @property
    def skipped(self) -> list[PlanEntry]:
        return [e for e in self.entries if not e.needs_fetch]

    @property
    def version_changes(self) -> list[tuple[str, str, str]]:
        return [
            (e.name, ", ".join(e.previous_versions), e.version)
            for e in self.entries
            if e.action is PlanAction.REINSTALL
        ]

    def entry(self, name: str) -> PlanEntry:
        for e in self.entries:
            if e.name == name:
                return e
        raise KeyError(name)


def topological_order(graph: DependencyGraph) -> list[str]:
    """
    Kahn's algorithm over dependency -> dependent edges.

    Ties between nodes that become ready together are broken by ascending name,
    so the same graph always yields the same order.
    """
    in_degree: dict[str, int] = {name: 0 for name in graph.nodes}
    dependents: dict[str, list[str]] = {name: [] for name in graph.nodes}
    for dependent, dependency in graph.edges():
        in_degree[dependent] += 1
        dependents[dependency].append(dependent)

    ready = [name for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        current = heapq.heappop(ready)
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(graph.nodes):
        residual = sorted(set(graph.nodes) - set(order))
        raise PlanInvariantError(f"topological sort left {len(residual)} node(s) unordered: {', '.join(residual)}")
    return order


class InstallPlanner:
    def plan(self, graph: DependencyGraph, already_installed: Mapping[str, set[str]]) -> InstallPlan:
        """
        already_installed maps skill name to the versions recorded in the lock file.
        """
        entries: list[PlanEntry] = []
        for name in topological_order(graph):
            node = graph.node(name)
            recorded = already_installed.get(name, set())
            if node.version in recorded:
                action = PlanAction.SKIP
                previous: tuple[str, ...] = ()
            elif recorded:
                action = PlanAction.REINSTALL
                previous = tuple(sorted(recorded))
                logger.warning("%s is installed at %s; replacing with %s", name, ", ".join(previous), node.version)
            else:
                action = PlanAction.INSTALL
                previous = ()
            entries.append(
                PlanEntry(
                    name=name,
                    version=node.version,
                    bundle_id=node.bundle_id,
                    dependencies=tuple(node.children),
                    action=action,
                    previous_versions=previous,
                )
            )

        plan = InstallPlan(root=graph.root, entries=tuple(entries))
        logger.info(
            "plan for %s: %d to install, %d already installed",
            graph.root,
            len(plan.to_fetch),
            len(plan.skipped),
        )
        logger.debug("install order: %s", ", ".join(plan.names))
        return plan
