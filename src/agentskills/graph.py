from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterator

from .client import MetadataClient, SkillMetadata
from .config import DEFAULT_MAX_DEPTH
from .errors import CircularDependencyError, DependencyDepthExceeded, DependencyNotFound, NetworkError

logger = logging.getLogger(__name__)


class VisitState(enum.Enum):
    UNVISITED = "unvisited"
    IN_PROGRESS = "in_progress"
    DONE = "done"


@dataclass
class DependencyNode:
    name: str
    metadata: SkillMetadata
    # Children are referenced by name into the owning graph, never by object.
    children: list[str] = field(default_factory=list)
    visit_state: VisitState = VisitState.UNVISITED
    depth: int = 0  # depth at which the node was first reached

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def bundle_id(self) -> str:
        return self.metadata.bundle_id


@dataclass
class DependencyGraph:
    root: str
    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[DependencyNode]:
        return iter(self.nodes.values())

    def node(self, name: str) -> DependencyNode:
        return self.nodes[name]

    def children(self, name: str) -> list[DependencyNode]:
        return [self.nodes[c] for c in self.nodes[name].children]

    def edges(self) -> Iterator[tuple[str, str]]:
        """Yield (dependent, dependency) pairs."""
        for node in self.nodes.values():
            for child in node.children:
                yield node.name, child

    @property
    def dependency_count(self) -> int:
        return max(len(self.nodes) - 1, 0)


class GraphBuilder:
    """
    Builds the dependency graph for one install by depth-first traversal.

    Three-state marking detects cycles: reaching a node that is still IN_PROGRESS
    means the current path has looped back onto itself. Nodes already DONE are
    shared, so a diamond dependency is looked up exactly once.

    The root is depth 0; with max_depth=10 the tenth dependency level is
    allowed and the eleventh is not.
    """

    def __init__(self, metadata: MetadataClient) -> None:
        self._metadata = metadata

    def build(self, root_name: str, max_depth: int = DEFAULT_MAX_DEPTH) -> DependencyGraph:
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        graph = DependencyGraph(root=root_name)
        heights: dict[str, int] = {}
        self._visit(graph, heights, root_name, [], max_depth)
        logger.debug("resolved %d skill(s) for %s", len(graph), root_name)
        return graph

    def _visit(
        self,
        graph: DependencyGraph,
        heights: dict[str, int],
        name: str,
        path: list[str],
        max_depth: int,
    ) -> None:
        depth = len(path)
        existing = graph.nodes.get(name)
        if existing is not None:
            if existing.visit_state is VisitState.IN_PROGRESS:
                raise CircularDependencyError([*path, name])
            # Shared node: its subtree must still fit below this (possibly deeper) path.
            if depth + heights[name] > max_depth:
                raise DependencyDepthExceeded([*path, *self._deepest_chain(graph, heights, name)], max_depth)
            return

        if depth > max_depth:
            raise DependencyDepthExceeded([*path, name], max_depth)

        try:
            metadata = self._metadata.lookup(name)
        except NetworkError as e:
            raise NetworkError(str(e), target=e.target, chain=[*path, name]) from e
        if metadata is None:
            raise DependencyNotFound(name, [*path, name])

        node = DependencyNode(
            name=name,
            metadata=metadata,
            children=list(dict.fromkeys(metadata.dependencies)),
            visit_state=VisitState.IN_PROGRESS,
            depth=depth,
        )
        graph.nodes[name] = node
        logger.debug("visiting %s@%s (depth %d)", name, metadata.version, depth)

        child_path = [*path, name]
        for child in node.children:
            self._visit(graph, heights, child, child_path, max_depth)

        heights[name] = max((heights[c] + 1 for c in node.children), default=0)
        node.visit_state = VisitState.DONE

    @staticmethod
    def _deepest_chain(graph: DependencyGraph, heights: dict[str, int], name: str) -> list[str]:
        chain = [name]
        current = name
        while heights[current] > 0:
            current = next(c for c in graph.nodes[current].children if heights[c] == heights[current] - 1)
            chain.append(current)
        return chain
