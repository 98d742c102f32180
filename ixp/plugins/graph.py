"""
IXP Dependency Graph

Directed graph over plugin names. Edges run from a dependency to its
dependent, so a topological order installs dependencies first.
Iteration order is insertion order, which keeps results deterministic.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ixp.core.errors import CyclicDependencyError

logger = structlog.get_logger(__name__)


class DependencyGraph:
    """
    Directed graph for dependency tracking.

    Features:
    - Node and edge management
    - Deterministic topological sort (Kahn's algorithm)
    - Cycle detection with the offending path
    - Transitive dependents for shutdown ordering
    """

    def __init__(self):
        self._nodes: Dict[str, None] = {}  # Ordered set
        self._edges: Dict[str, Dict[str, None]] = {}  # from -> to
        self._reverse_edges: Dict[str, Dict[str, None]] = {}  # to -> from

    @classmethod
    def from_dependencies(
        cls,
        dependencies: Dict[str, Iterable[str]],
        include_external: bool = False,
    ) -> "DependencyGraph":
        """
        Build a graph from a name -> dependency names mapping.

        Args:
            dependencies: Mapping of node to the nodes it depends on
            include_external: Add dependencies not present as keys as nodes
        """
        graph = cls()
        for name in dependencies:
            graph.add_node(name)
        for name, deps in dependencies.items():
            for dep in deps:
                if dep in graph or include_external:
                    graph.add_edge(dep, name)
        return graph

    def add_node(self, node: str) -> None:
        if node not in self._nodes:
            self._nodes[node] = None
            self._edges[node] = {}
            self._reverse_edges[node] = {}

    def remove_node(self, node: str) -> None:
        """Remove a node and all its edges."""
        if node not in self._nodes:
            return

        for target in list(self._edges[node]):
            self.remove_edge(node, target)
        for source in list(self._reverse_edges[node]):
            self.remove_edge(source, node)

        del self._nodes[node]
        del self._edges[node]
        del self._reverse_edges[node]

    def add_edge(self, from_node: str, to_node: str) -> None:
        """Add an edge (from_node must be installed before to_node)."""
        self.add_node(from_node)
        self.add_node(to_node)
        self._edges[from_node][to_node] = None
        self._reverse_edges[to_node][from_node] = None

    def remove_edge(self, from_node: str, to_node: str) -> None:
        self._edges.get(from_node, {}).pop(to_node, None)
        self._reverse_edges.get(to_node, {}).pop(from_node, None)

    def __contains__(self, node: object) -> bool:
        return node in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> List[str]:
        return list(self._nodes)

    def get_dependencies(self, node: str) -> List[str]:
        """Direct dependencies of a node."""
        return list(self._reverse_edges.get(node, {}))

    def get_dependents(self, node: str) -> List[str]:
        """Nodes that depend directly on this node."""
        return list(self._edges.get(node, {}))

    def get_all_dependents(self, node: str) -> Set[str]:
        """All dependents (transitive closure)."""
        visited: Set[str] = set()
        queue = deque([node])

        while queue:
            current = queue.popleft()
            for dependent in self._edges.get(current, {}):
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)

        return visited

    # === Topological Sort ===

    def topological_sort(self) -> List[str]:
        """
        Perform topological sort using Kahn's algorithm.

        Ready nodes are taken in insertion order.

        Returns:
            Nodes in dependency order (dependencies first)

        Raises:
            CyclicDependencyError: If the graph has a cycle
        """
        in_degree: Dict[str, int] = {
            node: len(self._reverse_edges[node]) for node in self._nodes
        }
        queue = deque(node for node, degree in in_degree.items() if degree == 0)
        result: List[str] = []

        while queue:
            node = queue.popleft()
            result.append(node)

            for target in self._edges[node]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if len(result) != len(self._nodes):
            cycle = self.find_cycle() or [n for n in self._nodes if n not in result]
            raise CyclicDependencyError(cycle)

        return result

    def topological_sort_reverse(self) -> List[str]:
        """Dependents first; used for shutdown order."""
        return list(reversed(self.topological_sort()))

    # === Cycle Detection ===

    def has_cycle(self) -> bool:
        return self.find_cycle() is not None

    def find_cycle(self) -> Optional[List[str]]:
        """
        Find one cycle.

        Returns:
            The cycle as a path that starts and ends on the same node, or None
        """
        visited: Set[str] = set()
        on_stack: Set[str] = set()
        path: List[str] = []

        def dfs(node: str) -> Optional[List[str]]:
            visited.add(node)
            on_stack.add(node)
            path.append(node)

            for neighbor in self._edges[node]:
                if neighbor in on_stack:
                    start = path.index(neighbor)
                    return path[start:] + [neighbor]
                if neighbor not in visited:
                    found = dfs(neighbor)
                    if found:
                        return found

            path.pop()
            on_stack.discard(node)
            return None

        for node in self._nodes:
            if node not in visited:
                found = dfs(node)
                if found:
                    return found
        return None
