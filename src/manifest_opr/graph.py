"""Graph module for manifest-based orchestration.

Builds a dependency DAG from Manifest.nodes (references plus explicit
depends_on) and computes traversal orderings for apply (dependencies
first) and destroy (dependents first).
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from errors import CycleDetected, PhaseOrderError, UnresolvedReference
from manifest import Manifest, ManifestNode, Phase

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ExecutionNode:
    """A node in the execution graph with dependency edges.

    Wraps a ManifestNode and adds graph structure for traversal.

    Attributes:
        manifest_node: The underlying ManifestNode definition
        dependencies: Nodes this node references
        dependents: Nodes that reference this node
        depth: Longest dependency path to this node (0 for sources)
        index: Declaration order in the manifest
    """
    manifest_node: ManifestNode
    dependencies: list['ExecutionNode'] = field(default_factory=list)
    dependents: list['ExecutionNode'] = field(default_factory=list)
    depth: int = 0
    index: int = 0

    @property
    def name(self) -> str:
        return self.manifest_node.name

    @property
    def kind(self) -> str:
        return self.manifest_node.kind.value

    @property
    def phase(self) -> Phase:
        return self.manifest_node.phase

    def __repr__(self) -> str:
        return f"ExecutionNode({self.name}, kind={self.kind}, phase={self.phase.value}, depth={self.depth})"


class ManifestGraph:
    """Dependency DAG built from a manifest's nodes.

    Construction is pure: it validates references, cycles and phase
    ordering, and makes no provider calls.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, manifest: Manifest):
        """Build execution graph from manifest.

        Raises:
            ValueError: If manifest has no nodes
            UnresolvedReference: If a node references an unknown node
            CycleDetected: If the dependency graph has a cycle
            PhaseOrderError: If a node depends on a later-phase node
        """
        if not manifest.nodes:
            raise ValueError("ManifestGraph requires a manifest with nodes")

        self.manifest = manifest
        self._nodes: dict[str, ExecutionNode] = {}
        self._order: list[ExecutionNode] = []
        self._build_graph(manifest.nodes)

    def _build_graph(self, nodes: list[ManifestNode]) -> None:
        """Build ExecutionNode graph from ManifestNodes."""
        for i, mn in enumerate(nodes):
            self._nodes[mn.name] = ExecutionNode(manifest_node=mn, index=i)

        # Wire dependency edges
        for mn in nodes:
            exec_node = self._nodes[mn.name]
            for dep_name in mn.dependency_names():
                dep = self._nodes.get(dep_name)
                if dep is None:
                    raise UnresolvedReference(mn.name, dep_name)
                if dep is exec_node:
                    raise CycleDetected([mn.name, mn.name])
                exec_node.dependencies.append(dep)
                dep.dependents.append(exec_node)

        self._check_cycles()
        self._check_phases()
        self._order = self._topological_sort()

        # Depth is the longest path from a source node
        for node in self._order:
            node.depth = max((d.depth + 1 for d in node.dependencies), default=0)

        logger.debug(f"Built graph for '{self.manifest.name}': "
                     f"{len(self._nodes)} nodes, max depth {self.max_depth}")

    def _check_cycles(self) -> None:
        """DFS cycle detection; reports the cycle path."""
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(node: ExecutionNode) -> None:
            visited.add(node.name)
            stack.append(node.name)
            on_stack.add(node.name)
            for dep in node.dependencies:
                if dep.name in on_stack:
                    start = stack.index(dep.name)
                    raise CycleDetected(stack[start:] + [dep.name])
                if dep.name not in visited:
                    visit(dep)
            stack.pop()
            on_stack.discard(node.name)

        for node in self._nodes.values():
            if node.name not in visited:
                visit(node)

    def _check_phases(self) -> None:
        """A node may only depend on nodes from the same or an earlier phase."""
        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep.phase.rank > node.phase.rank:
                    raise PhaseOrderError(
                        f"Node '{node.name}' ({node.phase.value}) depends on "
                        f"'{dep.name}' from later phase '{dep.phase.value}'",
                        node=node.name,
                        chain=[node.name, dep.name],
                    )

    def _topological_sort(self) -> list[ExecutionNode]:
        """Kahn's algorithm; ties broken by declaration order."""
        remaining = {name: len(n.dependencies) for name, n in self._nodes.items()}
        ready = sorted((n for n in self._nodes.values() if remaining[n.name] == 0),
                       key=lambda n: n.index)
        queue: deque[ExecutionNode] = deque(ready)
        ordered: list[ExecutionNode] = []

        while queue:
            node = queue.popleft()
            ordered.append(node)
            released = []
            for dependent in node.dependents:
                remaining[dependent.name] -= 1
                if remaining[dependent.name] == 0:
                    released.append(dependent)
            # Keep the queue sorted by declaration order for stable output
            queue = deque(sorted(list(queue) + released, key=lambda n: n.index))

        return ordered

    @property
    def nodes(self) -> list[ExecutionNode]:
        """All nodes in declaration order."""
        return sorted(self._nodes.values(), key=lambda n: n.index)

    @property
    def max_depth(self) -> int:
        """Longest dependency chain length."""
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> ExecutionNode:
        """Get an ExecutionNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def create_order(self, names: Optional[Iterable[str]] = None) -> list[ExecutionNode]:
        """Return nodes in creation order (dependencies before dependents).

        Args:
            names: Optional subset to keep (order is still global)
        """
        if names is None:
            return list(self._order)
        keep = set(names)
        return [n for n in self._order if n.name in keep]

    def destroy_order(self, names: Optional[Iterable[str]] = None) -> list[ExecutionNode]:
        """Return nodes in destruction order (dependents before dependencies).

        Reverse of create_order.
        """
        return list(reversed(self.create_order(names)))

    def levels(self) -> list[list[ExecutionNode]]:
        """Group nodes by depth; nodes within a level are independent."""
        grouped: dict[int, list[ExecutionNode]] = {}
        for node in self._order:
            grouped.setdefault(node.depth, []).append(node)
        return [grouped[d] for d in sorted(grouped)]

    def dependencies(self, name: str, transitive: bool = False) -> list[str]:
        """Names of nodes that name depends on."""
        return self._walk(name, lambda n: n.dependencies, transitive)

    def dependents(self, name: str, transitive: bool = False) -> list[str]:
        """Names of nodes that depend on name."""
        return self._walk(name, lambda n: n.dependents, transitive)

    def _walk(self, name: str, edges, transitive: bool) -> list[str]:
        start = self._nodes[name]
        if not transitive:
            return [n.name for n in edges(start)]
        seen: list[str] = []
        queue: deque[ExecutionNode] = deque(edges(start))
        while queue:
            node = queue.popleft()
            if node.name in seen:
                continue
            seen.append(node.name)
            queue.extend(edges(node))
        return seen

    def phase_nodes(self, phase: Phase) -> list[ExecutionNode]:
        """Nodes tagged with phase, in creation order."""
        return [n for n in self._order if n.phase == phase]

    def dependency_chain(self, source: str, target: str) -> list[str]:
        """Shortest dependency path from source to target (inclusive).

        Returns an empty list when target is not a dependency of source.
        """
        parents: dict[str, Optional[str]] = {source: None}
        queue: deque[ExecutionNode] = deque([self._nodes[source]])
        while queue:
            node = queue.popleft()
            if node.name == target:
                chain = []
                current: Optional[str] = target
                while current is not None:
                    chain.append(current)
                    current = parents[current]
                return list(reversed(chain))
            for dep in node.dependencies:
                if dep.name not in parents:
                    parents[dep.name] = node.name
                    queue.append(dep)
        return []
