# portbuild/modules/graph.py
"""
Dependency graph between ports.

Edges point from a dependent to its dependency (`A -> B` means "A needs B"),
so a node's indegree is the number of distinct dependents that reference it.
`topo_sort` runs Kahn's algorithm against that orientation, starting from
the ports with no dependencies, which yields the build order.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional

from rich.tree import Tree

from portbuild.modules.errors import GraphError
from portbuild.modules.metadata import DependencyRef
from portbuild.modules.versions import Constraint

WHITE, GRAY, BLACK = 0, 1, 2


class Node:
    def __init__(self, ident: str, index: int):
        self.id = ident
        self.index = index              # discovery order, used for tie-breaks
        self.refs: List[DependencyRef] = []
        self.indegree = 0
        self.constraint: Optional[Constraint] = None

    @property
    def adjacency(self) -> List[str]:
        return [r.target for r in self.refs]

    def __repr__(self):
        return f"Node({self.id!r}, deps={self.adjacency}, indegree={self.indegree})"


class DependencyGraph:
    """
    Graph of ports built fresh for each resolution request.
    """

    def __init__(self):
        self.nodes: Dict[str, Node] = {}

    def __contains__(self, ident):
        return ident in self.nodes

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __getitem__(self, ident) -> Node:
        return self.nodes[ident]

    # ---------------------------
    # Construction
    # ---------------------------
    def add_node(self, ident: str) -> Node:
        node = self.nodes.get(ident)
        if node is None:
            node = Node(ident, len(self.nodes))
            self.nodes[ident] = node
        return node

    def add_edge(self, dependent: str, ref: DependencyRef) -> bool:
        """Insert dependent -> ref.target. Returns False if the edge already existed."""
        src = self.add_node(dependent)
        dst = self.add_node(ref.target)
        if dst.constraint is None and ref.constraint is not None:
            dst.constraint = ref.constraint
        if ref.target in src.adjacency:
            return False
        src.refs.append(ref)
        dst.indegree += 1
        return True

    def add_package(self, package: str, dependencies: Iterable[DependencyRef]):
        """Add a package and its dependencies."""
        self.add_node(package)
        for ref in dependencies:
            self.add_edge(package, ref)

    def dependents(self, ident: str) -> List[str]:
        return [n.id for n in self.nodes.values() if ident in n.adjacency]

    def constraint_of(self, ident: str) -> Optional[Constraint]:
        return self.nodes[ident].constraint

    def dependency_counts(self) -> Dict[str, int]:
        """Number of distinct dependencies per node (indegree in build direction)."""
        return {ident: len(n.refs) for ident, n in self.nodes.items()}

    # ---------------------------
    # Algorithms
    # ---------------------------
    def detect_cycles(self) -> Optional[List[str]]:
        """
        Three-color DFS. Returns None when the graph is acyclic, otherwise the
        cycle path starting and ending at the node where it closes,
        e.g. ["A", "B", "C", "A"].
        """
        color = {ident: WHITE for ident in self.nodes}
        for start in self.nodes:
            if color[start] != WHITE:
                continue
            path = [start]
            stack = [iter(self.nodes[start].adjacency)]
            color[start] = GRAY
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                    continue
                if color[nxt] == GRAY:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == WHITE:
                    color[nxt] = GRAY
                    path.append(nxt)
                    stack.append(iter(self.nodes[nxt].adjacency))
        return None

    def topo_sort(self) -> List[str]:
        """
        Build order: every dependency precedes its dependents. Kahn's algorithm
        seeded with the ports that have no dependencies; among ports that
        become ready together the first discovered comes first.
        """
        pending = self.dependency_counts()
        dependents: Dict[str, List[str]] = {ident: [] for ident in self.nodes}
        for ident, n in self.nodes.items():
            for dep in n.adjacency:
                dependents[dep].append(ident)
        heap = [(n.index, ident) for ident, n in self.nodes.items() if pending[ident] == 0]
        heapq.heapify(heap)
        out = []
        while heap:
            _, ident = heapq.heappop(heap)
            out.append(ident)
            for dependent in dependents[ident]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].index, dependent))
        remaining = sorted(i for i, d in pending.items() if d > 0)
        if remaining:
            raise GraphError(f"Cannot order graph, nodes left with unbuilt dependencies: {remaining}")
        return out

    # ---------------------------
    # Export
    # ---------------------------
    def to_dict(self) -> Dict[str, object]:
        nodes = []
        edges = []
        for ident, n in self.nodes.items():
            nodes.append({
                "id": ident,
                "constraint": n.constraint.describe() if n.constraint else None,
                "indegree": n.indegree,
            })
            for ref in n.refs:
                edges.append({
                    "from": ident,
                    "to": ref.target,
                    "constraint": ref.constraint.describe() if ref.constraint else None,
                })
        return {"nodes": nodes, "edges": edges}

    def to_dot(self) -> str:
        lines = ["digraph deps {", "  node [shape=box];"]
        for ident, n in self.nodes.items():
            label = ident
            if n.constraint:
                label += f"\\n({n.constraint.describe()})"
            lines.append(f'  "{ident}" [label="{label}"];')
        for ident, n in self.nodes.items():
            for ref in n.refs:
                if ref.constraint:
                    lines.append(f'  "{ident}" -> "{ref.target}" [label="{ref.constraint.describe()}"];')
                else:
                    lines.append(f'  "{ident}" -> "{ref.target}";')
        lines.append("}")
        return "\n".join(lines)

    def tree(self, root: str) -> Tree:
        """rich Tree of the dependencies under `root`; repeated subtrees are elided."""
        tree = Tree(f"[bold green]{root}[/bold green]")
        shown = {root}
        work = [(root, tree)]
        while work:
            ident, branch = work.pop()
            for ref in self.nodes[ident].refs:
                label = str(ref)
                if ref.target in shown:
                    branch.add(f"{label} [dim](already shown)[/dim]")
                    continue
                shown.add(ref.target)
                work.append((ref.target, branch.add(label)))
        return tree


def detect_cycles(graph: DependencyGraph) -> Optional[List[str]]:
    return graph.detect_cycles()


def topo_sort(graph: DependencyGraph) -> List[str]:
    return graph.topo_sort()
