# portbuild/modules/resolver.py
from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from portbuild.modules import logger as _logger
from portbuild.modules.errors import MalformedTokenError
from portbuild.modules.graph import DependencyGraph
from portbuild.modules.metadata import DependencyRef, DependencySet, parse_token

LOG = _logger.Logger("resolver")

MetadataSource = Callable[[str], DependencySet]


class DependencyResolver:
    """
    Expands a root port into its transitive dependency graph.

    Build and run dependencies are always followed; test dependencies only
    when `include_test` is set. Expansion uses an explicit worklist and a
    visited set, so it terminates on cyclic input; cycles are reported later
    by DependencyGraph.detect_cycles().
    """

    def __init__(self, metadata: MetadataSource, include_test: bool = False):
        self.metadata = metadata
        self.include_test = include_test
        self.skipped: List[Tuple[str, str]] = []

    def parse_dependencies(self, port: str) -> List[DependencyRef]:
        """Parsed refs of `port` across categories, malformed tokens skipped."""
        deps = self.metadata(port)
        tokens = list(deps.build) + list(deps.run)
        if self.include_test:
            tokens += list(deps.test)
        refs = []
        for tok in tokens:
            try:
                refs.append(parse_token(tok))
            except MalformedTokenError as e:
                LOG.warning(f"{port}: {e}; skipped")
                self.skipped.append((port, tok))
        return refs

    def build_graph(self, root: str) -> DependencyGraph:
        graph = DependencyGraph()
        graph.add_node(root)
        visited = {root}
        work = [root]
        while work:
            port = work.pop(0)
            for ref in self.parse_dependencies(port):
                graph.add_edge(port, ref)
                if ref.target not in visited:
                    visited.add(ref.target)
                    work.append(ref.target)
        LOG.debug(f"Resolved {root}: {len(graph)} nodes")
        return graph

    resolve = build_graph

    @staticmethod
    def find_reverse_dependencies(graph: DependencyGraph, port: str) -> List[str]:
        """Ports in `graph` that depend directly on `port`."""
        return graph.dependents(port)

    def find_missing(self, graph: DependencyGraph,
                     installed: Callable[[str], Tuple[bool, Optional[str]]]) -> List[str]:
        """Ports of the graph that are not installed, in build order."""
        return [p for p in graph.topo_sort() if not installed(p)[0]]


def build_graph(root: str, metadata: MetadataSource, include_test: bool = False) -> DependencyGraph:
    return DependencyResolver(metadata, include_test=include_test).build_graph(root)
