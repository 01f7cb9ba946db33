"""
Dependency Graph Builder.

Aggregates symbol references into deduplicated module-to-module edges. One
edge exists per distinct (source module, target module, symbol); the units
that produced it are kept on the edge in first-seen order.
"""

from collections.abc import Iterable

from modulith.core.logging import get_logger

from .models import DependencyEdge, SymbolReference

logger = get_logger(__name__)


class DependencyGraph:
    """Module-level view of the extracted edges."""

    def __init__(self, edges: list[DependencyEdge]):
        self.edges = edges

    def __len__(self) -> int:
        return len(self.edges)

    def __iter__(self):
        return iter(self.edges)

    def adjacency(self) -> dict[str, set[str]]:
        """Map each source module to the set of modules it references."""
        graph: dict[str, set[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source_module, set()).add(edge.target_module)
            graph.setdefault(edge.target_module, set())
        return graph

    def edges_from(self, module: str) -> list[DependencyEdge]:
        return [edge for edge in self.edges if edge.source_module == module]

    def find_cycles(self) -> list[list[str]]:
        """
        Find module dependency cycles.

        Returns each cycle once as a list of module names, starting from its
        alphabetically smallest member.
        """
        graph = self.adjacency()
        cycles: set[tuple[str, ...]] = set()

        def visit(node: str, path: list[str], on_path: set[str]) -> None:
            for target in sorted(graph.get(node, ())):
                if target in on_path:
                    cycle = path[path.index(target) :]
                    start = cycle.index(min(cycle))
                    cycles.add(tuple(cycle[start:] + cycle[:start]))
                    continue
                if target < path[0]:
                    continue
                path.append(target)
                on_path.add(target)
                visit(target, path, on_path)
                on_path.discard(target)
                path.pop()

        for module in sorted(graph):
            visit(module, [module], {module})

        return [list(cycle) for cycle in sorted(cycles)]


class DependencyGraphBuilder:
    """Builds a DependencyGraph from symbol references."""

    def build(self, references: Iterable[SymbolReference]) -> DependencyGraph:
        """
        Aggregate references into edges.

        Self references (a module referencing its own symbols) are dropped.
        Edges are returned sorted by (source, target, symbol).
        """
        edges: dict[tuple[str, str, str], DependencyEdge] = {}
        units: dict[tuple[str, str, str], list[str]] = {}
        dropped = 0

        for reference in references:
            if reference.source_module == reference.target_module:
                dropped += 1
                continue

            key = (reference.source_module, reference.target_module, reference.symbol)
            if key not in edges:
                edges[key] = DependencyEdge(
                    source_module=reference.source_module,
                    target_module=reference.target_module,
                    symbol=reference.symbol,
                    kind=reference.kind,
                )
                units[key] = []
            if reference.source_unit not in units[key]:
                units[key].append(reference.source_unit)

        result = [
            DependencyEdge(
                source_module=edge.source_module,
                target_module=edge.target_module,
                symbol=edge.symbol,
                kind=edge.kind,
                units=tuple(units[key]),
            )
            for key, edge in sorted(edges.items())
        ]

        logger.debug(
            "Dependency graph built",
            edge_count=len(result),
            self_references_dropped=dropped,
        )
        return DependencyGraph(result)
