"""
Analysis runner.

Runs one full boundary analysis over a project: unit discovery, parallel
extraction, then graph building and rule checking once every unit is done.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from modulith.core.config import AnalysisConfig
from modulith.core.errors import error_context
from modulith.core.logging import get_logger
from modulith.descriptors import DescriptorStore, ModuleDescriptor

from .checker import BoundaryRuleChecker
from .extractor import SymbolReferenceExtractor
from .graph import DependencyGraphBuilder
from .models import AnalysisReport, UnitAnalysis

logger = get_logger(__name__)


class AnalysisRunner:
    """
    Analyzes a project against its module descriptors.

    Usage:
        store = DescriptorStore.from_path("modules.yaml")
        report = AnalysisRunner(store, ".").run()
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        store: DescriptorStore,
        project_root: str | Path,
        config: AnalysisConfig | None = None,
    ):
        self.store = store
        self.project_root = Path(project_root).resolve()
        self.config = config or AnalysisConfig()
        self.extractor = SymbolReferenceExtractor(store, self.project_root)
        self.graph_builder = DependencyGraphBuilder()
        self.checker = BoundaryRuleChecker(store)

    def discover(self) -> list[tuple[ModuleDescriptor, Path]]:
        """All (module, unit path) pairs to analyze, in module then path order."""
        return [
            (descriptor, path)
            for descriptor in self.store
            for path in self.extractor.discover_units(
                descriptor, self.config.exclude_patterns
            )
        ]

    def run(self) -> AnalysisReport:
        """
        Run the analysis.

        Raises:
            UnresolvedModuleError: A unit references a module that does not exist
            SourceParseError: A unit is not valid Python
        """
        started = time.perf_counter()
        units = self.discover()

        logger.info(
            "Starting boundary analysis",
            project_root=str(self.project_root),
            module_count=len(self.store),
            unit_count=len(units),
        )

        with error_context(project_root=str(self.project_root)):
            analyses = self._extract_all(units)

        references = [ref for analysis in analyses for ref in analysis.references]
        unit_facts = {analysis.facts.unit: analysis.facts for analysis in analyses}

        graph = self.graph_builder.build(references)
        for cycle in graph.find_cycles():
            logger.info("Module dependency cycle", modules=cycle)

        edges, violations = self.checker.check(graph, unit_facts)

        report = AnalysisReport(
            modules=self.store.names(),
            edges=edges,
            violations=violations,
            units_analyzed=len(analyses),
        )

        logger.info(
            "Boundary analysis completed",
            verdict=report.verdict,
            edge_count=len(edges),
            violation_count=len(violations),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return report

    def _extract_all(
        self, units: list[tuple[ModuleDescriptor, Path]]
    ) -> list[UnitAnalysis]:
        # Fan out per unit; results are collected in discovery order
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [
                executor.submit(self.extractor.extract_unit, descriptor, path)
                for descriptor, path in units
            ]
            return [future.result() for future in futures]
