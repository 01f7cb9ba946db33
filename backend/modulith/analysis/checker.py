"""
Boundary Rule Checker.

Classifies every dependency edge as Legal or Illegal:

1. The target must be a permitted dependency of the source module.
2. Contracts, events and DTOs of a permitted module may be referenced.
3. Entities may only be read from Query units whose public callables all
   return DTOs (the inter-module read exception).
4. Anything else is an internal symbol.

Every Illegal edge yields exactly one violation.
"""

from collections.abc import Iterable, Mapping

from modulith.core.logging import get_logger
from modulith.descriptors import DescriptorStore

from .errors import BoundaryViolationError, RawEntityLeakError
from .models import DependencyEdge, SymbolKind, UnitFacts, Verdict, ViolationReason

logger = get_logger(__name__)


class BoundaryRuleChecker:
    """Applies the boundary rules to a set of edges."""

    def __init__(self, store: DescriptorStore):
        self.store = store

    def check(
        self, edges: Iterable[DependencyEdge], unit_facts: Mapping[str, UnitFacts]
    ) -> tuple[list[DependencyEdge], list[BoundaryViolationError]]:
        """
        Classify edges.

        Args:
            edges: Unclassified edges
            unit_facts: Facts per unit id, for the Query read exception

        Returns:
            Classified edges and the violations of the Illegal ones
        """
        classified: list[DependencyEdge] = []
        violations: list[BoundaryViolationError] = []

        for edge in edges:
            violation = self._evaluate(edge, unit_facts)
            if violation is None:
                classified.append(edge.classify(Verdict.LEGAL))
            else:
                classified.append(edge.classify(Verdict.ILLEGAL, violation.reason))
                violations.append(violation)

        if violations:
            logger.info(
                "Boundary violations found",
                violation_count=len(violations),
                edge_count=len(classified),
            )
        return classified, violations

    def _evaluate(
        self, edge: DependencyEdge, unit_facts: Mapping[str, UnitFacts]
    ) -> BoundaryViolationError | None:
        source = self.store.get(edge.source_module)
        unit = edge.units[0] if edge.units else ""

        if not source.permits(edge.target_module):
            return BoundaryViolationError(
                edge.source_module,
                edge.target_module,
                unit,
                reason=ViolationReason.ILLEGAL_DEPENDENCY.value,
                symbol=edge.symbol,
            )

        if edge.kind.is_public:
            return None

        if edge.kind is SymbolKind.ENTITY:
            return self._check_entity_read(edge, unit_facts)

        return BoundaryViolationError(
            edge.source_module,
            edge.target_module,
            unit,
            reason=ViolationReason.INTERNAL_SYMBOL.value,
            symbol=edge.symbol,
        )

    def _check_entity_read(
        self, edge: DependencyEdge, unit_facts: Mapping[str, UnitFacts]
    ) -> BoundaryViolationError | None:
        for unit in edge.units:
            facts = unit_facts.get(unit)
            if facts is None or not facts.is_query:
                return BoundaryViolationError(
                    edge.source_module,
                    edge.target_module,
                    unit,
                    reason=ViolationReason.ENTITY_ACCESS.value,
                    symbol=edge.symbol,
                )
            if not facts.returns_dto:
                return RawEntityLeakError(
                    edge.source_module,
                    edge.target_module,
                    unit,
                    symbol=edge.symbol,
                    offending_callables=facts.offending_callables,
                )
        return None
