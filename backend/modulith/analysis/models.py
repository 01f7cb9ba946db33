"""
Data model of the boundary analysis.

References are produced by the extractor, aggregated into edges by the graph
builder and classified by the rule checker. All records are frozen; an edge
is classified by replacing it, never by mutation.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import BoundaryViolationError


class SymbolKind(str, Enum):
    """What a referenced symbol is to its owning module."""

    CONTRACT = "contract"
    EVENT = "event"
    DTO = "dto"
    ENTITY = "entity"
    INTERNAL = "internal"

    @property
    def is_public(self) -> bool:
        """Contracts, events and DTOs form a module's public surface."""
        return self in (SymbolKind.CONTRACT, SymbolKind.EVENT, SymbolKind.DTO)


class Verdict(str, Enum):
    """Classification of a dependency edge."""

    PENDING = "pending"
    LEGAL = "legal"
    ILLEGAL = "illegal"


class ViolationReason(str, Enum):
    """Reason codes recorded on violations."""

    ILLEGAL_DEPENDENCY = "illegal-dependency"
    INTERNAL_SYMBOL = "internal-symbol"
    ENTITY_ACCESS = "entity-access"
    RAW_ENTITY_LEAK = "raw-entity-leak"


@dataclass(frozen=True)
class SymbolReference:
    """One external symbol referenced by a source unit."""

    source_module: str
    source_unit: str
    target_module: str
    symbol: str
    kind: SymbolKind
    line: int = 0


@dataclass(frozen=True)
class UnitFacts:
    """
    Per-unit facts needed by the rule checker.

    returns_dto is only meaningful for Query units: True when every public
    callable declares a DTO (or DTO collection) return type.
    """

    module: str
    unit: str
    is_query: bool = False
    returns_dto: bool = False
    offending_callables: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnitAnalysis:
    """Extractor output for one source unit."""

    facts: UnitFacts
    references: tuple[SymbolReference, ...] = ()


@dataclass(frozen=True)
class DependencyEdge:
    """A deduplicated (source module, target module, symbol) dependency."""

    source_module: str
    target_module: str
    symbol: str
    kind: SymbolKind
    units: tuple[str, ...] = ()
    verdict: Verdict = Verdict.PENDING
    reason: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_module, self.target_module, self.symbol)

    def classify(self, verdict: Verdict, reason: str | None = None) -> "DependencyEdge":
        """Return the classified edge. Classified edges cannot be reclassified."""
        if self.verdict is not Verdict.PENDING:
            raise ValueError(f"Edge {self.key} is already classified as {self.verdict.value}")
        if verdict is Verdict.PENDING:
            raise ValueError("Cannot classify an edge as pending")
        return replace(self, verdict=verdict, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_module": self.source_module,
            "target_module": self.target_module,
            "symbol": self.symbol,
            "kind": self.kind.value,
            "units": list(self.units),
            "verdict": self.verdict.value,
            "reason": self.reason,
        }


@dataclass
class AnalysisReport:
    """Result of one analysis run. The verdict is Pass iff there are no violations."""

    modules: list[str]
    edges: list[DependencyEdge] = field(default_factory=list)
    violations: list[BoundaryViolationError] = field(default_factory=list)
    units_analyzed: int = 0

    @property
    def passed(self) -> bool:
        return not self.violations

    @property
    def verdict(self) -> str:
        return "pass" if self.passed else "fail"

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def violation_records(self) -> list[dict[str, Any]]:
        return [violation.to_record() for violation in self.violations]

    def to_dict(self, include_edges: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "verdict": self.verdict,
            "modules": self.modules,
            "units_analyzed": self.units_analyzed,
            "violations": self.violation_records(),
        }
        if include_edges:
            data["edges"] = [edge.to_dict() for edge in self.edges]
        return data
