"""
Offline boundary analysis.

Extracts symbol references from source units, builds the module dependency
graph and classifies every edge against the module descriptors.
"""

from .checker import BoundaryRuleChecker
from .errors import AnalysisError, BoundaryViolationError, RawEntityLeakError, SourceParseError
from .extractor import SymbolReferenceExtractor
from .graph import DependencyGraph, DependencyGraphBuilder
from .models import (
    AnalysisReport,
    DependencyEdge,
    SymbolKind,
    SymbolReference,
    UnitAnalysis,
    UnitFacts,
    Verdict,
    ViolationReason,
)
from .runner import AnalysisRunner

__all__ = [
    "AnalysisError",
    "AnalysisReport",
    "AnalysisRunner",
    "BoundaryRuleChecker",
    "BoundaryViolationError",
    "DependencyEdge",
    "DependencyGraph",
    "DependencyGraphBuilder",
    "RawEntityLeakError",
    "SourceParseError",
    "SymbolKind",
    "SymbolReference",
    "SymbolReferenceExtractor",
    "UnitAnalysis",
    "UnitFacts",
    "Verdict",
    "ViolationReason",
]
