"""Errors of the offline boundary analysis."""

from typing import Any

from modulith.core.errors import ApplicationError, ErrorSeverity


class AnalysisError(ApplicationError):
    """Base class for errors that abort an analysis run."""

    default_code = "ANALYSIS_ERROR"
    severity = ErrorSeverity.HIGH


class SourceParseError(AnalysisError):
    """A source unit could not be parsed."""

    default_code = "SOURCE_PARSE_ERROR"

    def __init__(self, unit: str, reason: str, **kwargs: Any) -> None:
        super().__init__(f"Cannot parse {unit}: {reason}", **kwargs)
        self.unit = unit
        self.details.update({"unit": unit, "reason": reason})
        self.code = self.default_code


class BoundaryViolationError(ApplicationError):
    """
    An illegal cross-module reference.

    Not raised by the checker: one instance is recorded per illegal edge and
    all of them are aggregated into the analysis report.
    """

    default_code = "BOUNDARY_VIOLATION"
    severity = ErrorSeverity.LOW
    reason_code: str | None = None

    def __init__(
        self,
        source_module: str,
        target_module: str,
        unit: str,
        reason: str | None = None,
        symbol: str | None = None,
        **kwargs: Any,
    ) -> None:
        reason = reason or self.reason_code or "boundary-violation"
        message = f"{source_module} -> {target_module} in {unit}: {reason}"
        if symbol:
            message += f" ({symbol})"
        super().__init__(message, **kwargs)
        self.source_module = source_module
        self.target_module = target_module
        self.unit = unit
        self.reason = reason
        self.symbol = symbol
        self.details.update(self.to_record())
        self.code = self.default_code

    def to_record(self) -> dict[str, Any]:
        """Machine-readable violation record."""
        return {
            "source_module": self.source_module,
            "target_module": self.target_module,
            "unit": self.unit,
            "reason": self.reason,
            "symbol": self.symbol,
        }


class RawEntityLeakError(BoundaryViolationError):
    """A Query unit reads another module's entity but returns a non-DTO type."""

    default_code = "RAW_ENTITY_LEAK"
    reason_code = "raw-entity-leak"

    def __init__(
        self,
        source_module: str,
        target_module: str,
        unit: str,
        symbol: str | None = None,
        offending_callables: tuple[str, ...] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(
            source_module,
            target_module,
            unit,
            reason=self.reason_code,
            symbol=symbol,
            **kwargs,
        )
        self.offending_callables = offending_callables
        self.details["offending_callables"] = list(offending_callables)
