"""Errors raised while loading or consulting module descriptors."""

from typing import Any

from modulith.core.errors import ApplicationError, ErrorSeverity


class UnresolvedModuleError(ApplicationError):
    """
    A module name or module-owned symbol cannot be resolved.

    Raised when a descriptor permits a dependency on an unknown module, or
    when source code references a package inside a module namespace that no
    descriptor owns. Fatal to the analysis run.
    """

    default_code = "UNRESOLVED_MODULE"
    severity = ErrorSeverity.HIGH

    def __init__(
        self,
        module: str,
        referenced_by: str | None = None,
        unit: str | None = None,
        **kwargs: Any,
    ) -> None:
        message = f"Unresolved module: {module}"
        if referenced_by:
            message += f" (referenced by {referenced_by})"
        if unit:
            message += f" in {unit}"
        super().__init__(message, **kwargs)
        self.module = module
        self.referenced_by = referenced_by
        self.unit = unit
        self.details.update(
            {"module": module, "referenced_by": referenced_by, "unit": unit}
        )
        self.code = self.default_code
