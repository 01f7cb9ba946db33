"""
Module descriptor model.

A descriptor is the declared identity of one business module: its root
package, exported contract / event / DTO types and the modules it may depend
on. Type ids may be written relative to the module package
(`contracts.BillingService`) and are normalised to absolute dotted ids. An
export id also covers everything below it, so exporting `contracts` exports
the whole `contracts` sub-package.
"""

from fnmatch import fnmatch
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_ENTITY_LOCATIONS = ("models", "entities", "*.models", "*.entities")
DEFAULT_QUERY_UNITS = ("queries/*", "*/queries/*", "*_query.py", "*_queries.py")


def covers(prefix: str, symbol: str) -> bool:
    """Check if a dotted id equals prefix or lies below it."""
    return symbol == prefix or symbol.startswith(prefix + ".")


class ModuleDescriptor(BaseModel):
    """Declared identity of a module. Immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1)
    package: str = Field(min_length=1)
    path: str | None = None
    exported_contracts: frozenset[str] = Field(
        default_factory=frozenset, alias="exportedContracts"
    )
    exported_events: frozenset[str] = Field(
        default_factory=frozenset, alias="exportedEvents"
    )
    exported_dtos: frozenset[str] = Field(
        default_factory=frozenset, alias="exportedDtos"
    )
    permitted_dependencies: frozenset[str] = Field(
        default_factory=frozenset, alias="permittedDependencies"
    )
    entities: frozenset[str] = Field(default_factory=frozenset)
    entity_locations: tuple[str, ...] = Field(
        default=DEFAULT_ENTITY_LOCATIONS, alias="entityLocations"
    )
    query_units: tuple[str, ...] = Field(
        default=DEFAULT_QUERY_UNITS, alias="queryUnits"
    )

    @field_validator("package")
    @classmethod
    def _check_package(cls, value: str) -> str:
        parts = value.split(".")
        if not all(part.isidentifier() for part in parts):
            raise ValueError(f"package must be a dotted import path, got {value!r}")
        return value

    @model_validator(mode="before")
    @classmethod
    def _absolute_type_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        package = data.get("package")
        if not package:
            return data

        normalised = dict(data)
        for key in (
            "exported_contracts",
            "exportedContracts",
            "exported_events",
            "exportedEvents",
            "exported_dtos",
            "exportedDtos",
            "entities",
        ):
            if key in normalised and normalised[key] is not None:
                normalised[key] = frozenset(
                    type_id if covers(package, type_id) else f"{package}.{type_id}"
                    for type_id in normalised[key]
                )
        return normalised

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def directory(self) -> PurePosixPath:
        """Module directory, relative to the project root unless absolute."""
        if self.path:
            return PurePosixPath(self.path)
        return PurePosixPath(*self.package.split("."))

    def owns(self, symbol: str) -> bool:
        """Check if a dotted id lives inside this module's package."""
        return covers(self.package, symbol)

    def relative_symbol(self, symbol: str) -> str:
        """Dotted id relative to the module package ('' for the package itself)."""
        if symbol == self.package:
            return ""
        return symbol[len(self.package) + 1 :]

    # ------------------------------------------------------------------
    # Export tables
    # ------------------------------------------------------------------

    def exports_contract(self, symbol: str) -> bool:
        return any(covers(type_id, symbol) for type_id in self.exported_contracts)

    def exports_event(self, symbol: str) -> bool:
        return any(covers(type_id, symbol) for type_id in self.exported_events)

    def exports_dto(self, symbol: str) -> bool:
        return any(covers(type_id, symbol) for type_id in self.exported_dtos)

    def is_entity(self, symbol: str) -> bool:
        """
        Check if a symbol is a raw persistence entity of this module.

        Entities are listed explicitly or live in a sub-package matching one
        of the entity location patterns.
        """
        if any(covers(type_id, symbol) for type_id in self.entities):
            return True

        parts = self.relative_symbol(symbol).split(".")
        for depth in range(1, len(parts) + 1):
            prefix = ".".join(parts[:depth])
            if any(fnmatch(prefix, pattern) for pattern in self.entity_locations):
                return True
        return False

    # ------------------------------------------------------------------
    # Units and dependencies
    # ------------------------------------------------------------------

    def is_query_unit(self, unit_path: str) -> bool:
        """Check if a unit (path relative to the module directory) is a Query."""
        return any(fnmatch(unit_path, pattern) for pattern in self.query_units)

    def permits(self, module_name: str) -> bool:
        """Check if this module may depend on another module."""
        return module_name == self.name or module_name in self.permitted_dependencies

    def to_dict(self) -> dict[str, Any]:
        """Serialize with sorted collections for stable reports."""
        return {
            "name": self.name,
            "package": self.package,
            "path": str(self.directory),
            "exported_contracts": sorted(self.exported_contracts),
            "exported_events": sorted(self.exported_events),
            "exported_dtos": sorted(self.exported_dtos),
            "permitted_dependencies": sorted(self.permitted_dependencies),
        }
