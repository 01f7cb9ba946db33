"""
Module Descriptor Store.

Loads the module descriptor set and answers ownership questions about dotted
symbol ids. Descriptors are read from either:

- one YAML/JSON file with a top-level `modules:` list, or
- a directory tree in which each `module.yaml` / `module.yml` / `module.json`
  describes one module (`path` defaults to the file's directory).
"""

import json
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from modulith.core.errors import ConfigurationError
from modulith.core.logging import get_logger

from .errors import UnresolvedModuleError
from .models import ModuleDescriptor, covers

logger = get_logger(__name__)

DESCRIPTOR_FILE_NAMES = ("module.yaml", "module.yml", "module.json")


def _read_document(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read descriptor file {path}: {e}", config_key=str(path)
        ) from e

    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Malformed descriptor file {path}: {e}", config_key=str(path)
        ) from e


def _build_descriptor(data: Any, source: str) -> ModuleDescriptor:
    if not isinstance(data, Mapping):
        raise ConfigurationError(
            f"Descriptor in {source} must be a mapping, got {type(data).__name__}",
            config_key=source,
        )
    try:
        return ModuleDescriptor.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid module descriptor in {source}: {e}", config_key=source
        ) from e


class DescriptorStore:
    """
    Immutable set of module descriptors for one run.

    Usage:
        store = DescriptorStore.from_path("modules.yaml")
        owner = store.owner_of("shop.modules.billing.contracts.BillingService")
    """

    def __init__(self, descriptors: Iterable[ModuleDescriptor], validate: bool = True):
        self._modules: dict[str, ModuleDescriptor] = {}
        packages: dict[str, str] = {}

        for descriptor in descriptors:
            if descriptor.name in self._modules:
                raise ConfigurationError(
                    f"Duplicate module descriptor: {descriptor.name}",
                    config_key=descriptor.name,
                )
            if descriptor.package in packages:
                raise ConfigurationError(
                    f"Modules {packages[descriptor.package]} and {descriptor.name} "
                    f"share package {descriptor.package}",
                    config_key=descriptor.name,
                )
            self._modules[descriptor.name] = descriptor
            packages[descriptor.package] = descriptor.name

        # Longest package first so nested module packages win ownership lookups
        self._by_package = sorted(
            self._modules.values(), key=lambda d: len(d.package), reverse=True
        )

        if validate:
            self.validate()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_path(cls, path: str | Path) -> "DescriptorStore":
        """Load descriptors from a descriptor file or a directory tree."""
        path = Path(path)
        if path.is_dir():
            return cls(cls._load_directory(path))
        if path.is_file():
            return cls.from_mapping(_read_document(path), source=str(path))
        raise ConfigurationError(
            f"Descriptor path does not exist: {path}", config_key=str(path)
        )

    @classmethod
    def from_mapping(cls, data: Any, source: str = "<memory>") -> "DescriptorStore":
        """Build a store from a parsed `{modules: [...]}` document or a list."""
        if isinstance(data, Mapping):
            data = data.get("modules")
        if not isinstance(data, list):
            raise ConfigurationError(
                f"Descriptor set in {source} must contain a 'modules' list",
                config_key=source,
            )
        return cls(
            _build_descriptor(item, f"{source}[{index}]")
            for index, item in enumerate(data)
        )

    @staticmethod
    def _load_directory(root: Path) -> list[ModuleDescriptor]:
        descriptors = []
        for file_path in sorted(root.rglob("module.*")):
            if file_path.name not in DESCRIPTOR_FILE_NAMES:
                continue
            data = _read_document(file_path)
            if isinstance(data, Mapping) and "path" not in data:
                data = {**data, "path": file_path.parent.resolve().as_posix()}
            descriptors.append(_build_descriptor(data, str(file_path)))

        logger.debug(
            "Loaded module descriptors", root=str(root), module_count=len(descriptors)
        )
        return descriptors

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check that every permitted dependency names a known module.

        Raises:
            UnresolvedModuleError: For the first unknown dependency found
        """
        for descriptor in self._modules.values():
            for dependency in sorted(descriptor.permitted_dependencies):
                if dependency not in self._modules:
                    raise UnresolvedModuleError(dependency, referenced_by=descriptor.name)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> ModuleDescriptor:
        """Get a descriptor by module name."""
        try:
            return self._modules[name]
        except KeyError:
            raise UnresolvedModuleError(name) from None

    def find(self, name: str) -> ModuleDescriptor | None:
        return self._modules.get(name)

    def names(self) -> list[str]:
        return sorted(self._modules)

    def __iter__(self) -> Iterator[ModuleDescriptor]:
        return iter(self._modules[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._modules)

    def __contains__(self, name: object) -> bool:
        return name in self._modules

    def owner_of(self, symbol: str) -> ModuleDescriptor | None:
        """Module whose package contains the symbol (innermost package wins)."""
        for descriptor in self._by_package:
            if descriptor.owns(symbol):
                return descriptor
        return None

    @property
    def namespaces(self) -> frozenset[str]:
        """Parent packages under which modules live."""
        return frozenset(
            d.package.rpartition(".")[0] for d in self._modules.values() if "." in d.package
        )

    def in_module_namespace(self, symbol: str) -> bool:
        """
        Check if a symbol lies where only modules live.

        A symbol directly below a namespace package (`shop.modules.X...`)
        must belong to some module.
        """
        return any(
            symbol.startswith(namespace + ".") for namespace in self.namespaces
        )

    def declared_contracts(self) -> dict[str, str]:
        """Map every exported contract type id to its declaring module."""
        return {
            type_id: descriptor.name
            for descriptor in self._modules.values()
            for type_id in descriptor.exported_contracts
        }

    def event_owner(self, event_type_id: str) -> str | None:
        """Name of the module exporting an event type, if any."""
        for descriptor in self._modules.values():
            if any(covers(type_id, event_type_id) for type_id in descriptor.exported_events):
                return descriptor.name
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"modules": [descriptor.to_dict() for descriptor in self]}
