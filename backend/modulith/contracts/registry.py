"""
Contract Registry for module communication.

Maps contract ids to implementations bound by the owning modules. The
registry has two phases:

1. Registration: modules bind implementations with `register()`.
2. Sealed: after `validate_all()` confirms every declared contract is
   bound, bindings are frozen and `resolve()` becomes available.

Instances are built by dependency_injector providers: a thread-safe
singleton provider for SINGLETON bindings and a factory provider for
TRANSIENT ones.
"""

import importlib
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from dependency_injector import providers

from modulith.core.enums import Lifecycle
from modulith.core.logging import get_logger
from modulith.descriptors import ModuleDescriptor
from modulith.descriptors.models import covers

from .base import ContractBinding, contract_id, type_id
from .errors import DuplicateBindingError, RegistryStateError, UnboundContractError

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Entry:
    binding: ContractBinding
    provider: providers.Provider
    contract: type | None = None


class ContractRegistry:
    """
    Central registry of contract implementations.

    Usage:
        registry.register(BillingService, StripeBillingService, module="billing")
        registry.validate_all(store)
        billing = registry.resolve(BillingService)
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        # Declared ids naming a bound class under another import path
        self._aliases: dict[str, str] = {}
        self._lock = threading.RLock()
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(
        self,
        contract: type | str,
        factory: Callable[..., Any],
        *,
        lifecycle: Lifecycle = Lifecycle.SINGLETON,
        module: str | None = None,
    ) -> ContractBinding:
        """
        Bind an implementation factory to a contract.

        Args:
            contract: Interface class or dotted contract id
            factory: Callable building the implementation (usually its class)
            lifecycle: SINGLETON for one shared instance, TRANSIENT for one per resolve
            module: Name of the module owning the implementation

        Raises:
            DuplicateBindingError: If the contract is already bound
            RegistryStateError: If the registry has been sealed
        """
        if not callable(factory):
            raise TypeError(f"Factory for {contract!r} must be callable")

        if lifecycle == Lifecycle.SINGLETON:
            provider: providers.Provider = providers.ThreadSafeSingleton(factory)
        else:
            provider = providers.Factory(factory)

        return self._add(contract, provider, type_id(factory), lifecycle, module)

    def register_instance(
        self, contract: type | str, instance: Any, *, module: str | None = None
    ) -> ContractBinding:
        """Bind an already built implementation to a contract."""
        return self._add(
            contract,
            providers.Object(instance),
            type_id(type(instance)),
            Lifecycle.SINGLETON,
            module,
        )

    def _add(
        self,
        contract: type | str,
        provider: providers.Provider,
        implementation_id: str,
        lifecycle: Lifecycle,
        module: str | None,
    ) -> ContractBinding:
        key = contract_id(contract)
        binding = ContractBinding(
            contract_id=key,
            implementation_id=implementation_id,
            module_owner=module,
            lifecycle=lifecycle,
        )

        with self._lock:
            if self._sealed:
                raise RegistryStateError(
                    f"Cannot register {key}: registry is sealed",
                    details={"contract_id": key},
                )
            if key in self._entries:
                raise DuplicateBindingError(
                    key, existing_module=self._entries[key].binding.module_owner, module=module
                )
            self._entries[key] = _Entry(
                binding=binding,
                provider=provider,
                contract=contract if isinstance(contract, type) else None,
            )

        logger.debug(
            "Contract bound",
            contract_id=key,
            implementation=implementation_id,
            module=module,
            lifecycle=lifecycle.value,
        )
        return binding

    def resolve(self, contract: type | str) -> Any:
        """
        Get the implementation bound to a contract.

        Raises:
            RegistryStateError: If the registry has not been validated yet
            UnboundContractError: If no implementation is bound
        """
        key = contract_id(contract)
        if not self._sealed:
            raise RegistryStateError(
                f"Cannot resolve {key} before the registry is validated",
                details={"contract_id": key},
            )

        # Entries are immutable once sealed
        entry = self._entries.get(key) or self._entries.get(self._aliases.get(key, ""))
        if entry is None:
            raise UnboundContractError([key])
        return entry.provider()

    def validate_all(self, descriptors: Iterable[ModuleDescriptor]) -> None:
        """
        Check every declared contract has a binding, then seal the registry.

        A declared id exporting a whole package is satisfied by any binding
        below it. A declared id that imports to a class bound under its
        defining module (a contract re-exported by its package) is satisfied
        by that binding and resolves to it.

        Raises:
            UnboundContractError: Listing every declared contract without a binding
        """
        declared = {
            declared_id: descriptor.name
            for descriptor in descriptors
            for declared_id in descriptor.exported_contracts
        }

        with self._lock:
            bound = list(self._entries)
            aliases: dict[str, str] = {}
            unbound = []
            for declared_id in declared:
                if any(covers(declared_id, bound_id) for bound_id in bound):
                    continue
                key = self._bound_class_key(declared_id)
                if key is None:
                    unbound.append(declared_id)
                else:
                    aliases[declared_id] = key

            if unbound:
                logger.error(
                    "Contract validation failed",
                    unbound=sorted(unbound),
                    modules=sorted({declared[c] for c in unbound}),
                )
                raise UnboundContractError(unbound)

            self._aliases = aliases
            self._sealed = True

        logger.info(
            "Contract registry sealed",
            binding_count=len(bound),
            declared_count=len(declared),
        )

    def _bound_class_key(self, declared_id: str) -> str | None:
        """Key of the class binding whose class the declared id imports to."""
        parent, _, name = declared_id.rpartition(".")
        if not parent:
            return None
        try:
            target = getattr(importlib.import_module(parent), name, None)
        except ImportError:
            return None
        if not isinstance(target, type):
            return None
        for key, entry in self._entries.items():
            if entry.contract is target:
                logger.debug(
                    "Declared contract matched by class", contract_id=declared_id, bound_as=key
                )
                return key
        return None

    def is_bound(self, contract: type | str) -> bool:
        key = contract_id(contract)
        return key in self._entries or key in self._aliases

    def bindings(self) -> list[ContractBinding]:
        """All bindings, sorted by contract id."""
        with self._lock:
            return [self._entries[key].binding for key in sorted(self._entries)]

    def reset(self) -> None:
        """Drop all bindings and unseal (mainly for testing)."""
        with self._lock:
            for entry in self._entries.values():
                if isinstance(entry.provider, providers.BaseSingleton):
                    entry.provider.reset()
            self._entries.clear()
            self._aliases.clear()
            self._sealed = False


# Global registry instance
_registry = ContractRegistry()


def get_contract_registry() -> ContractRegistry:
    """Get the global contract registry."""
    return _registry
