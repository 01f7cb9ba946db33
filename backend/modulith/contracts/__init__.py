"""
Contract Registry.

Modules expose behaviour to each other only through contracts: interfaces
declared in a module's descriptor and bound to an implementation at startup.
"""

from .base import ContractBinding, contract_id
from .errors import (
    ContractRegistryError,
    DuplicateBindingError,
    RegistryStateError,
    UnboundContractError,
)
from .registry import ContractRegistry, get_contract_registry

__all__ = [
    "ContractBinding",
    "ContractRegistry",
    "ContractRegistryError",
    "DuplicateBindingError",
    "RegistryStateError",
    "UnboundContractError",
    "contract_id",
    "get_contract_registry",
]
