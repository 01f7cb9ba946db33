"""Contract identifiers and bindings."""

from dataclasses import dataclass
from typing import Any

from modulith.core.enums import Lifecycle


def type_id(obj: Any) -> str:
    """Dotted id of a class or function (`package.module.QualName`)."""
    module = getattr(obj, "__module__", None) or type(obj).__module__
    name = getattr(obj, "__qualname__", None) or type(obj).__qualname__
    return f"{module}.{name}"


def contract_id(contract: type | str) -> str:
    """
    Normalise a contract reference to its dotted id.

    Contracts are referenced either by their interface class or by the
    dotted id a module descriptor declares for it.
    """
    if isinstance(contract, str):
        if not contract:
            raise ValueError("Contract id cannot be empty")
        return contract
    if isinstance(contract, type):
        return type_id(contract)
    raise TypeError(
        f"Contract must be an interface class or a dotted id, got {type(contract).__name__}"
    )


@dataclass(frozen=True)
class ContractBinding:
    """An implementation bound to a contract by a module."""

    contract_id: str
    implementation_id: str
    module_owner: str | None
    lifecycle: Lifecycle

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "implementation_id": self.implementation_id,
            "module_owner": self.module_owner,
            "lifecycle": self.lifecycle.value,
        }
