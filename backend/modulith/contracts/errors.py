"""Contract registry errors. All of them are fatal to application startup."""

from typing import Any

from modulith.core.errors import ApplicationError, ErrorSeverity


class ContractRegistryError(ApplicationError):
    """Base class for contract registry errors."""

    default_code = "CONTRACT_REGISTRY_ERROR"
    severity = ErrorSeverity.HIGH


class DuplicateBindingError(ContractRegistryError):
    """A contract already has an implementation bound."""

    default_code = "DUPLICATE_BINDING"

    def __init__(
        self,
        contract_id: str,
        existing_module: str | None = None,
        module: str | None = None,
        **kwargs: Any,
    ) -> None:
        message = f"Contract {contract_id} is already bound"
        if existing_module:
            message += f" by module {existing_module}"
        super().__init__(message, **kwargs)
        self.contract_id = contract_id
        self.details.update(
            {
                "contract_id": contract_id,
                "existing_module": existing_module,
                "module": module,
            }
        )
        self.code = self.default_code


class UnboundContractError(ContractRegistryError):
    """One or more contracts have no implementation bound."""

    default_code = "UNBOUND_CONTRACT"

    def __init__(self, contract_ids: list[str], **kwargs: Any) -> None:
        self.contract_ids = sorted(contract_ids)
        if len(self.contract_ids) == 1:
            message = f"No implementation bound for contract {self.contract_ids[0]}"
        else:
            message = (
                f"No implementation bound for {len(self.contract_ids)} contracts: "
                f"{', '.join(self.contract_ids)}"
            )
        super().__init__(message, **kwargs)
        self.details["contract_ids"] = self.contract_ids
        self.code = self.default_code


class RegistryStateError(ContractRegistryError):
    """Operation not allowed in the registry's current phase."""

    default_code = "REGISTRY_STATE"
