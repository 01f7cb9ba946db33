"""
Tests for the contract registry.
"""

import threading
from typing import Protocol

import pytest

from modulith.contracts import (
    ContractRegistry,
    DuplicateBindingError,
    RegistryStateError,
    UnboundContractError,
    contract_id,
    get_contract_registry,
)
from modulith.core.enums import Lifecycle

BILLING_SERVICE = "shop.modules.billing.contracts.BillingService"
SHIPPING_SERVICE = "shop.modules.shipping.contracts.ShippingService"


class BillingService(Protocol):
    def charge(self, customer_id: str, amount_cents: int) -> str: ...


class StripeBillingService:
    instances = 0

    def __init__(self):
        type(self).instances += 1

    def charge(self, customer_id: str, amount_cents: int) -> str:
        return f"{customer_id}:{amount_cents}"


class ShippingAdapter:
    def ship(self, order_id: str) -> None:
        pass


@pytest.fixture(autouse=True)
def reset_instance_counter():
    StripeBillingService.instances = 0


@pytest.fixture
def bound_registry(registry, shop_store):
    registry.register(BILLING_SERVICE, StripeBillingService, module="billing")
    registry.register(SHIPPING_SERVICE, ShippingAdapter, module="shipping")
    return registry


class TestContractIds:
    """Test suite for contract id normalisation."""

    def test_class_and_string_ids(self):
        assert contract_id(BillingService) == f"{__name__}.BillingService"
        assert contract_id(BILLING_SERVICE) == BILLING_SERVICE

    def test_invalid_ids(self):
        with pytest.raises(ValueError):
            contract_id("")
        with pytest.raises(TypeError):
            contract_id(42)


class TestRegistration:
    """Test suite for the registration phase."""

    def test_register_returns_binding(self, registry):
        binding = registry.register(BILLING_SERVICE, StripeBillingService, module="billing")

        assert binding.contract_id == BILLING_SERVICE
        assert binding.implementation_id == f"{__name__}.StripeBillingService"
        assert binding.module_owner == "billing"
        assert binding.lifecycle == Lifecycle.SINGLETON
        assert binding.to_dict()["lifecycle"] == "singleton"
        assert registry.is_bound(BILLING_SERVICE)

    def test_duplicate_binding_rejected(self, registry):
        registry.register(BillingService, StripeBillingService, module="billing")

        with pytest.raises(DuplicateBindingError) as exc_info:
            registry.register(BillingService, StripeBillingService, module="payments")

        assert exc_info.value.contract_id == contract_id(BillingService)
        assert exc_info.value.details["existing_module"] == "billing"
        assert exc_info.value.details["module"] == "payments"

    def test_factory_must_be_callable(self, registry):
        with pytest.raises(TypeError):
            registry.register(BILLING_SERVICE, object())

    def test_resolve_before_validation_rejected(self, bound_registry):
        with pytest.raises(RegistryStateError):
            bound_registry.resolve(BILLING_SERVICE)

    def test_bindings_sorted_by_contract(self, bound_registry):
        assert [b.contract_id for b in bound_registry.bindings()] == [
            BILLING_SERVICE,
            SHIPPING_SERVICE,
        ]


class TestValidation:
    """Test suite for validate_all and the sealed phase."""

    def test_validate_seals_registry(self, bound_registry, shop_store):
        bound_registry.validate_all(shop_store)

        assert bound_registry.sealed
        with pytest.raises(RegistryStateError):
            bound_registry.register("shop.modules.customers.contracts.Other", ShippingAdapter)

    def test_unbound_contracts_are_all_listed(self, registry, shop_store):
        with pytest.raises(UnboundContractError) as exc_info:
            registry.validate_all(shop_store)

        assert exc_info.value.contract_ids == [BILLING_SERVICE, SHIPPING_SERVICE]
        assert not registry.sealed

    def test_one_missing_contract(self, registry, shop_store):
        registry.register(BILLING_SERVICE, StripeBillingService)

        with pytest.raises(UnboundContractError) as exc_info:
            registry.validate_all(shop_store)

        assert exc_info.value.contract_ids == [SHIPPING_SERVICE]

    def test_package_export_satisfied_by_binding_below_it(self, registry):
        from modulith.descriptors import ModuleDescriptor

        descriptor = ModuleDescriptor(
            name="billing", package="shop.modules.billing", exportedContracts=["contracts"]
        )
        registry.register(BILLING_SERVICE, StripeBillingService)

        registry.validate_all([descriptor])

        assert registry.sealed

    def test_contract_reexported_by_its_package(self, registry, tmp_path, monkeypatch):
        import importlib

        from modulith.descriptors import ModuleDescriptor

        package = tmp_path / "reexported_billing" / "contracts"
        package.mkdir(parents=True)
        (tmp_path / "reexported_billing" / "__init__.py").write_text("")
        (package / "service.py").write_text(
            "class BillingService:\n    def charge(self, customer_id, amount_cents): ...\n"
        )
        (package / "__init__.py").write_text("from .service import BillingService\n")
        monkeypatch.syspath_prepend(str(tmp_path))
        contract = importlib.import_module("reexported_billing.contracts").BillingService

        descriptor = ModuleDescriptor(
            name="billing",
            package="reexported_billing",
            exportedContracts=["contracts.BillingService"],
        )
        registry.register(contract, StripeBillingService, module="billing")

        registry.validate_all([descriptor])

        declared = "reexported_billing.contracts.BillingService"
        assert registry.is_bound(declared)
        assert registry.resolve(declared) is registry.resolve(contract)
        assert [b.contract_id for b in registry.bindings()] == [
            "reexported_billing.contracts.service.BillingService"
        ]

    def test_declared_id_of_another_class_stays_unbound(self, registry):
        from modulith.descriptors import ModuleDescriptor

        descriptor = ModuleDescriptor(
            name="tests", package=__name__, exportedContracts=["ShippingAdapter"]
        )
        registry.register(BillingService, StripeBillingService)

        with pytest.raises(UnboundContractError) as exc_info:
            registry.validate_all([descriptor])

        assert exc_info.value.contract_ids == [f"{__name__}.ShippingAdapter"]

    def test_no_declared_contracts(self, registry):
        registry.validate_all([])

        assert registry.sealed


class TestResolution:
    """Test suite for resolve and lifecycles."""

    def test_singleton_shared(self, bound_registry, shop_store):
        bound_registry.validate_all(shop_store)

        first = bound_registry.resolve(BILLING_SERVICE)
        second = bound_registry.resolve(BILLING_SERVICE)

        assert first is second
        assert first.charge("c-1", 100) == "c-1:100"
        assert StripeBillingService.instances == 1

    def test_transient_new_instance(self, registry):
        registry.register(BILLING_SERVICE, StripeBillingService, lifecycle=Lifecycle.TRANSIENT)
        registry.validate_all([])

        assert registry.resolve(BILLING_SERVICE) is not registry.resolve(BILLING_SERVICE)
        assert StripeBillingService.instances == 2

    def test_register_instance(self, registry):
        adapter = ShippingAdapter()
        binding = registry.register_instance(SHIPPING_SERVICE, adapter, module="shipping")
        registry.validate_all([])

        assert registry.resolve(SHIPPING_SERVICE) is adapter
        assert binding.implementation_id == f"{__name__}.ShippingAdapter"

    def test_resolve_unbound(self, registry):
        registry.validate_all([])

        with pytest.raises(UnboundContractError):
            registry.resolve(BILLING_SERVICE)

    def test_concurrent_singleton_resolution(self, bound_registry, shop_store):
        bound_registry.validate_all(shop_store)
        results = []

        def resolve():
            results.append(bound_registry.resolve(BILLING_SERVICE))

        threads = [threading.Thread(target=resolve) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(r) for r in results}) == 1
        assert StripeBillingService.instances == 1

    def test_reset_unseals(self, bound_registry, shop_store):
        bound_registry.validate_all(shop_store)

        bound_registry.reset()

        assert not bound_registry.sealed
        assert bound_registry.bindings() == []

    def test_global_registry(self):
        assert get_contract_registry() is get_contract_registry()
