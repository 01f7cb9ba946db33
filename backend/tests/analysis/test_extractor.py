"""
Tests for the symbol reference extractor.
"""

import pytest

from modulith.analysis import SourceParseError, SymbolKind, SymbolReferenceExtractor
from modulith.descriptors import DescriptorStore, UnresolvedModuleError

SHIPPING_UNIT = "shop/modules/shipping/service.py"
QUERY_UNIT = "shop/modules/shipping/queries/invoice_queries.py"


@pytest.fixture
def analyze(write_project):
    """Write one shipping unit and extract it."""

    def run(source: str, unit: str = SHIPPING_UNIT, module: str = "shipping"):
        root = write_project({unit: source})
        store = DescriptorStore.from_path(root / "modules.yaml")
        extractor = SymbolReferenceExtractor(store, root)
        return extractor.extract_unit(store.get(module), root / unit)

    return run


def symbols(analysis):
    return {(ref.symbol, ref.kind) for ref in analysis.references}


class TestReferenceExtraction:
    """Test suite for import resolution and classification."""

    def test_imported_contract(self, analyze):
        analysis = analyze(
            """
            from shop.modules.billing.contracts import BillingService

            def run(service: BillingService) -> None:
                service.charge("c-1", 10)
            """
        )

        assert symbols(analysis) == {
            ("shop.modules.billing.contracts.BillingService", SymbolKind.CONTRACT)
        }
        reference = analysis.references[0]
        assert reference.source_module == "shipping"
        assert reference.target_module == "billing"
        assert reference.source_unit == SHIPPING_UNIT
        assert reference.line == 3

    def test_attribute_chain_through_submodules(self, analyze):
        analysis = analyze(
            """
            from shop.modules.billing import internal

            def book(invoice):
                return internal.ledger.post_entry(invoice)
            """
        )

        assert symbols(analysis) == {
            ("shop.modules.billing.internal.ledger.post_entry", SymbolKind.INTERNAL)
        }

    def test_dotted_import_resolves_full_chain(self, analyze):
        analysis = analyze(
            """
            import shop.modules.billing.dtos

            def to_dto(invoice):
                return shop.modules.billing.dtos.InvoiceDto(invoice.id, invoice.amount)
            """
        )

        assert symbols(analysis) == {("shop.modules.billing.dtos.InvoiceDto", SymbolKind.DTO)}

    def test_aliased_module_import(self, analyze):
        analysis = analyze(
            """
            import shop.modules.billing.events as billing_events

            HANDLED = (billing_events.InvoicePaid,)
            """
        )

        assert symbols(analysis) == {("shop.modules.billing.events.InvoicePaid", SymbolKind.EVENT)}

    def test_unused_import_still_counts(self, analyze):
        analysis = analyze("from shop.modules.billing.models import Invoice  # noqa: F401\n")

        assert symbols(analysis) == {("shop.modules.billing.models.Invoice", SymbolKind.ENTITY)}

    def test_string_annotations_and_type_checking_imports(self, analyze):
        analysis = analyze(
            """
            from typing import TYPE_CHECKING

            if TYPE_CHECKING:
                from shop.modules.billing import dtos

            def latest() -> "dtos.InvoiceDto":
                raise NotImplementedError
            """
        )

        assert symbols(analysis) == {("shop.modules.billing.dtos.InvoiceDto", SymbolKind.DTO)}

    def test_relative_imports_resolve_inside_own_module(self, analyze):
        analysis = analyze(
            """
            from .internal import rates
            from ..billing.dtos import InvoiceDto

            def price(weight):
                return rates.compute_rate(weight), InvoiceDto
            """
        )

        assert {(ref.target_module, ref.symbol) for ref in analysis.references} == {
            ("shipping", "shop.modules.shipping.internal.rates.compute_rate"),
            ("billing", "shop.modules.billing.dtos.InvoiceDto"),
        }

    def test_foreign_root_package_is_a_symbol(self, analyze):
        analysis = analyze(
            """
            from shop.modules.billing import *
            from .. import shipping

            def modules():
                return shipping, post_entry
            """
        )

        assert [(ref.target_module, ref.symbol, ref.kind) for ref in analysis.references] == [
            ("billing", "shop.modules.billing", SymbolKind.INTERNAL)
        ]

    def test_external_references_are_ignored(self, analyze):
        analysis = analyze(
            """
            import os
            from typing import Protocol

            import yaml

            def load(path):
                return yaml.safe_load(os.path.join(path, "x.yaml"))
            """
        )

        assert analysis.references == ()

    def test_unknown_module_in_namespace_is_unresolved(self, analyze):
        with pytest.raises(UnresolvedModuleError) as exc_info:
            analyze("from shop.modules.inventory.api import Stock\n")

        assert exc_info.value.module == "shop.modules.inventory"
        assert exc_info.value.referenced_by == "shipping"
        assert exc_info.value.unit == SHIPPING_UNIT

    def test_syntax_error(self, analyze):
        with pytest.raises(SourceParseError) as exc_info:
            analyze("def broken(:\n    pass\n")

        assert exc_info.value.unit == SHIPPING_UNIT

    def test_non_query_unit_facts(self, analyze):
        analysis = analyze("VALUE = 1\n")

        assert analysis.facts.module == "shipping"
        assert analysis.facts.is_query is False
        assert analysis.facts.returns_dto is False


class TestQueryReturnTypes:
    """Test suite for Query unit return-type inspection."""

    def test_dto_collection_returns(self, analyze):
        analysis = analyze(
            """
            from typing import Optional

            from shop.modules.billing.dtos import InvoiceDto
            from shop.modules.billing.models import Invoice

            def list_invoices(session) -> list[InvoiceDto]:
                return [InvoiceDto(r.id, r.amount) for r in session.query(Invoice)]

            def find_invoice(session, invoice_id) -> InvoiceDto | None:
                return None

            def by_customer(session) -> dict[str, tuple[InvoiceDto, ...]]:
                return {}

            def maybe(session) -> Optional["InvoiceDto"]:
                return None

            def count(session) -> int:
                return 0

            def _to_row(invoice) -> Invoice:
                return invoice
            """,
            unit=QUERY_UNIT,
        )

        assert analysis.facts.is_query is True
        assert analysis.facts.returns_dto is True
        assert analysis.facts.offending_callables == ()

    def test_raw_entity_return_is_offending(self, analyze):
        analysis = analyze(
            """
            from shop.modules.billing.dtos import InvoiceDto
            from shop.modules.billing.models import Invoice

            class InvoiceQueries:
                def all(self, session) -> list[InvoiceDto]:
                    return []

                def raw(self, session) -> list[Invoice]:
                    return session.query(Invoice).all()

            def untyped(session):
                return session.query(Invoice).first()
            """,
            unit=QUERY_UNIT,
        )

        assert analysis.facts.is_query is True
        assert analysis.facts.returns_dto is False
        assert analysis.facts.offending_callables == ("InvoiceQueries.raw", "untyped")


class TestUnitDiscovery:
    """Test suite for unit discovery."""

    def test_discovers_sorted_units_and_applies_excludes(self, write_project):
        root = write_project({"shop/modules/billing/tests/test_service.py": "X = 1\n"})
        store = DescriptorStore.from_path(root / "modules.yaml")
        extractor = SymbolReferenceExtractor(store, root)

        units = extractor.discover_units(store.get("billing"), ["*/tests/*"])
        names = [extractor.unit_name(path) for path in units]

        assert names == sorted(names)
        assert "shop/modules/billing/service.py" in names
        assert "shop/modules/billing/internal/ledger.py" in names
        assert not any("/tests/" in name for name in names)

    def test_missing_module_directory(self, tmp_path, shop_store):
        extractor = SymbolReferenceExtractor(shop_store, tmp_path)

        assert extractor.discover_units(shop_store.get("billing")) == []
