"""
Shared fixtures.

Sample projects are written into tmp_path as real Python packages next to a
modules.yaml descriptor file.
"""

import textwrap
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml

from modulith.contracts import ContractRegistry
from modulith.core.config import EventBusConfig
from modulith.descriptors import DescriptorStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


SHOP_DESCRIPTORS = {
    "modules": [
        {
            "name": "billing",
            "package": "shop.modules.billing",
            "exportedContracts": ["contracts.BillingService"],
            "exportedEvents": ["events.InvoicePaid"],
            "exportedDtos": ["dtos.InvoiceDto"],
            "permittedDependencies": ["customers"],
        },
        {
            "name": "shipping",
            "package": "shop.modules.shipping",
            "exportedContracts": ["contracts.ShippingService"],
            "permittedDependencies": ["billing"],
        },
        {
            "name": "customers",
            "package": "shop.modules.customers",
            "exportedDtos": ["dtos.CustomerDto"],
        },
    ]
}

SHOP_FILES = {
    "shop/__init__.py": "",
    "shop/modules/__init__.py": "",
    "shop/modules/billing/__init__.py": "",
    "shop/modules/billing/contracts.py": """
        from typing import Protocol

        class BillingService(Protocol):
            def charge(self, customer_id: str, amount_cents: int) -> str: ...
    """,
    "shop/modules/billing/dtos.py": """
        from dataclasses import dataclass

        @dataclass(frozen=True)
        class InvoiceDto:
            invoice_id: str
            amount_cents: int
    """,
    "shop/modules/billing/events.py": """
        class InvoicePaid:
            pass
    """,
    "shop/modules/billing/models.py": """
        class Invoice:
            pass
    """,
    "shop/modules/billing/internal/__init__.py": "",
    "shop/modules/billing/internal/ledger.py": """
        def post_entry(invoice):
            return invoice
    """,
    "shop/modules/billing/service.py": """
        from .internal.ledger import post_entry
        from .models import Invoice

        def pay(invoice: Invoice) -> Invoice:
            return post_entry(invoice)
    """,
    "shop/modules/shipping/__init__.py": "",
    "shop/modules/shipping/contracts.py": """
        from typing import Protocol

        class ShippingService(Protocol):
            def ship(self, order_id: str) -> None: ...
    """,
    "shop/modules/shipping/internal/__init__.py": "",
    "shop/modules/shipping/internal/rates.py": """
        def compute_rate(weight):
            return weight * 2
    """,
    "shop/modules/customers/__init__.py": "",
    "shop/modules/customers/dtos.py": """
        from dataclasses import dataclass

        @dataclass(frozen=True)
        class CustomerDto:
            customer_id: str
    """,
}


@pytest.fixture
def write_project(tmp_path):
    """
    Write a sample project and return its root.

    Files are dedented; `descriptors=None` skips modules.yaml.
    """

    def write(
        files: dict[str, str] | None = None,
        descriptors: dict | None = SHOP_DESCRIPTORS,
        base: dict[str, str] | None = SHOP_FILES,
    ) -> Path:
        for relative, source in {**(base or {}), **(files or {})}.items():
            path = tmp_path / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(source).lstrip(), encoding="utf-8")
        if descriptors is not None:
            (tmp_path / "modules.yaml").write_text(yaml.safe_dump(descriptors), encoding="utf-8")
        return tmp_path

    return write


@pytest.fixture
def shop_store():
    return DescriptorStore.from_mapping(SHOP_DESCRIPTORS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus_config():
    """Event bus settings with deterministic, immediate retries."""
    return EventBusConfig(
        max_attempts=3,
        lease_seconds=30.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_backoff_multiplier=2.0,
        retry_jitter=False,
        worker_batch_size=100,
        worker_poll_interval=0.01,
        worker_concurrency=4,
    )


@pytest.fixture
def registry():
    return ContractRegistry()
