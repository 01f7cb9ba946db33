"""
Tests for the event bus: subscriptions, publishing and the queued delivery protocol.
"""

from typing import ClassVar
from uuid import uuid4

import pytest

from modulith.contracts import RegistryStateError
from modulith.core.errors import ConflictError, ValidationError
from modulith.descriptors import UnresolvedModuleError
from modulith.events import (
    ContractListener,
    DeliveryMode,
    DeliveryNotFoundError,
    DeliveryState,
    DomainEvent,
    EventBus,
    InvalidDeliveryStateError,
    ListenerExecutionError,
    RetryPolicy,
    StaleClaimError,
)


class InvoicePaid(DomainEvent):
    module_name: ClassVar[str] = "billing"

    invoice_id: str
    amount_cents: int


class UndeclaredEvent(DomainEvent):
    pass


def invoice_paid(invoice_id="inv-1", amount_cents=500):
    return InvoicePaid(invoice_id=invoice_id, amount_cents=amount_cents)


class Recorder:
    """Listener recording the events it receives."""

    def __init__(self, name, log=None, fail=False):
        self.name = name
        self.log = log if log is not None else []
        self.fail = fail

    def __call__(self, event):
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        self.log.append((self.name, event.event_id))


@pytest.fixture
def sealed_registry(registry):
    registry.validate_all([])
    return registry


@pytest.fixture
def bus(sealed_registry, shop_store, bus_config, clock):
    return EventBus(registry=sealed_registry, store=shop_store, config=bus_config, clock=clock)


def subscribe_queued(bus, name, **kwargs):
    return bus.subscribe(
        InvoicePaid, Recorder(name), owner_module="shipping", listener_id=name, **kwargs
    )


class TestSubscriptions:
    """Test suite for subscribe and delivery mode rules."""

    def test_mode_follows_ownership(self, bus):
        inline = bus.subscribe(InvoicePaid, Recorder("a"), owner_module="billing", listener_id="a")
        queued = subscribe_queued(bus, "b")

        assert inline.mode == DeliveryMode.INLINE
        assert queued.mode == DeliveryMode.QUEUED
        assert queued.subscription_id == f"{InvoicePaid.event_type_id()}:b"
        assert queued.to_dict()["mode"] == "queued"

    def test_explicit_mode_must_match(self, bus):
        with pytest.raises(ValidationError):
            bus.subscribe(
                InvoicePaid,
                Recorder("a"),
                owner_module="shipping",
                mode=DeliveryMode.INLINE,
            )
        with pytest.raises(ValidationError):
            bus.subscribe(InvoicePaid, Recorder("a"), owner_module="billing", mode="queued")

    def test_matching_explicit_mode_accepted(self, bus):
        subscription = subscribe_queued(bus, "b", mode=DeliveryMode.QUEUED)

        assert subscription.mode == DeliveryMode.QUEUED

    def test_async_inline_listener_rejected(self, bus):
        async def on_paid(event):
            pass

        with pytest.raises(ValidationError):
            bus.subscribe(InvoicePaid, on_paid, owner_module="billing")

    def test_async_queued_listener_accepted(self, bus):
        async def on_paid(event):
            pass

        subscription = bus.subscribe(InvoicePaid, on_paid, owner_module="shipping")

        assert subscription.listener_id.endswith("on_paid")

    def test_duplicate_subscription_rejected(self, bus):
        subscribe_queued(bus, "b")

        with pytest.raises(ConflictError):
            subscribe_queued(bus, "b")

    def test_unknown_owner_module(self, bus):
        with pytest.raises(UnresolvedModuleError):
            bus.subscribe(InvoicePaid, Recorder("a"), owner_module="inventory")

    def test_event_without_publisher(self, bus):
        with pytest.raises(ValidationError):
            bus.subscribe(UndeclaredEvent, Recorder("a"), owner_module="billing")

    def test_publisher_from_descriptor(self, bus_config):
        from modulith.descriptors import DescriptorStore

        store = DescriptorStore.from_mapping(
            {
                "modules": [
                    {
                        "name": "billing",
                        "package": "shop.modules.billing",
                        "exportedEvents": [UndeclaredEvent.event_type_id()],
                    }
                ]
            }
        )
        bus = EventBus(store=store, config=bus_config)

        assert bus.publisher_module(UndeclaredEvent) == "billing"

    def test_non_event_type_rejected(self, bus):
        with pytest.raises(ValidationError):
            bus.subscribe(dict, Recorder("a"), owner_module="billing")

    def test_unsubscribe(self, bus):
        subscription = subscribe_queued(bus, "b")

        assert bus.unsubscribe(subscription.subscription_id) is True
        assert bus.unsubscribe(subscription.subscription_id) is False
        assert bus.subscriptions(InvoicePaid) == []
        assert bus.get_subscription(subscription.subscription_id) is None


class TestPublish:
    """Test suite for publish."""

    def test_inline_in_order_and_queued_rows(self, bus):
        log = []
        for name in ("first", "second", "third"):
            bus.subscribe(InvoicePaid, Recorder(name, log), owner_module="billing", listener_id=name)
        subscribe_queued(bus, "ship")
        bus.subscribe(
            InvoicePaid, Recorder("crm"), owner_module="customers", listener_id="crm"
        )

        event = invoice_paid()
        result = bus.publish(event)

        assert result.ok
        assert result.inline_delivered == ["first", "second", "third"]
        assert [name for name, _ in log] == ["first", "second", "third"]
        assert sorted(d.listener_id for d in result.queued) == ["crm", "ship"]
        assert all(d.state == DeliveryState.PENDING for d in result.queued)
        assert all(d.event_id == event.event_id for d in result.queued)
        assert all(d.max_attempts == 3 for d in result.queued)

    def test_queued_payload_rebuilds_event(self, bus):
        subscribe_queued(bus, "ship")

        result = bus.publish(invoice_paid(amount_cents=1234), correlation_id="req-9")

        delivery = result.queued[0]
        rebuilt = InvoicePaid.from_payload(delivery.payload)
        assert rebuilt.amount_cents == 1234
        assert rebuilt.correlation_id == "req-9"
        assert rebuilt.source_module == "billing"
        assert delivery.correlation_id == "req-9"

    def test_correlation_id_generated(self, bus):
        result = bus.publish(invoice_paid())

        assert result.event.correlation_id
        assert result.event.source_module == "billing"

    def test_failing_inline_listener_is_isolated(self, bus):
        log = []
        bus.subscribe(InvoicePaid, Recorder("a", log), owner_module="billing", listener_id="a")
        bus.subscribe(
            InvoicePaid, Recorder("b", fail=True), owner_module="billing", listener_id="b"
        )
        bus.subscribe(InvoicePaid, Recorder("c", log), owner_module="billing", listener_id="c")
        subscribe_queued(bus, "ship")

        result = bus.publish(invoice_paid())

        assert not result.ok
        assert result.inline_delivered == ["a", "c"]
        assert len(result.queued) == 1
        error = result.errors[0]
        assert isinstance(error, ListenerExecutionError)
        assert error.listener_id == "b"
        assert "b exploded" in error.reason

    def test_publish_without_listeners(self, bus):
        result = bus.publish(invoice_paid())

        assert result.ok
        assert result.queued == []
        assert result.inline_delivered == []

    def test_publish_before_registry_sealed(self, registry, shop_store, bus_config):
        bus = EventBus(registry=registry, store=shop_store, config=bus_config)

        with pytest.raises(RegistryStateError):
            bus.publish(invoice_paid())

    def test_contract_listener_resolves_implementation(self, registry, shop_store, bus_config):
        received = []

        class ShippingHandlers:
            def on_invoice_paid(self, event):
                received.append(event.invoice_id)

        registry.register_instance(
            "shop.modules.shipping.contracts.ShippingService", ShippingHandlers()
        )
        registry.validate_all([])
        bus = EventBus(registry=registry, store=shop_store, config=bus_config)
        listener = ContractListener(
            "shop.modules.shipping.contracts.ShippingService", "on_invoice_paid", registry
        )
        subscription = bus.subscribe(InvoicePaid, listener, owner_module="shipping")

        delivery = bus.publish(invoice_paid("inv-7")).queued[0]
        subscription.listener(InvoicePaid.from_payload(delivery.payload))

        assert subscription.listener_id == (
            "shop.modules.shipping.contracts.ShippingService.on_invoice_paid"
        )
        assert received == ["inv-7"]

    def test_events_are_immutable(self):
        event = invoice_paid()

        with pytest.raises(Exception):
            event.amount_cents = 1
        with pytest.raises(Exception):
            InvoicePaid(invoice_id="x", amount_cents=1, session=object())


class TestQueuedDeliveryProtocol:
    """Test suite for claim, ack, nack, requeue and leases."""

    def test_claim_and_ack(self, bus, clock, bus_config):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())

        claimed = bus.claim_next("ship")
        delivered = bus.ack(claimed.delivery_id, claimed.claim_token)

        assert claimed.state == DeliveryState.IN_FLIGHT
        assert (claimed.lease_expires_at - clock.now).total_seconds() == bus_config.lease_seconds
        assert delivered.state == DeliveryState.DELIVERED
        assert delivered.delivered_at == clock.now
        assert bus.claim_next("ship") is None
        assert bus.pending_listeners() == []

    def test_nack_retries_then_dead_letters(self, bus):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())
        dead_lettered = []
        bus.add_dead_letter_handler(dead_lettered.append)

        first = bus.claim_next("ship")
        retried = bus.nack(first.delivery_id, "timeout", first.claim_token)
        assert retried.state == DeliveryState.PENDING
        assert retried.attempt_count == 1
        assert retried.last_error == "timeout"

        second = bus.claim_next("ship")
        bus.nack(second.delivery_id, "timeout")
        third = bus.claim_next("ship")
        dead = bus.nack(third.delivery_id, "still broken", third.claim_token)

        assert dead.state == DeliveryState.DEAD_LETTERED
        assert dead.attempt_count == 3
        assert dead.last_error == "still broken"
        assert dead_lettered == [dead]
        assert bus.dead_letters() == [dead]
        assert bus.claim_next("ship") is None

    def test_failing_dead_letter_handler_is_logged(self, bus, bus_config):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())

        def broken_handler(delivery):
            raise RuntimeError("alerting down")

        bus.add_dead_letter_handler(broken_handler)
        for _ in range(bus_config.max_attempts):
            claimed = bus.claim_next("ship")
            result = bus.nack(claimed.delivery_id, "boom", claimed.claim_token)

        assert result.state == DeliveryState.DEAD_LETTERED

    def test_retry_waits_for_backoff(self, shop_store, bus_config, clock, sealed_registry):
        bus = EventBus(
            registry=sealed_registry,
            store=shop_store,
            config=bus_config,
            clock=clock,
            retry_policy=RetryPolicy(base_delay=10.0, max_delay=60.0, jitter=False),
        )
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())

        claimed = bus.claim_next("ship")
        retried = bus.nack(claimed.delivery_id, "timeout", claimed.claim_token)

        assert (retried.available_at - clock.now).total_seconds() == 10.0
        assert bus.claim_next("ship") is None
        clock.advance(10)
        assert bus.claim_next("ship").delivery_id == claimed.delivery_id

    def test_fifo_per_listener(self, bus):
        subscribe_queued(bus, "ship")
        first = bus.publish(invoice_paid("inv-1")).queued[0]
        second = bus.publish(invoice_paid("inv-2")).queued[0]

        claimed = bus.claim_next("ship")
        assert claimed.delivery_id == first.delivery_id
        # The in-flight head blocks the next delivery
        assert bus.claim_next("ship") is None

        bus.nack(claimed.delivery_id, "boom", claimed.claim_token)
        assert bus.claim_next("ship").delivery_id == first.delivery_id

    def test_listeners_progress_independently(self, bus):
        subscribe_queued(bus, "ship")
        bus.subscribe(InvoicePaid, Recorder("crm"), owner_module="customers", listener_id="crm")
        bus.publish(invoice_paid())

        ship = bus.claim_next("ship")
        crm = bus.claim_next("crm")

        assert ship is not None and crm is not None
        assert bus.pending_listeners() == ["crm", "ship"]

    def test_expired_lease_is_reclaimed(self, bus, clock, bus_config):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())
        first = bus.claim_next("ship")

        clock.advance(bus_config.lease_seconds + 1)
        second = bus.claim_next("ship")

        assert second.delivery_id == first.delivery_id
        assert second.claim_token != first.claim_token
        assert second.attempt_count == 0
        with pytest.raises(StaleClaimError):
            bus.ack(first.delivery_id, first.claim_token)
        assert bus.ack(second.delivery_id, second.claim_token).state == DeliveryState.DELIVERED

    def test_release_expired_leases(self, bus, clock, bus_config):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())
        bus.claim_next("ship")

        assert bus.release_expired_leases() == 0
        clock.advance(bus_config.lease_seconds)
        assert bus.release_expired_leases() == 1
        assert bus.claim_next("ship").state == DeliveryState.IN_FLIGHT

    def test_ack_requires_in_flight(self, bus):
        subscribe_queued(bus, "ship")
        delivery = bus.publish(invoice_paid()).queued[0]

        with pytest.raises(InvalidDeliveryStateError):
            bus.ack(delivery.delivery_id)

    def test_unknown_delivery(self, bus):
        with pytest.raises(DeliveryNotFoundError):
            bus.ack(uuid4())

    def test_requeue_dead_letter(self, bus, bus_config):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())
        for _ in range(bus_config.max_attempts):
            claimed = bus.claim_next("ship")
            bus.nack(claimed.delivery_id, "boom", claimed.claim_token)

        requeued = bus.requeue(claimed.delivery_id)

        assert requeued.state == DeliveryState.PENDING
        assert requeued.attempt_count == 0
        assert bus.dead_letters() == []
        assert bus.claim_next("ship").delivery_id == claimed.delivery_id

    def test_requeue_only_terminal_failures(self, bus):
        subscribe_queued(bus, "ship")
        delivery = bus.publish(invoice_paid()).queued[0]

        with pytest.raises(InvalidDeliveryStateError):
            bus.requeue(delivery.delivery_id)

    def test_fail_and_requeue(self, bus):
        subscribe_queued(bus, "ship")
        delivery = bus.publish(invoice_paid()).queued[0]

        failed = bus.fail(delivery.delivery_id, "listener unsubscribed")

        assert failed.state == DeliveryState.FAILED
        assert bus.failed_deliveries() == [failed]
        assert bus.pending_listeners() == []
        assert bus.requeue(delivery.delivery_id).state == DeliveryState.PENDING

    def test_cleanup_delivered(self, bus, clock):
        subscribe_queued(bus, "ship")
        bus.publish(invoice_paid())
        claimed = bus.claim_next("ship")
        bus.ack(claimed.delivery_id, claimed.claim_token)

        assert bus.cleanup_delivered(older_than_days=1) == 0
        clock.advance(2 * 86400)
        assert bus.cleanup_delivered(older_than_days=1) == 1
