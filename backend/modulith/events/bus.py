"""
Event Bus.

Routes domain events from the publishing module to its listeners:

- Listeners owned by the publishing module are INLINE: they run
  synchronously inside publish(), in registration order. A failing listener
  is recorded on the PublishResult and does not stop the others.
- Listeners owned by other modules are QUEUED: publish() stores one durable
  QueuedDelivery per listener (inside the caller's transaction when a
  session is given) and the DeliveryWorker delivers it later.

Queued deliveries of one listener are delivered in publication order.
"""

import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from modulith.contracts import ContractRegistry, RegistryStateError
from modulith.core.config import EventBusConfig, get_settings
from modulith.core.errors import ConflictError, ValidationError
from modulith.core.logging import get_logger
from modulith.descriptors import DescriptorStore

from .errors import ListenerExecutionError
from .models import DeliveryState, QueuedDelivery
from .repository import DeliveryRepository, InMemoryDeliveryRepository
from .retry import RetryPolicy
from .subscriptions import DeliveryMode, Subscription, is_async_listener, listener_id_for
from .types import DomainEvent

logger = get_logger(__name__)

DeadLetterHandler = Callable[[QueuedDelivery], None]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class PublishResult:
    """Outcome of one publish() call."""

    event: DomainEvent
    queued: list[QueuedDelivery] = field(default_factory=list)
    inline_delivered: list[str] = field(default_factory=list)
    errors: list[ListenerExecutionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when every inline listener succeeded."""
        return not self.errors


class EventBus:
    """
    Module event bus with inline and durable queued delivery.

    Usage:
        bus = EventBus(SqlDeliveryRepository(engine), registry=registry, store=store)
        bus.subscribe(OrderPlaced, on_order_placed, owner_module="shipping")
        with Session(engine) as session:
            session.add(order)
            bus.publish(OrderPlaced(order_id=order.id), session=session)
            session.commit()
    """

    def __init__(
        self,
        repository: DeliveryRepository | None = None,
        *,
        registry: ContractRegistry | None = None,
        store: DescriptorStore | None = None,
        config: EventBusConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository or InMemoryDeliveryRepository()
        self.registry = registry
        self.store = store
        self.config = config or get_settings().event_bus
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.clock = clock

        self._subscriptions: dict[str, list[Subscription]] = {}
        self._by_id: dict[str, Subscription] = {}
        self._dead_letter_handlers: list[DeadLetterHandler] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def publisher_module(self, event_class: type[DomainEvent]) -> str:
        """
        Module that publishes an event type.

        Raises:
            ValidationError: If neither the event class nor a descriptor declares it
        """
        if event_class.module_name:
            return event_class.module_name
        if self.store is not None:
            owner = self.store.event_owner(event_class.event_type_id())
            if owner:
                return owner
        raise ValidationError(
            f"No publishing module declared for event {event_class.event_type_id()}",
            field="event_type",
        )

    def subscribe(
        self,
        event_type: type[DomainEvent],
        listener: Callable[..., Any],
        *,
        owner_module: str,
        mode: DeliveryMode | None = None,
        listener_id: str | None = None,
    ) -> Subscription:
        """
        Subscribe a listener owned by a module to an event type.

        The delivery mode follows from ownership: INLINE when the listener's
        module publishes the event, QUEUED otherwise.

        Raises:
            ValidationError: On a mode contradicting ownership, or an async inline listener
            ConflictError: If the listener is already subscribed to the event type
        """
        if not (isinstance(event_type, type) and issubclass(event_type, DomainEvent)):
            raise ValidationError("event_type must be a DomainEvent subclass", field="event_type")
        if not callable(listener):
            raise ValidationError("listener must be callable", field="listener")
        if self.store is not None:
            self.store.get(owner_module)

        publisher = self.publisher_module(event_type)
        expected = DeliveryMode.INLINE if owner_module == publisher else DeliveryMode.QUEUED
        if mode is not None and DeliveryMode(mode) != expected:
            raise ValidationError(
                f"Listener of module {owner_module} on {event_type.event_type_id()} "
                f"(published by {publisher}) must be {expected.value}, not {DeliveryMode(mode).value}",
                field="mode",
            )
        if expected == DeliveryMode.INLINE and is_async_listener(listener):
            raise ValidationError(
                "Inline listeners must be synchronous callables", field="listener"
            )

        subscription = Subscription(
            event_class=event_type,
            listener=listener,
            listener_id=listener_id or listener_id_for(listener),
            owner_module=owner_module,
            mode=expected,
        )

        with self._lock:
            if subscription.subscription_id in self._by_id:
                raise ConflictError(
                    f"Listener {subscription.listener_id} is already subscribed to "
                    f"{subscription.event_type}",
                    resource=subscription.subscription_id,
                )
            self._subscriptions.setdefault(subscription.event_type, []).append(subscription)
            self._by_id[subscription.subscription_id] = subscription

        logger.debug(
            "Listener subscribed",
            event_type=subscription.event_type,
            listener_id=subscription.listener_id,
            owner_module=owner_module,
            mode=expected.value,
        )
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Remove a subscription.

        Live queued deliveries for it are marked Failed when the worker
        next reaches them.
        """
        with self._lock:
            subscription = self._by_id.pop(subscription_id, None)
            if subscription is None:
                return False
            self._subscriptions[subscription.event_type].remove(subscription)
        return True

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self._by_id.get(subscription_id)

    def subscriptions(self, event_type: type[DomainEvent] | None = None) -> list[Subscription]:
        with self._lock:
            if event_type is None:
                return list(self._by_id.values())
            return list(self._subscriptions.get(event_type.event_type_id(), []))

    def add_dead_letter_handler(self, handler: DeadLetterHandler) -> None:
        """Register a callback invoked with every newly dead-lettered delivery."""
        self._dead_letter_handlers.append(handler)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(
        self,
        event: DomainEvent,
        *,
        session: Any | None = None,
        correlation_id: str | None = None,
    ) -> PublishResult:
        """
        Publish an event.

        Queued deliveries are persisted first; inline listeners run after.

        Args:
            event: Event to publish
            session: Caller's SQL session; queued rows commit with it
            correlation_id: Correlation id stamped onto the event

        Raises:
            RegistryStateError: If the contract registry has not been validated
            DeliveryStoreError: If queued deliveries cannot be stored
        """
        if self.registry is not None and not self.registry.sealed:
            raise RegistryStateError(
                "Cannot publish before the contract registry is validated"
            )

        publisher = self.publisher_module(type(event))
        event = event.model_copy(
            update={
                "correlation_id": correlation_id or event.correlation_id or str(uuid4()),
                "source_module": publisher,
            }
        )
        subscriptions = self.subscriptions(type(event))

        now = self.clock()
        payload = event.to_payload()
        deliveries = [
            QueuedDelivery(
                subscription_id=s.subscription_id,
                listener_id=s.listener_id,
                event_id=event.event_id,
                event_type=event.event_type,
                payload=payload,
                correlation_id=event.correlation_id,
                max_attempts=self.config.max_attempts,
                available_at=now,
                created_at=now,
            )
            for s in subscriptions
            if s.mode == DeliveryMode.QUEUED
        ]

        result = PublishResult(event=event)
        if deliveries:
            result.queued = self.repository.add_many(deliveries, session=session)

        for subscription in subscriptions:
            if subscription.mode != DeliveryMode.INLINE:
                continue
            error = self._run_inline(subscription, event)
            if error is None:
                result.inline_delivered.append(subscription.listener_id)
            else:
                result.errors.append(error)

        logger.info(
            "Event published",
            event_type=event.event_type,
            event_id=str(event.event_id),
            correlation_id=event.correlation_id,
            queued_count=len(result.queued),
            inline_count=len(result.inline_delivered),
            inline_failures=len(result.errors),
        )
        return result

    def _run_inline(
        self, subscription: Subscription, event: DomainEvent
    ) -> ListenerExecutionError | None:
        try:
            outcome = subscription.listener(event)
            if inspect.isawaitable(outcome):
                if inspect.iscoroutine(outcome):
                    outcome.close()
                raise TypeError("inline listener returned an awaitable")
        except Exception as e:
            logger.exception(
                "Inline listener failed",
                listener_id=subscription.listener_id,
                event_type=event.event_type,
                event_id=str(event.event_id),
                error=str(e),
            )
            return ListenerExecutionError(
                subscription.listener_id,
                event.event_type,
                str(event.event_id),
                str(e) or type(e).__name__,
                correlation_id=event.correlation_id,
            )
        return None

    # ------------------------------------------------------------------
    # Queued delivery protocol
    # ------------------------------------------------------------------

    def pending_listeners(self) -> list[str]:
        return self.repository.pending_listeners()

    def claim_next(self, listener_id: str) -> QueuedDelivery | None:
        """Claim the listener's next delivery under a lease, if one is due."""
        now = self.clock()
        return self.repository.claim_next(
            listener_id, now, now + timedelta(seconds=self.config.lease_seconds)
        )

    def ack(self, delivery_id: UUID, claim_token: str | None = None) -> QueuedDelivery:
        """
        Mark a claimed delivery as delivered.

        Raises:
            InvalidDeliveryStateError: If the delivery is not InFlight
            StaleClaimError: If the caller's claim was superseded
        """
        return self.repository.mark_delivered(delivery_id, self.clock(), claim_token)

    def nack(
        self, delivery_id: UUID, error: str, claim_token: str | None = None
    ) -> QueuedDelivery:
        """
        Record a failed delivery attempt.

        The delivery returns to Pending after a backoff delay, or is
        dead-lettered once max_attempts attempts have failed.
        """
        delivery = self.repository.get(delivery_id)
        delivery.ensure_claimed(claim_token)
        attempts = delivery.attempt_count + 1

        if attempts >= delivery.max_attempts:
            dead = self.repository.mark_dead_lettered(delivery_id, error, claim_token)
            logger.error(
                "Delivery dead-lettered",
                delivery_id=str(delivery_id),
                listener_id=dead.listener_id,
                event_type=dead.event_type,
                event_id=str(dead.event_id),
                attempt_count=dead.attempt_count,
                last_error=dead.last_error,
            )
            for handler in self._dead_letter_handlers:
                try:
                    handler(dead)
                except Exception as e:
                    logger.exception(
                        "Dead letter handler failed", delivery_id=str(delivery_id), error=str(e)
                    )
            return dead

        delay = self.retry_policy.calculate_delay(attempts - 1)
        available_at = self.clock() + timedelta(seconds=delay)
        logger.warning(
            "Delivery failed, retry scheduled",
            delivery_id=str(delivery_id),
            listener_id=delivery.listener_id,
            attempt_count=attempts,
            max_attempts=delivery.max_attempts,
            delay=round(delay, 3),
        )
        return self.repository.mark_retry(delivery_id, error, available_at, claim_token)

    def fail(self, delivery_id: UUID, reason: str) -> QueuedDelivery:
        """Mark a delivery Failed because its listener is no longer subscribed."""
        failed = self.repository.mark_failed(delivery_id, reason)
        logger.warning(
            "Delivery failed permanently",
            delivery_id=str(delivery_id),
            listener_id=failed.listener_id,
            reason=reason,
        )
        return failed

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def requeue(self, delivery_id: UUID) -> QueuedDelivery:
        """Return a DeadLettered or Failed delivery to Pending with attempts reset."""
        requeued = self.repository.requeue(delivery_id, self.clock())
        logger.info(
            "Delivery requeued", delivery_id=str(delivery_id), listener_id=requeued.listener_id
        )
        return requeued

    def dead_letters(self, listener_id: str | None = None, limit: int = 100) -> list[QueuedDelivery]:
        return self.repository.list_by_state(DeliveryState.DEAD_LETTERED, listener_id, limit)

    def failed_deliveries(
        self, listener_id: str | None = None, limit: int = 100
    ) -> list[QueuedDelivery]:
        return self.repository.list_by_state(DeliveryState.FAILED, listener_id, limit)

    def release_expired_leases(self) -> int:
        return self.repository.release_expired_leases(self.clock())

    def cleanup_delivered(self, older_than_days: int = 30) -> int:
        return self.repository.cleanup_delivered(
            self.clock() - timedelta(days=older_than_days)
        )
