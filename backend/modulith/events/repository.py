"""
DeliveryRepository interface and in-memory implementation.

The repository owns durability and atomicity of the delivery queue. It
makes no policy decisions: retry delays, attempt limits and clocks are
supplied by the event bus.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from modulith.core.logging import get_logger

from .errors import DeliveryNotFoundError
from .models import DeliveryState, QueuedDelivery

logger = get_logger(__name__)


class DeliveryRepository(ABC):
    """
    Storage contract for queued deliveries.

    Ordering: deliveries of one listener are claimed in `sequence` order and
    a live head (Pending or InFlight) blocks the ones behind it.
    """

    @abstractmethod
    def add_many(
        self, deliveries: list[QueuedDelivery], session: Any | None = None
    ) -> list[QueuedDelivery]:
        """
        Persist new deliveries.

        When a session is given the rows join the caller's transaction and
        are committed by the caller, atomically with its own changes.

        Raises:
            DeliveryStoreError: If storage fails
        """

    @abstractmethod
    def get(self, delivery_id: UUID) -> QueuedDelivery:
        """
        Raises:
            DeliveryNotFoundError: If no such delivery exists
        """

    @abstractmethod
    def pending_listeners(self) -> list[str]:
        """Listener ids with at least one live delivery."""

    @abstractmethod
    def claim_next(
        self, listener_id: str, now: datetime, lease_expires_at: datetime
    ) -> QueuedDelivery | None:
        """
        Atomically claim the listener's head delivery.

        Returns None when the listener has no live delivery, or when its head
        is InFlight under an unexpired lease or Pending with a future
        available_at. An InFlight head whose lease expired is reclaimed.
        """

    @abstractmethod
    def mark_delivered(
        self, delivery_id: UUID, now: datetime, claim_token: str | None = None
    ) -> QueuedDelivery:
        """
        Raises:
            InvalidDeliveryStateError: If the delivery is not InFlight
            StaleClaimError: If claim_token no longer holds the delivery
        """

    @abstractmethod
    def mark_retry(
        self,
        delivery_id: UUID,
        error: str,
        available_at: datetime,
        claim_token: str | None = None,
    ) -> QueuedDelivery:
        """Count a failed attempt and return the delivery to Pending."""

    @abstractmethod
    def mark_dead_lettered(
        self, delivery_id: UUID, error: str, claim_token: str | None = None
    ) -> QueuedDelivery:
        """Count a failed attempt and move the delivery to DeadLettered."""

    @abstractmethod
    def mark_failed(self, delivery_id: UUID, reason: str) -> QueuedDelivery:
        """Move a live delivery whose listener is gone to Failed."""

    @abstractmethod
    def requeue(self, delivery_id: UUID, now: datetime) -> QueuedDelivery:
        """Return a DeadLettered or Failed delivery to Pending with attempts reset."""

    @abstractmethod
    def list_by_state(
        self, state: DeliveryState, listener_id: str | None = None, limit: int = 100
    ) -> list[QueuedDelivery]:
        """Deliveries in a state, oldest first."""

    @abstractmethod
    def release_expired_leases(self, now: datetime) -> int:
        """Return InFlight deliveries with expired leases to Pending. Returns the count."""

    @abstractmethod
    def cleanup_delivered(self, older_than: datetime) -> int:
        """Delete deliveries delivered before a cutoff. Returns the count."""


class InMemoryDeliveryRepository(DeliveryRepository):
    """
    Thread-safe in-process delivery store.

    Not durable across restarts; intended for tests and single-process use.
    """

    def __init__(self) -> None:
        self._deliveries: dict[UUID, QueuedDelivery] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def add_many(
        self, deliveries: list[QueuedDelivery], session: Any | None = None
    ) -> list[QueuedDelivery]:
        stored = []
        with self._lock:
            for delivery in deliveries:
                delivery = delivery.model_copy(update={"sequence": next(self._sequence)})
                self._deliveries[delivery.delivery_id] = delivery
                stored.append(delivery)

        logger.debug("Stored queued deliveries", delivery_count=len(stored))
        return stored

    def get(self, delivery_id: UUID) -> QueuedDelivery:
        with self._lock:
            return self._get(delivery_id)

    def _get(self, delivery_id: UUID) -> QueuedDelivery:
        try:
            return self._deliveries[delivery_id]
        except KeyError:
            raise DeliveryNotFoundError(delivery_id) from None

    def _transition(
        self, delivery_id: UUID, change: Callable[[QueuedDelivery], QueuedDelivery]
    ) -> QueuedDelivery:
        with self._lock:
            updated = change(self._get(delivery_id))
            self._deliveries[delivery_id] = updated
            return updated

    def _head(self, listener_id: str) -> QueuedDelivery | None:
        live = [
            d
            for d in self._deliveries.values()
            if d.listener_id == listener_id and d.state.is_live
        ]
        return min(live, key=lambda d: d.sequence, default=None)

    def pending_listeners(self) -> list[str]:
        with self._lock:
            return sorted(
                {d.listener_id for d in self._deliveries.values() if d.state.is_live}
            )

    def claim_next(
        self, listener_id: str, now: datetime, lease_expires_at: datetime
    ) -> QueuedDelivery | None:
        with self._lock:
            head = self._head(listener_id)
            if head is None or not head.is_claimable(now):
                return None
            claimed = head.claim(lease_expires_at)
            self._deliveries[claimed.delivery_id] = claimed
            return claimed

    def mark_delivered(
        self, delivery_id: UUID, now: datetime, claim_token: str | None = None
    ) -> QueuedDelivery:
        def change(delivery: QueuedDelivery) -> QueuedDelivery:
            delivery.ensure_claimed(claim_token)
            return delivery.mark_delivered(now)

        return self._transition(delivery_id, change)

    def mark_retry(
        self,
        delivery_id: UUID,
        error: str,
        available_at: datetime,
        claim_token: str | None = None,
    ) -> QueuedDelivery:
        def change(delivery: QueuedDelivery) -> QueuedDelivery:
            delivery.ensure_claimed(claim_token)
            return delivery.schedule_retry(error, available_at)

        return self._transition(delivery_id, change)

    def mark_dead_lettered(
        self, delivery_id: UUID, error: str, claim_token: str | None = None
    ) -> QueuedDelivery:
        def change(delivery: QueuedDelivery) -> QueuedDelivery:
            delivery.ensure_claimed(claim_token)
            return delivery.dead_letter(error)

        return self._transition(delivery_id, change)

    def mark_failed(self, delivery_id: UUID, reason: str) -> QueuedDelivery:
        return self._transition(delivery_id, lambda d: d.fail(reason))

    def requeue(self, delivery_id: UUID, now: datetime) -> QueuedDelivery:
        return self._transition(delivery_id, lambda d: d.requeue(now))

    def list_by_state(
        self, state: DeliveryState, listener_id: str | None = None, limit: int = 100
    ) -> list[QueuedDelivery]:
        with self._lock:
            matches = [
                d
                for d in self._deliveries.values()
                if d.state == state and (listener_id is None or d.listener_id == listener_id)
            ]
        return sorted(matches, key=lambda d: d.sequence)[:limit]

    def release_expired_leases(self, now: datetime) -> int:
        released = 0
        with self._lock:
            for delivery in list(self._deliveries.values()):
                if (
                    delivery.state == DeliveryState.IN_FLIGHT
                    and delivery.lease_expires_at is not None
                    and delivery.lease_expires_at <= now
                ):
                    self._deliveries[delivery.delivery_id] = delivery.release(now)
                    released += 1
        return released

    def cleanup_delivered(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                d.delivery_id
                for d in self._deliveries.values()
                if d.state == DeliveryState.DELIVERED
                and d.delivered_at is not None
                and d.delivered_at < older_than
            ]
            for delivery_id in expired:
                del self._deliveries[delivery_id]
        return len(expired)
