"""
QueuedDelivery model.

One durable row per (event, queued subscription). State machine:

    Pending --claim--> InFlight --ack--> Delivered
    InFlight --nack--> Pending (backoff) | DeadLettered (attempts exhausted)
    InFlight --lease expiry--> Pending
    Pending/InFlight --listener unsubscribed--> Failed
    DeadLettered/Failed --requeue--> Pending
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidDeliveryStateError, StaleClaimError


class DeliveryState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_live(self) -> bool:
        """Live deliveries still take part in per-listener ordering."""
        return self in (DeliveryState.PENDING, DeliveryState.IN_FLIGHT)


class QueuedDelivery(BaseModel):
    """A durable delivery of one event to one queued listener."""

    model_config = ConfigDict(frozen=True)

    delivery_id: UUID = Field(default_factory=uuid4)
    subscription_id: str
    listener_id: str
    event_id: UUID
    event_type: str
    payload: dict[str, Any]
    correlation_id: str | None = None
    attempt_count: int = 0
    max_attempts: int = Field(default=5, ge=1)
    state: DeliveryState = DeliveryState.PENDING
    available_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    lease_expires_at: datetime | None = None
    claim_token: str | None = None
    last_error: str | None = None
    sequence: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    delivered_at: datetime | None = None

    def is_claimable(self, now: datetime) -> bool:
        """Check if this delivery may be claimed as its listener's head."""
        if self.state == DeliveryState.PENDING:
            return self.available_at <= now
        if self.state == DeliveryState.IN_FLIGHT:
            return self.lease_expires_at is None or self.lease_expires_at <= now
        return False

    def ensure_claimed(self, claim_token: str | None = None) -> None:
        """
        Check the delivery is InFlight and, if a token is given, held by it.

        Raises:
            InvalidDeliveryStateError: If the delivery is not InFlight
            StaleClaimError: If another claim superseded the caller's
        """
        if self.state != DeliveryState.IN_FLIGHT:
            raise InvalidDeliveryStateError(
                self.delivery_id, self.state.value, [DeliveryState.IN_FLIGHT.value]
            )
        if claim_token is not None and claim_token != self.claim_token:
            raise StaleClaimError(self.delivery_id)

    def claim(self, lease_expires_at: datetime) -> "QueuedDelivery":
        return self.model_copy(
            update={
                "state": DeliveryState.IN_FLIGHT,
                "lease_expires_at": lease_expires_at,
                "claim_token": uuid4().hex,
            }
        )

    def mark_delivered(self, now: datetime) -> "QueuedDelivery":
        return self.model_copy(
            update={
                "state": DeliveryState.DELIVERED,
                "delivered_at": now,
                "lease_expires_at": None,
                "last_error": None,
            }
        )

    def schedule_retry(self, error: str, available_at: datetime) -> "QueuedDelivery":
        return self.model_copy(
            update={
                "state": DeliveryState.PENDING,
                "attempt_count": self.attempt_count + 1,
                "available_at": available_at,
                "lease_expires_at": None,
                "claim_token": None,
                "last_error": error[:1000],
            }
        )

    def dead_letter(self, error: str) -> "QueuedDelivery":
        return self.model_copy(
            update={
                "state": DeliveryState.DEAD_LETTERED,
                "attempt_count": self.attempt_count + 1,
                "lease_expires_at": None,
                "claim_token": None,
                "last_error": error[:1000],
            }
        )

    def fail(self, reason: str) -> "QueuedDelivery":
        if not self.state.is_live:
            raise InvalidDeliveryStateError(
                self.delivery_id,
                self.state.value,
                [DeliveryState.PENDING.value, DeliveryState.IN_FLIGHT.value],
            )
        return self.model_copy(
            update={
                "state": DeliveryState.FAILED,
                "lease_expires_at": None,
                "claim_token": None,
                "last_error": reason[:1000],
            }
        )

    def requeue(self, now: datetime) -> "QueuedDelivery":
        if self.state not in (DeliveryState.DEAD_LETTERED, DeliveryState.FAILED):
            raise InvalidDeliveryStateError(
                self.delivery_id,
                self.state.value,
                [DeliveryState.DEAD_LETTERED.value, DeliveryState.FAILED.value],
            )
        return self.model_copy(
            update={
                "state": DeliveryState.PENDING,
                "attempt_count": 0,
                "available_at": now,
                "lease_expires_at": None,
                "claim_token": None,
            }
        )

    def release(self, now: datetime) -> "QueuedDelivery":
        """Return an expired InFlight delivery to Pending without counting an attempt."""
        return self.model_copy(
            update={
                "state": DeliveryState.PENDING,
                "available_at": now,
                "lease_expires_at": None,
                "claim_token": None,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"payload"})
