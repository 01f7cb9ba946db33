"""
DeliveryRepository SQL adapter.

sqlmodel persistence for queued deliveries. Every state change is a
conditional UPDATE guarded by the row's previous state and claim token, so
when several workers race for the same row exactly one of them wins.
Timestamps are stored as naive UTC.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import JSON, Column, Field, Session, SQLModel, select

from modulith.core.logging import get_logger

from .errors import DeliveryNotFoundError, DeliveryStoreError, StaleClaimError
from .models import DeliveryState, QueuedDelivery
from .repository import DeliveryRepository

logger = get_logger(__name__)

LIVE_STATES = [DeliveryState.PENDING.value, DeliveryState.IN_FLIGHT.value]


def _naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class QueuedDeliveryModel(SQLModel, table=True):
    """QueuedDelivery persistence model."""

    __tablename__ = "queued_deliveries"

    # Insertion order doubles as the per-listener FIFO order
    sequence: int | None = Field(default=None, primary_key=True)
    delivery_id: UUID = Field(unique=True, index=True)
    subscription_id: str = Field(max_length=255)
    listener_id: str = Field(max_length=255, index=True)
    event_id: UUID = Field(index=True)
    event_type: str = Field(max_length=255, index=True)
    payload: dict[str, Any] = Field(sa_column=Column(JSON))
    correlation_id: str | None = Field(default=None, max_length=255)

    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=5)
    state: str = Field(max_length=20, index=True)
    available_at: datetime = Field(index=True)
    lease_expires_at: datetime | None = Field(default=None)
    claim_token: str | None = Field(default=None, max_length=64)
    last_error: str | None = Field(default=None)

    created_at: datetime
    delivered_at: datetime | None = Field(default=None, index=True)

    @classmethod
    def from_domain(cls, delivery: QueuedDelivery) -> "QueuedDeliveryModel":
        """Create model from domain entity."""
        return cls(
            sequence=delivery.sequence,
            delivery_id=delivery.delivery_id,
            subscription_id=delivery.subscription_id,
            listener_id=delivery.listener_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            payload=delivery.payload,
            correlation_id=delivery.correlation_id,
            created_at=_naive(delivery.created_at),
            **cls.state_values(delivery),
        )

    @staticmethod
    def state_values(delivery: QueuedDelivery) -> dict[str, Any]:
        """Columns that change across state transitions."""
        return {
            "attempt_count": delivery.attempt_count,
            "max_attempts": delivery.max_attempts,
            "state": delivery.state.value,
            "available_at": _naive(delivery.available_at),
            "lease_expires_at": _naive(delivery.lease_expires_at),
            "claim_token": delivery.claim_token,
            "last_error": delivery.last_error,
            "delivered_at": _naive(delivery.delivered_at),
        }

    def to_domain(self) -> QueuedDelivery:
        """Convert to domain entity."""
        return QueuedDelivery(
            delivery_id=self.delivery_id,
            subscription_id=self.subscription_id,
            listener_id=self.listener_id,
            event_id=self.event_id,
            event_type=self.event_type,
            payload=self.payload,
            correlation_id=self.correlation_id,
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            state=DeliveryState(self.state),
            available_at=_aware(self.available_at),
            lease_expires_at=_aware(self.lease_expires_at),
            claim_token=self.claim_token,
            last_error=self.last_error,
            sequence=self.sequence,
            created_at=_aware(self.created_at),
            delivered_at=_aware(self.delivered_at),
        )


def _same_row(model: QueuedDeliveryModel) -> list[Any]:
    """Conditions matching the row only if nobody changed it since it was read."""
    token = (
        QueuedDeliveryModel.claim_token.is_(None)
        if model.claim_token is None
        else QueuedDeliveryModel.claim_token == model.claim_token
    )
    return [
        QueuedDeliveryModel.sequence == model.sequence,
        QueuedDeliveryModel.state == model.state,
        token,
    ]


class SqlDeliveryRepository(DeliveryRepository):
    """
    SQL implementation of DeliveryRepository.

    Opens a short session per operation on the given engine. `add_many` may
    instead join a caller-provided session so the deliveries commit together
    with the caller's domain changes.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def create_schema(self) -> None:
        """Create the deliveries table if it does not exist."""
        SQLModel.metadata.create_all(
            self._engine, tables=[QueuedDeliveryModel.__table__]
        )

    @contextmanager
    def _operation(self, name: str, **context: Any) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except SQLAlchemyError as e:
            logger.exception(
                "Delivery store operation failed", operation=name, error=str(e), **context
            )
            raise DeliveryStoreError(f"Failed to {name}: {e}") from e

    def _find(self, session: Session, delivery_id: UUID) -> QueuedDeliveryModel:
        stmt = select(QueuedDeliveryModel).where(
            QueuedDeliveryModel.delivery_id == delivery_id
        )
        model = session.exec(stmt).first()
        if model is None:
            raise DeliveryNotFoundError(delivery_id)
        return model

    def add_many(
        self, deliveries: list[QueuedDelivery], session: Any | None = None
    ) -> list[QueuedDelivery]:
        models = [QueuedDeliveryModel.from_domain(d) for d in deliveries]

        if session is not None:
            # Caller's unit of work commits
            try:
                session.add_all(models)
                session.flush()
                stored = [model.to_domain() for model in models]
            except SQLAlchemyError as e:
                logger.exception(
                    "Failed to store queued deliveries",
                    delivery_count=len(models),
                    error=str(e),
                )
                raise DeliveryStoreError(f"Failed to store queued deliveries: {e}") from e
        else:
            with self._operation("store queued deliveries") as own:
                own.add_all(models)
                own.commit()
                for model in models:
                    own.refresh(model)
                stored = [model.to_domain() for model in models]

        logger.debug("Stored queued deliveries", delivery_count=len(stored))
        return stored

    def get(self, delivery_id: UUID) -> QueuedDelivery:
        with self._operation("get delivery", delivery_id=str(delivery_id)) as session:
            return self._find(session, delivery_id).to_domain()

    def pending_listeners(self) -> list[str]:
        with self._operation("list pending listeners") as session:
            stmt = (
                select(QueuedDeliveryModel.listener_id)
                .where(QueuedDeliveryModel.state.in_(LIVE_STATES))
                .distinct()
            )
            return sorted(session.exec(stmt).all())

    def claim_next(
        self, listener_id: str, now: datetime, lease_expires_at: datetime
    ) -> QueuedDelivery | None:
        with self._operation("claim delivery", listener_id=listener_id) as session:
            stmt = (
                select(QueuedDeliveryModel)
                .where(
                    QueuedDeliveryModel.listener_id == listener_id,
                    QueuedDeliveryModel.state.in_(LIVE_STATES),
                )
                .order_by(QueuedDeliveryModel.sequence.asc())
                .limit(1)
            )
            head = session.exec(stmt).first()
            if head is None:
                return None

            current = head.to_domain()
            if not current.is_claimable(now):
                return None

            claimed = current.claim(lease_expires_at)
            result = session.exec(
                update(QueuedDeliveryModel)
                .where(*_same_row(head))
                .values(**QueuedDeliveryModel.state_values(claimed))
            )
            session.commit()

            if result.rowcount != 1:
                logger.debug(
                    "Lost claim race", listener_id=listener_id, delivery_id=str(claimed.delivery_id)
                )
                return None
            return claimed

    def _transition(
        self,
        name: str,
        delivery_id: UUID,
        change: Callable[[QueuedDelivery], QueuedDelivery],
    ) -> QueuedDelivery:
        with self._operation(name, delivery_id=str(delivery_id)) as session:
            model = self._find(session, delivery_id)
            updated = change(model.to_domain())
            result = session.exec(
                update(QueuedDeliveryModel)
                .where(*_same_row(model))
                .values(**QueuedDeliveryModel.state_values(updated))
            )
            session.commit()

            if result.rowcount != 1:
                raise StaleClaimError(delivery_id)
            return updated

    def mark_delivered(
        self, delivery_id: UUID, now: datetime, claim_token: str | None = None
    ) -> QueuedDelivery:
        def change(delivery: QueuedDelivery) -> QueuedDelivery:
            delivery.ensure_claimed(claim_token)
            return delivery.mark_delivered(now)

        return self._transition("mark delivery delivered", delivery_id, change)

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

        return self._transition("schedule delivery retry", delivery_id, change)

    def mark_dead_lettered(
        self, delivery_id: UUID, error: str, claim_token: str | None = None
    ) -> QueuedDelivery:
        def change(delivery: QueuedDelivery) -> QueuedDelivery:
            delivery.ensure_claimed(claim_token)
            return delivery.dead_letter(error)

        return self._transition("dead-letter delivery", delivery_id, change)

    def mark_failed(self, delivery_id: UUID, reason: str) -> QueuedDelivery:
        return self._transition(
            "mark delivery failed", delivery_id, lambda d: d.fail(reason)
        )

    def requeue(self, delivery_id: UUID, now: datetime) -> QueuedDelivery:
        return self._transition("requeue delivery", delivery_id, lambda d: d.requeue(now))

    def list_by_state(
        self, state: DeliveryState, listener_id: str | None = None, limit: int = 100
    ) -> list[QueuedDelivery]:
        with self._operation("list deliveries", state=state.value) as session:
            stmt = select(QueuedDeliveryModel).where(QueuedDeliveryModel.state == state.value)
            if listener_id is not None:
                stmt = stmt.where(QueuedDeliveryModel.listener_id == listener_id)
            stmt = stmt.order_by(QueuedDeliveryModel.sequence.asc()).limit(limit)
            return [model.to_domain() for model in session.exec(stmt).all()]

    def release_expired_leases(self, now: datetime) -> int:
        with self._operation("release expired leases") as session:
            result = session.exec(
                update(QueuedDeliveryModel)
                .where(
                    QueuedDeliveryModel.state == DeliveryState.IN_FLIGHT.value,
                    QueuedDeliveryModel.lease_expires_at <= _naive(now),
                )
                .values(
                    state=DeliveryState.PENDING.value,
                    available_at=_naive(now),
                    lease_expires_at=None,
                    claim_token=None,
                )
            )
            session.commit()
            released = result.rowcount

        if released:
            logger.info("Released expired delivery leases", released_count=released)
        return released

    def cleanup_delivered(self, older_than: datetime) -> int:
        with self._operation("cleanup delivered deliveries") as session:
            result = session.exec(
                delete(QueuedDeliveryModel).where(
                    QueuedDeliveryModel.state == DeliveryState.DELIVERED.value,
                    QueuedDeliveryModel.delivered_at < _naive(older_than),
                )
            )
            session.commit()
            deleted_count = result.rowcount

        logger.info("Cleaned up delivered deliveries", deleted_count=deleted_count)
        return deleted_count
