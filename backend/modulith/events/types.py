"""
Domain event base type.

Events are immutable plain-data records. Subclasses declare their payload as
fields; unknown fields are rejected so a payload cannot silently grow
references to live objects.

    class InvoicePaid(DomainEvent):
        module_name: ClassVar[str] = "billing"

        invoice_id: UUID
        amount_cents: int
"""

from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class DomainEvent(BaseModel):
    """Base class for events published on the bus."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Publishing module; may instead be declared through a descriptor's exported events
    module_name: ClassVar[str | None] = None

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None
    version: int = Field(default=1, ge=1)
    source_module: str | None = None

    @classmethod
    def event_type_id(cls) -> str:
        """Dotted id identifying the event type."""
        return f"{cls.__module__}.{cls.__qualname__}"

    @property
    def event_type(self) -> str:
        return self.event_type_id()

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible payload stored on queued deliveries."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DomainEvent":
        return cls.model_validate(payload)
