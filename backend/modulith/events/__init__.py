"""
Event Bus.

Inline delivery to listeners of the publishing module, durable queued
delivery (with leases, retries and dead-lettering) to listeners of other
modules.
"""

from .bus import EventBus, PublishResult
from .errors import (
    DeliveryNotFoundError,
    DeliveryStoreError,
    EventBusError,
    InvalidDeliveryStateError,
    ListenerExecutionError,
    StaleClaimError,
)
from .models import DeliveryState, QueuedDelivery
from .repository import DeliveryRepository, InMemoryDeliveryRepository
from .retry import RetryPolicy
from .sql_repository import QueuedDeliveryModel, SqlDeliveryRepository
from .subscriptions import ContractListener, DeliveryMode, Subscription
from .types import DomainEvent
from .worker import DeliveryWorker

__all__ = [
    "ContractListener",
    "DeliveryMode",
    "DeliveryNotFoundError",
    "DeliveryRepository",
    "DeliveryState",
    "DeliveryStoreError",
    "DeliveryWorker",
    "DomainEvent",
    "EventBus",
    "EventBusError",
    "InMemoryDeliveryRepository",
    "InvalidDeliveryStateError",
    "ListenerExecutionError",
    "PublishResult",
    "QueuedDelivery",
    "QueuedDeliveryModel",
    "RetryPolicy",
    "SqlDeliveryRepository",
    "StaleClaimError",
    "Subscription",
]
