"""Event subscriptions and listener adapters."""

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from modulith.contracts import ContractRegistry, contract_id, get_contract_registry

from .types import DomainEvent


class DeliveryMode(str, Enum):
    """
    How an event reaches a listener.

    INLINE listeners belong to the publishing module and run synchronously
    inside publish(). QUEUED listeners belong to other modules and receive a
    durable delivery processed by the delivery worker.
    """

    INLINE = "inline"
    QUEUED = "queued"


class ContractListener:
    """
    Listener that calls a method on a contract implementation.

    The implementation is resolved from the registry on every invocation, so
    listeners can be subscribed before the registry is sealed.

        bus.subscribe(OrderPlaced, ContractListener(ShippingService, "on_order_placed"),
                      owner_module="shipping")
    """

    def __init__(
        self,
        contract: type | str,
        method: str,
        registry: ContractRegistry | None = None,
    ):
        self.contract_id = contract_id(contract)
        self.method = method
        self._registry = registry

    @property
    def listener_id(self) -> str:
        return f"{self.contract_id}.{self.method}"

    def __call__(self, event: DomainEvent) -> Any:
        registry = self._registry or get_contract_registry()
        implementation = registry.resolve(self.contract_id)
        return getattr(implementation, self.method)(event)

    def __repr__(self) -> str:
        return f"ContractListener({self.listener_id})"


def is_async_listener(listener: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(listener):
        return True
    call = getattr(listener, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def listener_id_for(listener: Callable[..., Any]) -> str:
    """Default stable id of a listener."""
    if isinstance(listener, ContractListener):
        return listener.listener_id
    target = listener if hasattr(listener, "__qualname__") else type(listener)
    return f"{target.__module__}.{target.__qualname__}"


@dataclass(frozen=True)
class Subscription:
    """A listener's registration for one event type."""

    event_class: type[DomainEvent]
    listener: Callable[..., Any]
    listener_id: str
    owner_module: str
    mode: DeliveryMode

    @property
    def event_type(self) -> str:
        return self.event_class.event_type_id()

    @property
    def subscription_id(self) -> str:
        return f"{self.event_type}:{self.listener_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "event_type": self.event_type,
            "listener_id": self.listener_id,
            "owner_module": self.owner_module,
            "mode": self.mode.value,
        }
