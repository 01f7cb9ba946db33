"""Event bus errors."""

from typing import Any

from modulith.core.errors import ApplicationError, ErrorSeverity


class EventBusError(ApplicationError):
    """Base class for event bus errors."""

    default_code = "EVENT_BUS_ERROR"


class ListenerExecutionError(EventBusError):
    """
    A listener failed while handling an event.

    Inline failures are collected on the PublishResult; queued failures are
    recorded on the delivery row. Neither is raised to the publisher.
    """

    default_code = "LISTENER_EXECUTION_FAILED"
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        listener_id: str,
        event_type: str,
        event_id: str,
        reason: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Listener {listener_id} failed on {event_type} ({event_id}): {reason}",
            **kwargs,
        )
        self.listener_id = listener_id
        self.event_type = event_type
        self.event_id = event_id
        self.reason = reason
        self.details.update(
            {
                "listener_id": listener_id,
                "event_type": event_type,
                "event_id": event_id,
                "reason": reason,
            }
        )
        self.code = self.default_code


class DeliveryNotFoundError(EventBusError):
    default_code = "DELIVERY_NOT_FOUND"
    severity = ErrorSeverity.LOW

    def __init__(self, delivery_id: Any, **kwargs: Any) -> None:
        super().__init__(f"Delivery not found: {delivery_id}", **kwargs)
        self.delivery_id = str(delivery_id)
        self.details["delivery_id"] = self.delivery_id
        self.code = self.default_code


class InvalidDeliveryStateError(EventBusError):
    """A delivery transition was requested from the wrong state."""

    default_code = "INVALID_DELIVERY_STATE"
    severity = ErrorSeverity.LOW

    def __init__(
        self, delivery_id: Any, state: str, expected: list[str], **kwargs: Any
    ) -> None:
        super().__init__(
            f"Delivery {delivery_id} is {state}, expected one of {', '.join(expected)}",
            **kwargs,
        )
        self.delivery_id = str(delivery_id)
        self.state = state
        self.details.update(
            {"delivery_id": self.delivery_id, "state": state, "expected": expected}
        )
        self.code = self.default_code


class StaleClaimError(EventBusError):
    """The caller's claim on a delivery was superseded after its lease expired."""

    default_code = "STALE_CLAIM"
    severity = ErrorSeverity.LOW

    def __init__(self, delivery_id: Any, **kwargs: Any) -> None:
        super().__init__(f"Claim on delivery {delivery_id} is no longer held", **kwargs)
        self.delivery_id = str(delivery_id)
        self.details["delivery_id"] = self.delivery_id
        self.code = self.default_code


class DeliveryStoreError(EventBusError):
    """The delivery queue storage failed."""

    default_code = "DELIVERY_STORE_ERROR"
    severity = ErrorSeverity.HIGH
    retryable = True
