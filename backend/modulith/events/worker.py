"""
DeliveryWorker Service

Background service delivering queued events to their listeners.
"""

import asyncio
import inspect
from typing import Any

from modulith.core.errors import ModulithError
from modulith.core.logging import get_logger

from .bus import EventBus
from .errors import InvalidDeliveryStateError, StaleClaimError
from .models import QueuedDelivery

logger = get_logger(__name__)

class DeliveryWorker:
    """
    Background service to process queued deliveries.

    Each cycle releases expired leases, then drains every listener with live
    deliveries. A listener's deliveries are processed one at a time, in
    order; different listeners proceed concurrently, bounded by a semaphore.
    Storage calls and synchronous listeners run in worker threads.
    """

    def __init__(
        self,
        bus: EventBus,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_concurrent_deliveries: int | None = None,
    ):
        """
        Initialize delivery worker.

        Args:
            bus: Event bus owning subscriptions and the delivery queue
            batch_size: Maximum deliveries per listener in one cycle
            poll_interval: Interval between polling cycles in seconds
            max_concurrent_deliveries: Maximum deliveries running at once
        """
        self.bus = bus
        self.batch_size = batch_size or bus.config.worker_batch_size
        self.poll_interval = poll_interval or bus.config.worker_poll_interval
        self.max_concurrent_deliveries = (
            max_concurrent_deliveries or bus.config.worker_concurrency
        )

        # Processing state
        self._running = False
        self._task: asyncio.Task | None = None
        self._semaphore = asyncio.Semaphore(self.max_concurrent_deliveries)

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._running:
            logger.warning("DeliveryWorker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._processing_loop())

        logger.info(
            "DeliveryWorker started",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval,
            max_concurrent_deliveries=self.max_concurrent_deliveries,
        )

    async def stop(self) -> None:
        """Stop the polling loop and wait for the current cycle to finish."""
        if not self._running:
            logger.warning("DeliveryWorker not running")
            return

        self._running = False

        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("DeliveryWorker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _processing_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except ModulithError as e:
                logger.exception(
                    "Error in delivery processing loop", error_code=e.code, error=e.message
                )
            except Exception as e:
                logger.exception("Error in delivery processing loop", error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> int:
        """
        Run one processing cycle.

        A failing listener drain is logged and does not affect the others;
        its deliveries stay queued for the next cycle.

        Returns:
            Number of deliveries attempted
        """
        released = await asyncio.to_thread(self.bus.release_expired_leases)
        listeners = await asyncio.to_thread(self.bus.pending_listeners)
        if not listeners:
            return 0

        results = await asyncio.gather(
            *(self._drain_listener(listener_id) for listener_id in listeners),
            return_exceptions=True,
        )

        attempted = 0
        for listener_id, result in zip(listeners, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "Listener drain failed",
                    listener_id=listener_id,
                    error_type=type(result).__name__,
                    error=str(result),
                )
                continue
            attempted += result

        logger.debug(
            "Delivery cycle completed",
            listener_count=len(listeners),
            attempted=attempted,
            released_leases=released,
        )
        return attempted

    async def _drain_listener(self, listener_id: str) -> int:
        attempted = 0
        while attempted < self.batch_size:
            # Claim only once a slot is free so the lease covers the delivery
            async with self._semaphore:
                delivery = await asyncio.to_thread(self.bus.claim_next, listener_id)
                if delivery is None:
                    break
                await self._deliver(delivery)
            attempted += 1
        return attempted

    async def _deliver(self, delivery: QueuedDelivery) -> None:
        subscription = self.bus.get_subscription(delivery.subscription_id)
        if subscription is None:
            await self._settle(
                "fail",
                delivery,
                self.bus.fail,
                delivery.delivery_id,
                f"Listener {delivery.listener_id} is no longer subscribed",
            )
            return

        try:
            logger.debug(
                "Delivering event",
                delivery_id=str(delivery.delivery_id),
                listener_id=delivery.listener_id,
                event_type=delivery.event_type,
                attempt_count=delivery.attempt_count,
            )
            event = subscription.event_class.from_payload(delivery.payload)
            await self._invoke(subscription.listener, event)

        except Exception as e:
            logger.exception(
                "Queued listener failed",
                delivery_id=str(delivery.delivery_id),
                listener_id=delivery.listener_id,
                event_type=delivery.event_type,
                attempt_count=delivery.attempt_count,
                error=str(e),
            )
            await self._settle(
                "nack",
                delivery,
                self.bus.nack,
                delivery.delivery_id,
                str(e) or type(e).__name__,
                delivery.claim_token,
            )
            return

        await self._settle(
            "ack", delivery, self.bus.ack, delivery.delivery_id, delivery.claim_token
        )

    @staticmethod
    async def _settle(outcome: str, delivery: QueuedDelivery, call: Any, *args: Any) -> None:
        """Record a delivery outcome, tolerating a claim lost to lease expiry."""
        try:
            await asyncio.to_thread(call, *args)
        except (InvalidDeliveryStateError, StaleClaimError) as e:
            # Lease expired mid-delivery and the row was reclaimed
            logger.warning(
                "Delivery outcome dropped after losing its claim",
                delivery_id=str(delivery.delivery_id),
                listener_id=delivery.listener_id,
                outcome=outcome,
                error=e.message,
            )

    @staticmethod
    async def _invoke(listener: Any, event: Any) -> None:
        if inspect.iscoroutinefunction(listener) or inspect.iscoroutinefunction(
            getattr(listener, "__call__", None)
        ):
            await listener(event)
            return

        outcome = await asyncio.to_thread(listener, event)
        if inspect.isawaitable(outcome):
            await outcome
