"""Async queue-based event bus."""

import asyncio

from loguru import logger

from groupcast.bus.events import TenantEvent


class EventBus:
    """
    Carries tenant notifications from the session layer to delivery.

    Every event lands on the shared ``outbound`` queue and on each subscriber
    queue registered for its own tenant; subscribers of other tenants never
    see it. Queues are bounded and drop their oldest entry when full.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self.outbound: asyncio.Queue[TenantEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers: dict[str, list[asyncio.Queue[TenantEvent]]] = {}

    async def publish(self, event: TenantEvent) -> None:
        """Publish an event to the outbound queue and the tenant's subscribers."""
        self._offer(self.outbound, event)
        for queue in list(self._subscribers.get(event.tenant_id, ())):
            self._offer(queue, event)

    async def consume(self) -> TenantEvent:
        """Consume the next outbound event (blocks until available)."""
        return await self.outbound.get()

    def subscribe(self, tenant_id: str) -> asyncio.Queue[TenantEvent]:
        """Register a queue that receives this tenant's events only."""
        queue: asyncio.Queue[TenantEvent] = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.setdefault(tenant_id, []).append(queue)
        return queue

    def unsubscribe(self, tenant_id: str, queue: asyncio.Queue[TenantEvent]) -> None:
        queues = self._subscribers.get(tenant_id)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            return
        if not queues:
            self._subscribers.pop(tenant_id, None)

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._subscribers.get(tenant_id, ()))

    def has_pending_for_tenant(self, tenant_id: str) -> bool:
        """Whether the outbound queue still holds an event for this tenant."""
        return any(event.tenant_id == tenant_id for event in list(self.outbound._queue))

    @property
    def outbound_size(self) -> int:
        """Number of pending outbound events."""
        return self.outbound.qsize()

    @staticmethod
    def _offer(queue: asyncio.Queue[TenantEvent], event: TenantEvent) -> None:
        if queue.full():
            try:
                dropped = queue.get_nowait()
                logger.warning(f"Event queue full, dropped {dropped.name} for {dropped.tenant_id}")
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(event)
