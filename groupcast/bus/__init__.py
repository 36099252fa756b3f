"""Message bus module for tenant notifications."""

from groupcast.bus.events import TenantEvent
from groupcast.bus.queue import EventBus

__all__ = ["EventBus", "TenantEvent"]
