"""Client factory to keep transport selection isolated from CLI logic."""

from __future__ import annotations

from typing import Any

from groupcast.client.base import ClientFactory, EventSink, MessagingClient
from groupcast.client.bridge import BridgeClient
from groupcast.config.schema import Config


def create_client_factory(config: Config) -> ClientFactory:
    """Create the factory the session manager uses to open tenant connections."""
    bridge = config.bridge

    def factory(
        tenant_id: str,
        credentials: dict[str, Any] | None,
        on_event: EventSink,
    ) -> MessagingClient:
        return BridgeClient(tenant_id, credentials, on_event, config=bridge)

    return factory
