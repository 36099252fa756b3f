"""Event types for the outward notification bus."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

CHALLENGE = "challenge"
READY = "ready"
DISCONNECTED = "disconnected"
LOGGED_OUT = "loggedOut"
MESSAGE_OBSERVED = "messageObserved"
MESSAGE_SENT = "messageSent"

EVENT_NAMES = frozenset({CHALLENGE, READY, DISCONNECTED, LOGGED_OUT, MESSAGE_OBSERVED, MESSAGE_SENT})


@dataclass
class TenantEvent:
    """Notification scoped to exactly one tenant."""

    tenant_id: str
    name: str  # one of EVENT_NAMES
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "event": self.name,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
