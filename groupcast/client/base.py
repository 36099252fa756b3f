"""Contract between the session layer and a messaging protocol client."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Protocol, Union

if TYPE_CHECKING:
    from groupcast.session.cache import CachedMessage


class DisconnectReason(IntEnum):
    """Status codes attached to a connection close."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    TIMED_OUT = 408
    LOGGED_OUT = 401
    FORBIDDEN = 403
    VERSION_MISMATCH = 405
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


# ----------------------------------------------------------------------
# Events pushed by a client
# ----------------------------------------------------------------------


@dataclass
class ChallengeIssued:
    """A pairing token (QR payload) the user has to scan."""

    payload: str


@dataclass
class BecameReady:
    """The connection is authenticated and usable."""


@dataclass
class ConnectionClosed:
    reason: int | None = None
    detail: str = ""


@dataclass
class CredentialsUpdated:
    """The client rotated its credentials; they must be persisted."""

    credentials: dict[str, Any]


@dataclass
class IncomingMessage:
    """A message as delivered by the client, before name resolution."""

    message_id: str | None
    conversation_id: str
    participant_id: str | None = None
    push_name: str | None = None
    text: str = ""
    timestamp: int | float = 0
    from_self: bool = False
    is_group: bool = False
    raw: Any = field(default=None, repr=False)


@dataclass
class MessagesReceived:
    messages: list[IncomingMessage]
    history: bool = False


@dataclass
class ContactsUpdated:
    contacts: list[dict[str, Any]]


ClientEvent = Union[
    ChallengeIssued,
    BecameReady,
    ConnectionClosed,
    CredentialsUpdated,
    MessagesReceived,
    ContactsUpdated,
]

CONNECTION_EVENTS = (ChallengeIssued, BecameReady, ConnectionClosed, CredentialsUpdated)


# ----------------------------------------------------------------------
# Request/response shapes
# ----------------------------------------------------------------------


@dataclass
class SentMessage:
    message_id: str | None
    raw: Any = field(default=None, repr=False)


@dataclass
class Participant:
    id: str
    name: str | None = None


@dataclass
class ConversationSummary:
    id: str
    subject: str
    participants: list[Participant] = field(default_factory=list)

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "subject": self.subject, "participants": self.participant_count}


class MessagingClient(Protocol):
    """One live connection of one tenant to the messaging network."""

    async def connect(self) -> None: ...

    async def send_text(
        self,
        conversation_id: str,
        body: str,
        quoted: CachedMessage | None = None,
    ) -> SentMessage: ...

    async def list_conversations(self) -> list[ConversationSummary]: ...

    async def fetch_avatar_url(self, conversation_id: str) -> str | None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


EventSink = Callable[[ClientEvent], None]

# (tenant_id, stored credentials or None for a fresh login, event sink) -> client
ClientFactory = Callable[[str, "dict[str, Any] | None", EventSink], MessagingClient]
