"""Messaging client abstraction."""

from groupcast.client.base import (
    BecameReady,
    ChallengeIssued,
    ClientEvent,
    ClientFactory,
    ConnectionClosed,
    ContactsUpdated,
    ConversationSummary,
    CredentialsUpdated,
    DisconnectReason,
    IncomingMessage,
    MessagesReceived,
    MessagingClient,
    Participant,
    SentMessage,
)

__all__ = [
    "BecameReady",
    "ChallengeIssued",
    "ClientEvent",
    "ClientFactory",
    "ConnectionClosed",
    "ContactsUpdated",
    "ConversationSummary",
    "CredentialsUpdated",
    "DisconnectReason",
    "IncomingMessage",
    "MessagesReceived",
    "MessagingClient",
    "Participant",
    "SentMessage",
]
