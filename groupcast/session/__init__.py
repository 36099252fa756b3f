"""Multi-tenant session layer."""

from groupcast.session.errors import (
    CapacityExceeded,
    InvalidTenantId,
    NotConnected,
    SendFailure,
    SessionError,
    StorageError,
)
from groupcast.session.manager import SendResult, SessionManager, TenantSession
from groupcast.session.reply import ReplyHint
from groupcast.session.supervisor import ConnectionState

__all__ = [
    "CapacityExceeded",
    "ConnectionState",
    "InvalidTenantId",
    "NotConnected",
    "ReplyHint",
    "SendFailure",
    "SendResult",
    "SessionError",
    "SessionManager",
    "StorageError",
    "TenantSession",
]
