"""Error types raised by the session layer."""


class SessionError(Exception):
    """Base class for session-layer errors."""


class CapacityExceeded(SessionError):
    """The configured maximum number of tenants is already live."""

    def __init__(self, max_sessions: int):
        super().__init__(f"Session limit of {max_sessions} reached")
        self.max_sessions = max_sessions


class NotConnected(SessionError):
    """Operation requires a Ready connection."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Session {tenant_id} is not connected")
        self.tenant_id = tenant_id


class StorageError(SessionError):
    """Credential storage I/O failed."""


class InvalidTenantId(SessionError, ValueError):
    """Tenant id cannot be used as a storage key."""


class SendFailure(SessionError):
    """Dispatch to one conversation of a batch failed."""

    def __init__(self, conversation_id: str, reason: str):
        super().__init__(f"Send to {conversation_id} failed: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason
