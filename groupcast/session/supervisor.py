"""Connection lifecycle of a single tenant."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from groupcast.bus import events
from groupcast.client.base import (
    BecameReady,
    ChallengeIssued,
    ClientEvent,
    ClientFactory,
    ConnectionClosed,
    CredentialsUpdated,
    DisconnectReason,
    MessagingClient,
)
from groupcast.config.schema import ConnectionConfig
from groupcast.session.credentials import CredentialStore
from groupcast.session.errors import StorageError
from groupcast.session.scheduler import ReconnectScheduler


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    READY = "ready"
    CLOSED = "closed"


class CloseDisposition(str, Enum):
    """What a close reason means for the session."""

    TRANSIENT = "transient"  # reconnect with backoff
    CORRUPTED = "corrupted"  # wipe credentials, then reconnect
    TERMINAL = "terminal"  # logged out: wipe credentials, stay down


_CORRUPTED_REASONS = frozenset({
    DisconnectReason.BAD_SESSION,
    DisconnectReason.VERSION_MISMATCH,
    DisconnectReason.MULTIDEVICE_MISMATCH,
})
_FAST_RECONNECT_REASONS = frozenset({
    DisconnectReason.TIMED_OUT,
    DisconnectReason.RESTART_REQUIRED,
})


def classify_close(reason: int | None) -> CloseDisposition:
    """Map a close status code to its disposition. Unknown codes are transient."""
    if reason == DisconnectReason.LOGGED_OUT:
        return CloseDisposition.TERMINAL
    if reason in _CORRUPTED_REASONS:
        return CloseDisposition.CORRUPTED
    return CloseDisposition.TRANSIENT


Notifier = Callable[[str, dict[str, Any]], Awaitable[None]]
GenerationSink = Callable[[int, ClientEvent], None]


class ConnectionSupervisor:
    """
    Owns the connection of one tenant to the messaging network.

    State machine::

        Disconnected -> Connecting <-> AwaitingChallenge -> Ready -> Closed
        Closed -> Connecting (reconnect) | Disconnected (logged out)

    The supervisor never runs two clients at once. Each client it creates is
    tagged with a generation number, and events from an older generation are
    ignored. Reconnects go through the scheduler so they can be cancelled.
    Callers serialize access (one owner per tenant); no method here locks.
    """

    def __init__(
        self,
        tenant_id: str,
        credentials: CredentialStore,
        client_factory: ClientFactory,
        notify: Notifier,
        scheduler: ReconnectScheduler,
        event_sink: GenerationSink,
        config: ConnectionConfig | None = None,
        restart: Callable[[bool], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.tenant_id = tenant_id
        self.credentials = credentials
        self.config = config or ConnectionConfig()
        self._client_factory = client_factory
        self._notify_cb = notify
        self._scheduler = scheduler
        self._event_sink = event_sink
        self._restart = restart or (lambda force_new: self.start(force_new=force_new))
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.client: MessagingClient | None = None
        self.retry_count = 0
        self.emitted_challenges = 0
        self.reconnect_attempts = 0
        self._generation = 0
        self._last_challenge: str | None = None
        self._last_challenge_at: float | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY and self.client is not None

    # ------------------------------------------------------------------
    # Caller-initiated transitions
    # ------------------------------------------------------------------

    async def start(self, force_new: bool = False) -> None:
        """
        Connect (or reconnect) the tenant.

        No-op while Ready or while a connection attempt is already in flight,
        unless ``force_new`` is set, which wipes stored credentials first.
        """
        wipe = force_new or self.retry_count > self.config.challenge_budget
        if wipe:
            was_ready = self.is_ready
            self.credentials.clear(self.tenant_id)
            self.retry_count = 0
            self._forget_challenge()
            await self._drop_client()
            if was_ready:
                self.state = ConnectionState.DISCONNECTED
                await self._notify(events.DISCONNECTED, {})
        elif self.is_ready:
            logger.info(f"Session {self.tenant_id} already connected")
            return
        elif self.client is not None and self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.AWAITING_CHALLENGE,
        ):
            logger.debug(f"Session {self.tenant_id} already connecting, ignoring start")
            return

        self._scheduler.cancel(self.tenant_id)
        prior = self.state
        self.state = ConnectionState.CONNECTING
        try:
            stored = self.credentials.load(self.tenant_id)
        except StorageError:
            self.state = prior
            raise

        self._generation += 1
        generation = self._generation
        logger.info(
            f"Starting session {self.tenant_id} "
            f"({'stored credentials' if stored else 'fresh login'})"
        )
        try:
            self.client = self._client_factory(
                self.tenant_id,
                stored,
                lambda event: self._event_sink(generation, event),
            )
            await self.client.connect()
        except Exception as e:
            logger.error(f"Failed to start session {self.tenant_id}: {e}")
            await self._drop_client()
            self.state = ConnectionState.CLOSED
            self._schedule_restart(self.config.error_reconnect_delay_s, force_new=False)
            raise

    async def logout(self) -> None:
        """Best-effort remote logout, wipe credentials, then offer a fresh pairing."""
        was_ready = self.is_ready
        self._scheduler.cancel(self.tenant_id)
        if was_ready:
            try:
                await self.client.logout()
            except Exception as e:
                logger.warning(f"Remote logout failed for {self.tenant_id}: {e}")
        await self._drop_client()
        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self._forget_challenge()
        self.credentials.clear(self.tenant_id)
        logger.info(f"Session {self.tenant_id} logged out")

        if was_ready:
            await self._notify(events.DISCONNECTED, {})
        await self._notify(events.LOGGED_OUT, {"reason": "logout"})
        self._schedule_restart(self.config.logout_restart_delay_s, force_new=True)

    async def shutdown(self, logout: bool = False) -> None:
        """Terminate the connection and cancel any pending reconnect."""
        was_ready = self.is_ready
        self._scheduler.cancel(self.tenant_id)
        if logout and was_ready:
            try:
                await self.client.logout()
            except Exception as e:
                logger.debug(f"Logout during shutdown of {self.tenant_id} failed: {e}")
        await self._drop_client()
        self.state = ConnectionState.DISCONNECTED
        if was_ready:
            await self._notify(events.DISCONNECTED, {})

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    async def handle_event(self, event: ClientEvent, generation: int | None = None) -> None:
        """Apply a connection event. Errors are logged, never raised."""
        if generation is not None and generation != self._generation:
            logger.debug(f"Ignoring {type(event).__name__} from stale client of {self.tenant_id}")
            return
        try:
            if isinstance(event, ChallengeIssued):
                await self._on_challenge(event)
            elif isinstance(event, BecameReady):
                await self._on_ready()
            elif isinstance(event, ConnectionClosed):
                await self._on_closed(event)
            elif isinstance(event, CredentialsUpdated):
                self._on_credentials(event)
            else:
                logger.debug(f"Supervisor ignores {type(event).__name__}")
        except Exception as e:
            logger.exception(f"Error handling {type(event).__name__} for {self.tenant_id}: {e}")

    async def _on_challenge(self, event: ChallengeIssued) -> None:
        if self.state is ConnectionState.READY:
            return
        now = self._clock()
        if event.payload == self._last_challenge:
            logger.debug(f"Duplicate challenge ignored for {self.tenant_id}")
            return
        if (
            self._last_challenge_at is not None
            and now - self._last_challenge_at < self.config.challenge_throttle_s
        ):
            logger.debug(f"Challenge throttled for {self.tenant_id}")
            return
        if self.retry_count >= self.config.challenge_budget:
            logger.warning(
                f"Pairing budget exhausted for {self.tenant_id} "
                f"({self.retry_count}/{self.config.challenge_budget}), resetting credentials"
            )
            await self._reset_pairing()
            return

        self._last_challenge = event.payload
        self._last_challenge_at = now
        self.retry_count += 1
        self.emitted_challenges += 1
        self.state = ConnectionState.AWAITING_CHALLENGE
        logger.info(f"Challenge for {self.tenant_id} ({self.retry_count}/{self.config.challenge_budget})")
        await self._notify(events.CHALLENGE, {
            "payload": event.payload,
            "attempt": self.retry_count,
            "budget": self.config.challenge_budget,
        })

    async def _on_ready(self) -> None:
        if self.state is ConnectionState.READY:
            return
        self.state = ConnectionState.READY
        self.retry_count = 0
        self.reconnect_attempts = 0
        self._forget_challenge()
        logger.info(f"Session {self.tenant_id} connected")
        await self._notify(events.READY, {})

    async def _on_closed(self, event: ConnectionClosed) -> None:
        was_ready = self.state is ConnectionState.READY
        disposition = classify_close(event.reason)
        await self._drop_client()

        if disposition is CloseDisposition.TERMINAL:
            self._scheduler.cancel(self.tenant_id)
            self._clear_credentials_quietly()
            self.state = ConnectionState.DISCONNECTED
            self.retry_count = 0
            self._forget_challenge()
            logger.info(f"Session {self.tenant_id} logged out remotely")
            if was_ready:
                await self._notify(events.DISCONNECTED, {"reason": event.reason})
            await self._notify(events.LOGGED_OUT, {"reason": event.reason})
            return

        if disposition is CloseDisposition.CORRUPTED:
            logger.warning(f"Session {self.tenant_id} credentials unusable (code {event.reason}), clearing")
            self._clear_credentials_quietly()

        self.state = ConnectionState.CLOSED
        if was_ready:
            await self._notify(events.DISCONNECTED, {"reason": event.reason})
        delay = self.reconnect_delay(event.reason)
        self.reconnect_attempts += 1
        logger.info(f"Reconnecting {self.tenant_id} in {delay:.1f}s (code {event.reason})")
        self._schedule_restart(delay, force_new=False)

    def _on_credentials(self, event: CredentialsUpdated) -> None:
        try:
            self.credentials.save(self.tenant_id, event.credentials)
        except StorageError as e:
            logger.error(f"Failed to persist credentials for {self.tenant_id}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def reconnect_delay(self, reason: int | None) -> float:
        """Backoff for the next reconnect; shorter for timeouts and restart requests."""
        if reason in _FAST_RECONNECT_REASONS:
            base = self.config.timeout_reconnect_delay_s
        else:
            base = self.config.reconnect_delay_s
        delay = base * (self.config.reconnect_factor ** self.reconnect_attempts)
        return min(delay, self.config.reconnect_max_s)

    async def _reset_pairing(self) -> None:
        await self._drop_client()
        self._clear_credentials_quietly()
        self.retry_count = 0
        self._forget_challenge()
        self.state = ConnectionState.CLOSED
        self._schedule_restart(self.config.reset_delay_s, force_new=True)

    def _schedule_restart(self, delay: float, force_new: bool) -> None:
        self._scheduler.schedule(
            self.tenant_id,
            delay,
            lambda: self._restart(force_new),
            label="reset" if force_new else "reconnect",
        )

    async def _drop_client(self) -> None:
        client, self.client = self.client, None
        # Anything the old client still emits is stale from here on.
        self._generation += 1
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"Error closing client of {self.tenant_id}: {e}")

    def _clear_credentials_quietly(self) -> None:
        try:
            self.credentials.clear(self.tenant_id)
        except StorageError as e:
            logger.error(f"Failed to clear credentials for {self.tenant_id}: {e}")

    def _forget_challenge(self) -> None:
        self._last_challenge = None
        self._last_challenge_at = None

    async def _notify(self, name: str, payload: dict[str, Any]) -> None:
        try:
            await self._notify_cb(name, payload)
        except Exception as e:
            logger.error(f"Failed to publish {name} for {self.tenant_id}: {e}")

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ready": self.is_ready,
            "active": self.client is not None,
            "retry_count": self.retry_count,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_pending": self._scheduler.pending(self.tenant_id),
        }
