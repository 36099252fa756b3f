"""Session manager coordinating every tenant's connection, cache and contacts."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from loguru import logger

from groupcast.bus import events
from groupcast.bus.events import TenantEvent
from groupcast.bus.queue import EventBus
from groupcast.client.base import (
    CONNECTION_EVENTS,
    ClientEvent,
    ClientFactory,
    ContactsUpdated,
    ConversationSummary,
    IncomingMessage,
    MessagesReceived,
    MessagingClient,
    SentMessage,
)
from groupcast.config.schema import Config
from groupcast.session.cache import CachedMessage, MessageCache
from groupcast.session.contacts import ContactNameMap
from groupcast.session.credentials import CredentialStore, validate_tenant_id
from groupcast.session.errors import CapacityExceeded, NotConnected, SendFailure, StorageError
from groupcast.session.reply import ReplyHint, ReplyResolver, compose_fallback
from groupcast.session.scheduler import ReconnectScheduler
from groupcast.session.supervisor import ConnectionState, ConnectionSupervisor
from groupcast.utils.helpers import iso_from_ms, normalize_timestamp_ms

BROADCAST_CONVERSATION = "status@broadcast"


class TenantSession:
    """Everything owned by one tenant. Mutated only under ``lock``."""

    def __init__(
        self,
        tenant_id: str,
        supervisor: ConnectionSupervisor,
        cache: MessageCache,
        now: float,
    ):
        self.tenant_id = tenant_id
        self.supervisor = supervisor
        self.cache = cache
        self.contacts = ContactNameMap()
        self.lock = asyncio.Lock()
        self.created_at = now
        self.last_activity = now
        self.deleted = False

    @property
    def state(self) -> ConnectionState:
        return self.supervisor.state

    @property
    def is_ready(self) -> bool:
        return self.supervisor.is_ready

    def touch(self, now: float) -> None:
        self.last_activity = now


@dataclass
class SendResult:
    conversation_id: str
    success: bool
    message_id: str | None = None
    was_reply: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"conversationId": self.conversation_id, "success": self.success}
        if self.success:
            data["messageId"] = self.message_id
            data["wasReply"] = self.was_reply
        else:
            data["error"] = self.error
        return data


class SessionManager:
    """
    Maps tenant ids to their sessions and exposes the operations used by the
    request layer.

    Responsibilities:
    - Create sessions lazily (bounded by ``max_sessions``) or from persisted credentials
    - Serialize all work on a tenant through its lock
    - Apply inbound client events in order, one worker per tenant
    - Route sends through reply resolution and record what was sent
    - Publish tenant-scoped notifications on the bus
    """

    def __init__(
        self,
        config: Config,
        client_factory: ClientFactory,
        bus: EventBus,
        credentials: CredentialStore | None = None,
        scheduler: ReconnectScheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        load_persisted: bool = True,
    ):
        self.config = config
        self.bus = bus
        self.credentials = credentials or CredentialStore(config.sessions.auth_path)
        self.scheduler = scheduler or ReconnectScheduler()
        self.resolver = ReplyResolver(
            prefix_window=config.reply.prefix_window,
            contains_window=config.reply.contains_window,
            sender_window=config.reply.sender_window,
            sender_text_window=config.reply.sender_text_window,
            min_fragment=config.reply.min_fragment,
        )
        self.sessions: dict[str, TenantSession] = {}
        self._client_factory = client_factory
        self._clock = clock
        self._event_queues: dict[str, asyncio.Queue[tuple[int, ClientEvent]]] = {}
        self._event_workers: dict[str, asyncio.Task[None]] = {}

        if load_persisted:
            self._load_persisted()

    @property
    def max_sessions(self) -> int:
        return self.config.sessions.max_sessions

    def _load_persisted(self) -> None:
        """Register a dormant session for every tenant with stored credentials."""
        try:
            tenant_ids = self.credentials.list_tenants()
        except StorageError as e:
            logger.error(f"Failed to list persisted sessions: {e}")
            return
        for tenant_id in tenant_ids:
            if len(self.sessions) >= self.max_sessions:
                logger.warning(f"Session limit reached, not loading {tenant_id}")
                continue
            self._create_session(tenant_id)
        if self.sessions:
            logger.info(f"Loaded {len(self.sessions)} persisted session(s)")

    # ------------------------------------------------------------------
    # Session map
    # ------------------------------------------------------------------

    def get(self, tenant_id: str) -> TenantSession | None:
        return self.sessions.get(tenant_id)

    def get_or_create(self, tenant_id: str) -> TenantSession:
        """Return the tenant's session, creating it if there is room."""
        session = self.sessions.get(tenant_id)
        if session is not None:
            return session
        validate_tenant_id(tenant_id)
        if len(self.sessions) >= self.max_sessions:
            raise CapacityExceeded(self.max_sessions)
        return self._create_session(tenant_id)

    def _create_session(self, tenant_id: str) -> TenantSession:
        supervisor = ConnectionSupervisor(
            tenant_id,
            credentials=self.credentials,
            client_factory=self._client_factory,
            notify=lambda name, payload: self._publish(tenant_id, name, payload),
            scheduler=self.scheduler,
            event_sink=lambda generation, event: self._enqueue_event(tenant_id, generation, event),
            config=self.config.connection,
            restart=lambda force_new: self._restart(tenant_id, force_new),
            clock=self._clock,
        )
        session = TenantSession(
            tenant_id,
            supervisor,
            MessageCache(self.config.cache.capacity),
            now=self._clock(),
        )
        self.sessions[tenant_id] = session
        logger.info(f"Session {tenant_id} created ({len(self.sessions)}/{self.max_sessions})")
        return session

    def _require_ready(self, tenant_id: str) -> TenantSession:
        session = self.sessions.get(tenant_id)
        if session is None or not session.is_ready:
            raise NotConnected(tenant_id)
        return session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, tenant_id: str, force_new: bool = False) -> TenantSession:
        """Connect a tenant; ``force_new`` wipes its credentials first."""
        session = self.get_or_create(tenant_id)
        async with session.lock:
            session.touch(self._clock())
            await session.supervisor.start(force_new=force_new)
        return session

    async def _restart(self, tenant_id: str, force_new: bool) -> None:
        """Target of scheduled reconnects and resets."""
        session = self.sessions.get(tenant_id)
        if session is None or session.deleted:
            logger.warning(f"Dropping stale restart for removed session {tenant_id}")
            return
        async with session.lock:
            if session.deleted:
                return
            await session.supervisor.start(force_new=force_new)

    async def logout(self, tenant_id: str) -> None:
        """Log out remotely, wipe credentials and schedule a fresh pairing."""
        session = self.sessions.get(tenant_id)
        if session is None:
            raise NotConnected(tenant_id)
        async with session.lock:
            await session.supervisor.logout()
            session.cache.clear()
            session.contacts.clear()
            session.touch(self._clock())

    async def delete(self, tenant_id: str) -> bool:
        """Terminate, wipe credentials and forget the tenant. Returns False if unknown."""
        session = self.sessions.get(tenant_id)
        if session is None:
            if self.credentials.exists(tenant_id):
                self.credentials.clear(tenant_id)
            return False
        async with session.lock:
            session.deleted = True
            self.scheduler.cancel(tenant_id)
            await session.supervisor.shutdown(logout=True)
            self.sessions.pop(tenant_id, None)
            self.credentials.clear(tenant_id)
        await self._stop_event_worker(tenant_id)
        logger.info(f"Session {tenant_id} deleted")
        return True

    async def evict_idle(self, max_idle: float) -> list[str]:
        """Remove sessions idle for more than ``max_idle`` seconds that are not Ready."""
        now = self._clock()
        candidates = [
            session for session in list(self.sessions.values())
            if not session.is_ready and now - session.last_activity > max_idle
        ]
        evicted = []
        for session in candidates:
            async with session.lock:
                if session.deleted or session.is_ready:
                    continue
                if self._clock() - session.last_activity <= max_idle:
                    continue
                session.deleted = True
                self.scheduler.cancel(session.tenant_id)
                await session.supervisor.shutdown()
                self.sessions.pop(session.tenant_id, None)
            await self._stop_event_worker(session.tenant_id)
            evicted.append(session.tenant_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} idle session(s): {', '.join(evicted)}")
        return evicted

    async def run_idle_eviction(self, interval: float | None = None, max_idle: float | None = None) -> None:
        """Evict idle sessions periodically until cancelled."""
        interval = interval if interval is not None else self.config.sessions.cleanup_interval_s
        max_idle = max_idle if max_idle is not None else self.config.sessions.idle_timeout_s
        logger.info(f"Idle eviction every {interval}s (max idle {max_idle}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle(max_idle)
            except Exception as e:
                logger.error(f"Idle eviction failed: {e}")

    async def stop_all(self) -> None:
        """Disconnect every tenant without touching credentials."""
        logger.info("Stopping all sessions...")
        await self.scheduler.cancel_all()
        for tenant_id, session in list(self.sessions.items()):
            async with session.lock:
                try:
                    await session.supervisor.shutdown()
                except Exception as e:
                    logger.error(f"Error stopping {tenant_id}: {e}")
        await self._stop_event_workers()

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    async def send(
        self,
        tenant_id: str,
        conversation_ids: Sequence[str],
        body: str,
        reply_hint: ReplyHint | None = None,
    ) -> list[SendResult]:
        """
        Send ``body`` to each conversation in turn.

        A failing conversation yields a failed result and the batch carries on.
        """
        if not conversation_ids:
            raise ValueError("conversation_ids must not be empty")
        if not body or not body.strip():
            raise ValueError("body must not be empty")
        session = self._require_ready(tenant_id)
        if reply_hint is not None and reply_hint.is_empty:
            reply_hint = None

        results: list[SendResult] = []
        for index, conversation_id in enumerate(conversation_ids):
            if index:
                await asyncio.sleep(self.config.sessions.send_delay_s)
            results.append(await self._send_one(session, conversation_id, body, reply_hint))
        failed = sum(1 for r in results if not r.success)
        logger.info(f"Sent to {len(results) - failed}/{len(results)} conversation(s) for {tenant_id}")
        return results

    async def _send_one(
        self,
        session: TenantSession,
        conversation_id: str,
        body: str,
        reply_hint: ReplyHint | None,
    ) -> SendResult:
        async with session.lock:
            client = session.supervisor.client
            if not conversation_id:
                return SendResult(conversation_id, False, error="empty conversation id")
            if not session.is_ready or client is None:
                return SendResult(conversation_id, False, error=str(NotConnected(session.tenant_id)))
            session.touch(self._clock())
            try:
                sent, was_reply = await self._dispatch(session, client, conversation_id, body, reply_hint)
            except Exception as e:
                failure = SendFailure(conversation_id, str(e))
                logger.error(f"[{session.tenant_id}] {failure}")
                return SendResult(conversation_id, False, error=failure.reason)

            timestamp = int(time.time() * 1000)
            session.cache.record(CachedMessage(
                message_id=sent.message_id,
                conversation_id=conversation_id,
                sender_display_name=self.config.sessions.self_display_name,
                body_text=body,
                timestamp=timestamp,
                from_self=True,
                raw=sent.raw,
            ))
        await self._publish(session.tenant_id, events.MESSAGE_SENT, {
            "conversationId": conversation_id,
            "text": body,
            "timestamp": timestamp,
            "messageId": sent.message_id,
            "wasReply": was_reply,
        })
        return SendResult(conversation_id, True, message_id=sent.message_id, was_reply=was_reply)

    async def _dispatch(
        self,
        session: TenantSession,
        client: MessagingClient,
        conversation_id: str,
        body: str,
        reply_hint: ReplyHint | None,
    ) -> tuple[SentMessage, bool]:
        """Send natively quoted when the hinted message is found, else inline-quoted."""
        if reply_hint is None:
            return await client.send_text(conversation_id, body), False

        match = self.resolver.resolve(session.cache, reply_hint, conversation_id)
        if match is not None:
            logger.debug(
                f"Reply target in {conversation_id} matched by {match.tier.name.lower()}"
            )
            try:
                return await client.send_text(conversation_id, body, quoted=match.message), True
            except Exception as e:
                logger.warning(f"Quoted send to {conversation_id} failed, using inline quote: {e}")
        else:
            logger.debug(f"No reply target found in {conversation_id}")

        text = compose_fallback(reply_hint, body, self.config.reply.fallback_quote_chars)
        return await client.send_text(conversation_id, text), False

    async def list_conversations(self, tenant_id: str) -> list[ConversationSummary]:
        """List the tenant's group conversations, refreshing known participant names."""
        session = self._require_ready(tenant_id)
        async with session.lock:
            client = session.supervisor.client
            if client is None:
                raise NotConnected(tenant_id)
            conversations = await client.list_conversations()
            merged = 0
            for conversation in conversations:
                for participant in conversation.participants:
                    if session.contacts.merge_participant(participant.id, participant.name):
                        merged += 1
            session.touch(self._clock())
        logger.debug(f"{len(conversations)} conversation(s) for {tenant_id}, {merged} name(s) merged")
        return conversations

    async def fetch_avatar_url(self, tenant_id: str, conversation_id: str) -> str | None:
        """Avatar URL of a conversation, or None when unavailable."""
        session = self.sessions.get(tenant_id)
        if session is None or not session.is_ready:
            return None
        async with session.lock:
            client = session.supervisor.client
            if client is None:
                return None
            try:
                return await client.fetch_avatar_url(conversation_id)
            except Exception as e:
                logger.debug(f"Avatar lookup for {conversation_id} failed: {e}")
                return None

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _enqueue_event(self, tenant_id: str, generation: int, event: ClientEvent) -> None:
        """Called by clients; queues the event for the tenant's worker."""
        session = self.sessions.get(tenant_id)
        if session is None or session.deleted:
            logger.debug(f"Dropping {type(event).__name__} for removed session {tenant_id}")
            return
        queue = self._event_queues.setdefault(tenant_id, asyncio.Queue())
        queue.put_nowait((generation, event))
        self._ensure_event_worker(tenant_id)

    def _ensure_event_worker(self, tenant_id: str) -> None:
        worker = self._event_workers.get(tenant_id)
        if worker is None or worker.done():
            queue = self._event_queues[tenant_id]
            self._event_workers[tenant_id] = asyncio.create_task(
                self._event_worker(tenant_id, queue)
            )

    async def _event_worker(
        self,
        tenant_id: str,
        queue: asyncio.Queue[tuple[int, ClientEvent]],
    ) -> None:
        """Apply one tenant's client events serially, in arrival order."""
        try:
            while not queue.empty():
                generation, event = queue.get_nowait()
                try:
                    await self._apply_event(tenant_id, generation, event)
                except Exception as e:
                    logger.exception(f"Error applying {type(event).__name__} for {tenant_id}: {e}")
                finally:
                    queue.task_done()
        finally:
            if self._event_workers.get(tenant_id) is asyncio.current_task():
                self._event_workers.pop(tenant_id, None)
            if queue.empty():
                if self._event_queues.get(tenant_id) is queue:
                    self._event_queues.pop(tenant_id, None)
            elif tenant_id in self.sessions:
                self._event_workers[tenant_id] = asyncio.create_task(
                    self._event_worker(tenant_id, queue)
                )

    async def _apply_event(self, tenant_id: str, generation: int, event: ClientEvent) -> None:
        session = self.sessions.get(tenant_id)
        if session is None or session.deleted:
            return
        async with session.lock:
            if session.deleted:
                return
            if isinstance(event, CONNECTION_EVENTS):
                await session.supervisor.handle_event(event, generation)
                return
            if generation != session.supervisor.generation:
                logger.debug(f"Ignoring {type(event).__name__} from stale client of {tenant_id}")
                return
            if isinstance(event, MessagesReceived):
                observed = self._record_messages(session, event)
            elif isinstance(event, ContactsUpdated):
                applied = session.contacts.update_from_contacts(event.contacts)
                logger.debug(f"Contacts updated for {tenant_id}: {applied} name(s)")
                return
            else:
                logger.debug(f"Unhandled event {type(event).__name__} for {tenant_id}")
                return
        for message in observed:
            await self._publish(tenant_id, events.MESSAGE_OBSERVED, {
                "conversationId": message.conversation_id,
                "sender": message.sender_display_name,
                "text": message.body_text,
                "timestamp": message.timestamp,
                "messageId": message.message_id,
            })

    def _record_messages(self, session: TenantSession, event: MessagesReceived) -> list[CachedMessage]:
        """Cache incoming messages. Returns the new live ones worth forwarding."""
        if event.history:
            grouped: dict[str, list[CachedMessage]] = {}
            for incoming in event.messages:
                if self._is_ignored(incoming) or not incoming.is_group:
                    continue
                grouped.setdefault(incoming.conversation_id, []).append(
                    self._to_cached(session, incoming)
                )
            added = sum(
                session.cache.merge_history(conversation_id, messages)
                for conversation_id, messages in grouped.items()
            )
            logger.info(
                f"History sync for {session.tenant_id}: {added} message(s) "
                f"across {len(grouped)} conversation(s)"
            )
            return []

        observed = []
        for incoming in event.messages:
            if self._is_ignored(incoming):
                continue
            message = self._to_cached(session, incoming)
            inserted = session.cache.record(message)
            if inserted and incoming.is_group and not incoming.from_self:
                observed.append(message)
        if observed:
            session.touch(self._clock())
        return observed

    @staticmethod
    def _is_ignored(incoming: IncomingMessage) -> bool:
        return not incoming.conversation_id or incoming.conversation_id == BROADCAST_CONVERSATION

    def _to_cached(self, session: TenantSession, incoming: IncomingMessage) -> CachedMessage:
        if incoming.from_self:
            sender = self.config.sessions.self_display_name
        else:
            sender = session.contacts.resolve(incoming.participant_id, incoming.push_name)
        return CachedMessage(
            message_id=incoming.message_id,
            conversation_id=incoming.conversation_id,
            sender_display_name=sender,
            body_text=incoming.text or "",
            timestamp=normalize_timestamp_ms(incoming.timestamp),
            from_self=incoming.from_self,
            participant_id=incoming.participant_id,
            raw=incoming.raw,
        )

    async def flush(self, tenant_id: str) -> None:
        """Wait until every queued client event of a tenant has been applied."""
        queue = self._event_queues.get(tenant_id)
        if queue is not None:
            await queue.join()

    async def _stop_event_worker(self, tenant_id: str) -> None:
        worker = self._event_workers.pop(tenant_id, None)
        self._event_queues.pop(tenant_id, None)
        if worker is None or worker is asyncio.current_task():
            return
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

    async def _stop_event_workers(self) -> None:
        workers = [w for w in self._event_workers.values() if w is not asyncio.current_task()]
        self._event_workers.clear()
        self._event_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def _publish(self, tenant_id: str, name: str, payload: dict[str, Any]) -> None:
        await self.bus.publish(TenantEvent(tenant_id=tenant_id, name=name, payload=payload))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def message_log(self, tenant_id: str, conversation_id: str) -> list[dict[str, Any]]:
        """Cached messages of a conversation, oldest first, for export."""
        session = self.sessions.get(tenant_id)
        if session is None:
            return []
        return [
            {
                "id": m.message_id,
                "text": m.body_text,
                "from": m.sender_display_name,
                "fromSelf": m.from_self,
                "timestamp": iso_from_ms(m.timestamp),
                "participant": m.participant_id,
            }
            for m in session.cache.all(conversation_id)
        ]

    def get_stats(self) -> dict[str, int]:
        connected = sum(1 for s in self.sessions.values() if s.is_ready)
        return {
            "total": len(self.sessions),
            "active": sum(1 for s in self.sessions.values() if s.supervisor.client is not None),
            "connected": connected,
            "disconnected": len(self.sessions) - connected,
            "max_sessions": self.max_sessions,
        }

    def list_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "tenant_id": tenant_id,
                "state": session.state.value,
                "ready": session.is_ready,
                "active": session.supervisor.client is not None,
                "last_activity": session.last_activity,
            }
            for tenant_id, session in self.sessions.items()
        ]
