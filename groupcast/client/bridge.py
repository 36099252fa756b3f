"""Messaging client backed by a multi-session Node.js bridge."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, Awaitable, Callable

import httpx
import websockets
from loguru import logger

from groupcast.client.base import (
    BecameReady,
    ChallengeIssued,
    ClientEvent,
    ConnectionClosed,
    ContactsUpdated,
    ConversationSummary,
    CredentialsUpdated,
    DisconnectReason,
    EventSink,
    IncomingMessage,
    MessagesReceived,
    Participant,
    SentMessage,
)
from groupcast.config.schema import BridgeConfig
from groupcast.session.contacts import pick_contact_name

GROUP_SUFFIX = "@g.us"


def _extract_text(message: dict[str, Any] | None) -> str:
    if not message:
        return ""
    if isinstance(message.get("conversation"), str):
        return message["conversation"]
    for key in ("extendedTextMessage", "imageMessage", "videoMessage"):
        inner = message.get(key)
        if isinstance(inner, dict):
            text = inner.get("text") or inner.get("caption")
            if text:
                return text
    return ""


def incoming_from_bridge(data: dict[str, Any]) -> IncomingMessage:
    """Create an IncomingMessage from the bridge's raw message format."""
    key = data.get("key") or {}
    conversation_id = key.get("remoteJid") or data.get("conversationId") or ""
    is_group = conversation_id.endswith(GROUP_SUFFIX)
    participant_id = key.get("participant") or data.get("participant")
    if not participant_id and not is_group:
        participant_id = conversation_id
    return IncomingMessage(
        message_id=key.get("id") or data.get("id"),
        conversation_id=conversation_id,
        participant_id=participant_id,
        push_name=data.get("pushName"),
        text=_extract_text(data.get("message")) or data.get("text") or "",
        timestamp=data.get("messageTimestamp") or data.get("timestamp") or 0,
        from_self=bool(key.get("fromMe", data.get("fromMe", False))),
        is_group=is_group,
        raw=data,
    )


def conversation_from_bridge(data: dict[str, Any]) -> ConversationSummary:
    participants = [
        Participant(id=p.get("id", ""), name=pick_contact_name(p))
        for p in data.get("participants") or []
        if p.get("id")
    ]
    return ConversationSummary(
        id=data.get("id", ""),
        subject=data.get("subject") or data.get("name") or "",
        participants=participants,
    )


class BridgeClient:
    """
    One tenant's connection through the bridge.

    Architecture:
        SessionManager <-> BridgeClient <-> Bridge (Node.js) <-> WhatsApp Web

    Requests go over REST under ``/sessions/{tenant_id}``; connection and
    message events arrive as JSON frames on a per-tenant WebSocket.
    """

    def __init__(
        self,
        tenant_id: str,
        credentials: dict[str, Any] | None,
        on_event: EventSink,
        config: BridgeConfig | None = None,
        http: httpx.AsyncClient | None = None,
        ws_connect: Callable[[str], Awaitable[Any]] | None = None,
    ):
        self.tenant_id = tenant_id
        self.config = config or BridgeConfig()
        self._credentials = credentials
        self._on_event = on_event
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=f"{self.config.http_url.rstrip('/')}/sessions/{tenant_id}",
            timeout=self.config.timeout_s,
        )
        self._ws_connect = ws_connect or (
            lambda url: websockets.connect(url, ping_interval=20, ping_timeout=20)
        )
        self._ws: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False
        self._close_reported = False

    @property
    def events_url(self) -> str:
        return f"{self.config.ws_url.rstrip('/')}/sessions/{self.tenant_id}/events"

    async def connect(self) -> None:
        """Open the event stream, then ask the bridge to start the session."""
        self._closing = False
        self._close_reported = False
        try:
            self._ws = await self._ws_connect(self.events_url)
        except Exception as e:
            raise ConnectionError(f"Cannot open bridge event stream at {self.events_url}") from e
        self._reader_task = asyncio.create_task(self._read_loop())

        response = await self._http.post("/connect", json={"credentials": self._credentials})
        response.raise_for_status()
        logger.debug(f"Bridge session {self.tenant_id} connecting")

    async def send_text(
        self,
        conversation_id: str,
        body: str,
        quoted: Any | None = None,
    ) -> SentMessage:
        payload: dict[str, Any] = {"conversationId": conversation_id, "text": body}
        if quoted is not None:
            raw = getattr(quoted, "raw", quoted)
            if raw is None:
                raise ValueError("quoted message carries no bridge payload")
            payload["quoted"] = raw
        response = await self._http.post("/send", json=payload)
        response.raise_for_status()
        data = response.json()
        return SentMessage(message_id=data.get("messageId"), raw=data.get("message"))

    async def list_conversations(self) -> list[ConversationSummary]:
        response = await self._http.get("/groups")
        response.raise_for_status()
        return [conversation_from_bridge(g) for g in response.json().get("groups", [])]

    async def fetch_avatar_url(self, conversation_id: str) -> str | None:
        response = await self._http.get(f"/groups/{conversation_id}/picture")
        if response.status_code in (204, 404):
            return None
        response.raise_for_status()
        return response.json().get("url")

    async def logout(self) -> None:
        response = await self._http.post("/logout")
        response.raise_for_status()

    async def close(self) -> None:
        """Stop listening and release connections. Emits nothing."""
        self._closing = True
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
            self._ws = None
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Bridge event stream error for {self.tenant_id}: {e}")
        if not self._closing and not self._close_reported:
            self._emit(ConnectionClosed(DisconnectReason.CONNECTION_LOST, "event stream ended"))

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge for {self.tenant_id}")
            return
        if not isinstance(data, dict):
            logger.warning("Invalid bridge frame shape")
            return

        event = self._to_event(data)
        if event is None:
            logger.debug(f"Skipping bridge frame of type {data.get('type')!r}")
            return
        if isinstance(event, ConnectionClosed):
            self._close_reported = True
        self._emit(event)

    @staticmethod
    def _to_event(data: dict[str, Any]) -> ClientEvent | None:
        kind = data.get("type")
        if kind == "qr":
            return ChallengeIssued(payload=data.get("qr", ""))
        if kind == "ready":
            return BecameReady()
        if kind == "close":
            return ConnectionClosed(reason=data.get("statusCode"), detail=data.get("reason", ""))
        if kind == "creds":
            return CredentialsUpdated(credentials=data.get("credentials") or {})
        if kind == "messages":
            return MessagesReceived(
                messages=[incoming_from_bridge(m) for m in data.get("messages") or []],
                history=bool(data.get("history", False)),
            )
        if kind == "contacts":
            return ContactsUpdated(contacts=list(data.get("contacts") or []))
        return None

    def _emit(self, event: ClientEvent) -> None:
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(f"Error delivering {type(event).__name__} for {self.tenant_id}: {e}")
