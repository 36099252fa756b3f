"""Tiered lookup of the message a caller wants to quote."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

from groupcast.session.cache import CachedMessage, MessageCache
from groupcast.utils.helpers import normalize_text


@dataclass
class ReplyHint:
    """Caller-supplied description of the message to quote. Any field may be missing."""

    conversation_id: str | None = None
    message_id: str | None = None
    quoted_text: str | None = None
    sender_name: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.message_id or self.quoted_text or self.sender_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReplyHint | None":
        """Build from a request payload (camelCase or snake_case keys)."""
        if not data:
            return None
        return cls(
            conversation_id=data.get("conversationId") or data.get("conversation_id") or data.get("groupId"),
            message_id=data.get("messageId") or data.get("message_id"),
            quoted_text=data.get("quotedText") or data.get("quoted_text") or data.get("text"),
            sender_name=data.get("senderName") or data.get("sender_name") or data.get("from"),
        )


class MatchTier(IntEnum):
    """Resolution strategies, in the order they are tried."""

    MESSAGE_ID = 1
    EXACT_TEXT = 2
    TEXT_SIMILARITY = 3
    SENDER_AND_TEXT = 4
    TEXT_INDEX = 5
    RECENT_FROM_SENDER = 6


@dataclass
class ReplyMatch:
    message: CachedMessage
    tier: MatchTier


def _names_overlap(a: str, b: str, window: int) -> bool:
    a = a.strip().lower()
    b = b.strip().lower()
    if not a or not b:
        return False
    return a[:window] in b or b[:window] in a


class ReplyResolver:
    """
    Finds the cached message a reply hint refers to.

    Tiers run in ``MatchTier`` order and the first hit wins. A miss is a
    normal outcome: the caller falls back to an inline quote
    (see ``compose_fallback``).
    """

    def __init__(
        self,
        prefix_window: int = 50,
        contains_window: int = 30,
        sender_window: int = 8,
        sender_text_window: int = 20,
        min_fragment: int = 10,
    ):
        self.prefix_window = prefix_window
        self.contains_window = contains_window
        self.sender_window = sender_window
        self.sender_text_window = sender_text_window
        self.min_fragment = min_fragment
        self._tiers: list[tuple[MatchTier, Callable[[MessageCache, str, ReplyHint], CachedMessage | None]]] = [
            (MatchTier.MESSAGE_ID, self._by_message_id),
            (MatchTier.EXACT_TEXT, self._by_exact_text),
            (MatchTier.TEXT_SIMILARITY, self._by_text_similarity),
            (MatchTier.SENDER_AND_TEXT, self._by_sender_and_text),
            (MatchTier.TEXT_INDEX, self._by_text_index),
            (MatchTier.RECENT_FROM_SENDER, self._by_recent_sender),
        ]

    def resolve(
        self,
        cache: MessageCache,
        hint: ReplyHint,
        conversation_id: str | None = None,
    ) -> ReplyMatch | None:
        """Resolve ``hint`` inside ``conversation_id`` (defaults to the hint's own)."""
        target = conversation_id or hint.conversation_id
        if not target or hint.is_empty:
            return None
        for tier, finder in self._tiers:
            found = finder(cache, target, hint)
            if found is not None:
                return ReplyMatch(message=found, tier=tier)
        return None

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _by_message_id(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        if not hint.message_id:
            return None
        return cache.find_by_id(conversation_id, hint.message_id)

    def _by_exact_text(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        if not hint.quoted_text:
            return None
        for message in cache.iter_newest_first(conversation_id):
            if message.body_text and message.body_text == hint.quoted_text:
                return message
        return None

    def _by_text_similarity(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        quoted = normalize_text(hint.quoted_text)
        if not quoted:
            return None
        quoted_prefix = quoted[:self.prefix_window]
        quoted_lead = quoted[:self.contains_window]
        for message in cache.iter_newest_first(conversation_id):
            body = message.normalized_text
            if not body:
                continue
            if body.startswith(quoted_prefix):
                return message
            # Reverse direction only for fragments long enough to be distinctive.
            if len(body) >= self.min_fragment and quoted.startswith(body[:self.prefix_window]):
                return message
            if len(quoted_lead) >= self.min_fragment and quoted_lead in body:
                return message
            body_lead = body[:self.contains_window]
            if len(body_lead) >= self.min_fragment and body_lead in quoted:
                return message
        return None

    def _by_sender_and_text(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        if not hint.sender_name or not hint.quoted_text:
            return None
        lead = normalize_text(hint.quoted_text)[:self.sender_text_window]
        if not lead:
            return None
        for message in cache.iter_newest_first(conversation_id):
            if not _names_overlap(message.sender_display_name, hint.sender_name, self.sender_window):
                continue
            if lead in message.normalized_text:
                return message
        return None

    def _by_text_index(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        if not hint.quoted_text:
            return None
        return cache.find_by_normalized_text(conversation_id, hint.quoted_text)

    def _by_recent_sender(self, cache: MessageCache, conversation_id: str, hint: ReplyHint) -> CachedMessage | None:
        if not hint.sender_name:
            return None
        return cache.recent_by_sender(conversation_id, hint.sender_name)


def compose_fallback(hint: ReplyHint, body: str, max_quote_chars: int = 50) -> str:
    """Inline quote used when the original message cannot be referenced natively."""
    sender = (hint.sender_name or "").strip() or "user"
    quoted = (hint.quoted_text or "").strip()
    if not quoted:
        return f"↩ @{sender}\n\n{body}"
    snippet = quoted[:max_quote_chars]
    if len(quoted) > max_quote_chars:
        snippet += "..."
    return f"↩ @{sender}: {snippet}\n\n{body}"
