"""Bounded per-conversation message cache."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from loguru import logger

from groupcast.utils.helpers import normalize_text

DEFAULT_CACHE_CAP = 200


@dataclass
class CachedMessage:
    """A message observed (or sent) on one conversation of one tenant."""

    message_id: str | None
    conversation_id: str
    sender_display_name: str
    body_text: str
    timestamp: int  # milliseconds since epoch
    from_self: bool = False
    participant_id: str | None = None
    raw: Any = field(default=None, repr=False, compare=False)  # client object needed for native quoting

    @property
    def normalized_text(self) -> str:
        return normalize_text(self.body_text)


class _ConversationLog:
    """Insertion-ordered buffer with an id index."""

    __slots__ = ("messages", "by_id")

    def __init__(self) -> None:
        self.messages: deque[CachedMessage] = deque()
        self.by_id: dict[str, CachedMessage] = {}

    def __len__(self) -> int:
        return len(self.messages)


class MessageCache:
    """
    Per-tenant cache of recent messages, one bounded log per conversation.

    - ``record`` appends and is idempotent by message id.
    - Each conversation keeps at most ``capacity`` messages; the oldest are
      dropped first.
    - A secondary index maps normalized body text to the cached messages
      carrying it, and is kept in step with eviction.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAP):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._logs: dict[str, _ConversationLog] = {}
        self._text_index: dict[str, list[CachedMessage]] = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record(self, message: CachedMessage) -> bool:
        """Append a message. Returns False if its id is already cached."""
        log = self._logs.setdefault(message.conversation_id, _ConversationLog())
        if message.message_id and message.message_id in log.by_id:
            return False
        log.messages.append(message)
        if message.message_id:
            log.by_id[message.message_id] = message
        self._index_text(message)
        while len(log) > self.capacity:
            self.evict_oldest(message.conversation_id)
        return True

    def evict_oldest(self, conversation_id: str) -> CachedMessage | None:
        """Drop the oldest message of a conversation."""
        log = self._logs.get(conversation_id)
        if not log or not log.messages:
            return None
        oldest = log.messages.popleft()
        if oldest.message_id and log.by_id.get(oldest.message_id) is oldest:
            del log.by_id[oldest.message_id]
        self._unindex_text(oldest)
        return oldest

    def merge_history(self, conversation_id: str, messages: Iterable[CachedMessage]) -> int:
        """
        Merge a batch of historical messages into a conversation.

        New ids are added, the log is re-sorted by timestamp and trimmed to
        capacity. Returns the number of messages added.
        """
        log = self._logs.setdefault(conversation_id, _ConversationLog())
        added = 0
        for message in messages:
            if message.message_id and message.message_id in log.by_id:
                continue
            log.messages.append(message)
            if message.message_id:
                log.by_id[message.message_id] = message
            self._index_text(message)
            added += 1
        if added:
            log.messages = deque(sorted(log.messages, key=lambda m: m.timestamp))
            while len(log) > self.capacity:
                self.evict_oldest(conversation_id)
        return added

    def clear(self) -> None:
        self._logs.clear()
        self._text_index.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_by_id(self, conversation_id: str, message_id: str) -> CachedMessage | None:
        log = self._logs.get(conversation_id)
        if not log or not message_id:
            return None
        return log.by_id.get(message_id)

    def recent_by_sender(self, conversation_id: str, sender_name: str) -> CachedMessage | None:
        """Most recent message whose sender name equals ``sender_name`` (case-insensitive)."""
        wanted = (sender_name or "").strip().lower()
        if not wanted:
            return None
        for message in self.iter_newest_first(conversation_id):
            if message.sender_display_name.strip().lower() == wanted:
                return message
        return None

    def find_by_normalized_text(self, conversation_id: str, text: str) -> CachedMessage | None:
        """Most recent message in the conversation whose normalized body equals ``text``'s."""
        key = normalize_text(text)
        if not key:
            return None
        for message in reversed(self._text_index.get(key, [])):
            if message.conversation_id == conversation_id:
                return message
        return None

    def all(self, conversation_id: str) -> list[CachedMessage]:
        """Messages of a conversation, oldest first."""
        log = self._logs.get(conversation_id)
        return list(log.messages) if log else []

    def iter_newest_first(self, conversation_id: str) -> Iterator[CachedMessage]:
        log = self._logs.get(conversation_id)
        if log:
            yield from reversed(log.messages)

    def size(self, conversation_id: str) -> int:
        log = self._logs.get(conversation_id)
        return len(log) if log else 0

    def conversations(self) -> list[str]:
        return list(self._logs.keys())

    # ------------------------------------------------------------------
    # Text index
    # ------------------------------------------------------------------

    def _index_text(self, message: CachedMessage) -> None:
        key = message.normalized_text
        if key:
            self._text_index.setdefault(key, []).append(message)

    def _unindex_text(self, message: CachedMessage) -> None:
        key = message.normalized_text
        bucket = self._text_index.get(key)
        if not bucket:
            return
        for i, candidate in enumerate(bucket):
            if candidate is message:
                del bucket[i]
                break
        else:
            logger.debug(f"Text index out of sync for message {message.message_id}")
        if not bucket:
            del self._text_index[key]
