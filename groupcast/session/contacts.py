"""Best-effort participant display names."""

from __future__ import annotations

import re
from typing import Any, Iterable

_NUMERIC_NAME_RE = re.compile(r"^\d{8,}$")
_DIGITS_ONLY_RE = re.compile(r"^\d+$")

UNKNOWN_SENDER = "Unknown"
USER_JID_SUFFIX = "@s.whatsapp.net"


def _bare_number(participant_id: str) -> str:
    return participant_id.split("@", 1)[0].split(":", 1)[0]


def _is_usable_name(name: str | None) -> bool:
    return bool(name) and not _NUMERIC_NAME_RE.match(name)


def obfuscate_participant(participant_id: str | None) -> str:
    """Friendly placeholder that shows only the last four digits."""
    if not participant_id:
        return UNKNOWN_SENDER
    number = _bare_number(participant_id)
    if not number:
        return UNKNOWN_SENDER
    return f"User ~{number[-4:]}"


def pick_contact_name(contact: dict[str, Any]) -> str | None:
    """Preferred name of a contact record: saved name, then notify, then verified name."""
    for key in ("name", "notify", "verifiedName", "verified_name"):
        value = contact.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class ContactNameMap:
    """
    Participant id -> best known display name.

    Only ever a cache: updated whenever contact or participant info arrives,
    never invalidated, stale entries are acceptable.
    """

    def __init__(self) -> None:
        self._names: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._names)

    def get(self, key: str) -> str | None:
        return self._names.get(key)

    def update(self, participant_id: str, name: str) -> None:
        """Store a name under the full id and the bare number."""
        if not participant_id or not name:
            return
        self._names[participant_id] = name
        number = _bare_number(participant_id)
        if number and number != participant_id:
            self._names[number] = name

    def update_from_contacts(self, contacts: Iterable[dict[str, Any]]) -> int:
        """Apply a contact sync batch. Returns how many contacts carried a name."""
        applied = 0
        for contact in contacts:
            participant_id = contact.get("id")
            name = pick_contact_name(contact)
            if participant_id and name:
                self.update(participant_id, name)
                applied += 1
        return applied

    def merge_participant(self, participant_id: str, name: str | None) -> bool:
        """Store a participant name only if none is known or the known one is numeric."""
        if not participant_id or not name:
            return False
        existing = self._names.get(participant_id)
        if existing and not _DIGITS_ONLY_RE.match(existing):
            return False
        self._names[participant_id] = name
        return True

    def resolve(self, participant_id: str | None, push_name: str | None = None) -> str:
        """Display name for a sender, falling back to an obfuscated id."""
        if _is_usable_name(push_name):
            return push_name
        if not participant_id:
            return push_name or UNKNOWN_SENDER
        number = _bare_number(participant_id)
        for key in (participant_id, number, f"{number}{USER_JID_SUFFIX}"):
            name = self._names.get(key)
            if _is_usable_name(name):
                return name
        return obfuscate_participant(participant_id)

    def clear(self) -> None:
        self._names.clear()
