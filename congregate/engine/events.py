"""
congregate.engine.events — ChangeEvent and ChangeKind
======================================================

The envelope carried by the push channel.  Every store write that other
clients may care about is announced as a :class:`ChangeEvent` naming the
entity it touched, so subscribers can reconcile exactly that slice of their
cache instead of reloading a whole view.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["ChangeKind", "ChangeEvent"]


class ChangeKind(enum.StrEnum):
    """What kind of entity changed."""
    REACTION = "reaction_changed"
    MESSAGE = "message_changed"
    PIN = "pin_changed"
    ANNOUNCEMENT = "announcement_changed"
    RECEIPT = "receipt_changed"
    EVENT = "event_changed"
    RSVP = "rsvp_changed"
    MEMBERSHIP = "membership_changed"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Identity of one changed entity, as delivered by the push channel."""

    kind: ChangeKind
    group_id: str | None = None
    message_id: str | None = None
    announcement_id: str | None = None
    event_id: str | None = None
    user_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind.value}
        for key in ("group_id", "message_id", "announcement_id", "event_id", "user_id"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ChangeEvent:
        """Parse a decoded NOTIFY payload.

        Raises
        ------
        ValueError
            If ``type`` is missing or not a known :class:`ChangeKind`.
        """
        kind = ChangeKind(data["type"]) if "type" in data else None
        if kind is None:
            raise ValueError("Change payload missing 'type'")
        occurred = data.get("occurred_at")
        return cls(
            kind=kind,
            group_id=data.get("group_id"),
            message_id=data.get("message_id"),
            announcement_id=data.get("announcement_id"),
            event_id=data.get("event_id"),
            user_id=data.get("user_id"),
            occurred_at=(
                datetime.fromisoformat(occurred) if occurred else datetime.now(UTC)
            ),
        )
