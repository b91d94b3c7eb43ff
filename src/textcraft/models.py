"""Conversation and message data types with JSON-friendly serialization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 20
TITLE_ELLIPSIS = "..."


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(UTC)


class MessageStatus(str, Enum):
    """Lifecycle of an outgoing assistant message."""

    LOADING = "loading"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.ERROR)

    def can_transition_to(self, new_status: MessageStatus) -> bool:
        """Return True when ``new_status`` is a legal next state."""
        return new_status in _TRANSITIONS[self]


_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.LOADING: frozenset(
        {MessageStatus.STREAMING, MessageStatus.COMPLETED, MessageStatus.ERROR}
    ),
    MessageStatus.STREAMING: frozenset(
        {MessageStatus.STREAMING, MessageStatus.COMPLETED, MessageStatus.ERROR}
    ),
    MessageStatus.COMPLETED: frozenset(),
    MessageStatus.ERROR: frozenset(),
}


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError("Timestamp must be an ISO-8601 string.")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_id(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str):
        raise ValueError("Identifier must be a UUID string.")
    return UUID(value)


@dataclass
class Message:
    """A single chat message; content and status mutate while streaming."""

    content: str
    is_user: bool
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utc_now)
    status: MessageStatus = MessageStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "content": self.content,
            "isUser": self.is_user,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        """Build a message from persisted data; raises ValueError/KeyError/TypeError."""
        content = payload["content"]
        is_user = payload["isUser"]
        if not isinstance(content, str) or not isinstance(is_user, bool):
            raise ValueError("Message content/isUser have unexpected types.")
        return cls(
            id=_parse_id(payload["id"]),
            content=content,
            is_user=is_user,
            timestamp=_parse_timestamp(payload["timestamp"]),
            # Older payloads did not record status.
            status=MessageStatus(payload.get("status", MessageStatus.COMPLETED.value)),
        )


@dataclass
class Conversation:
    """A titled, ordered sequence of messages with a last-activity timestamp."""

    id: UUID = field(default_factory=uuid4)
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def user_message_count(self) -> int:
        return sum(1 for message in self.messages if message.is_user)

    def find_message(self, message_id: UUID) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def update_title(self) -> None:
        """Derive the title from the first non-empty user message, if any."""
        first = next((m for m in self.messages if m.is_user), None)
        if first is None or not first.content:
            return
        self.title = derive_title(first.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Conversation:
        title = payload["title"]
        raw_messages = payload["messages"]
        if not isinstance(title, str) or not isinstance(raw_messages, list):
            raise ValueError("Conversation title/messages have unexpected types.")
        return cls(
            id=_parse_id(payload["id"]),
            title=title,
            messages=[Message.from_dict(item) for item in raw_messages],
            timestamp=_parse_timestamp(payload["timestamp"]),
        )


def derive_title(content: str) -> str:
    """Truncate ``content`` to the title length, marking truncation with an ellipsis."""
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return content


def conversations_to_payload(conversations: list[Conversation]) -> list[dict[str, Any]]:
    return [conversation.to_dict() for conversation in conversations]


def conversations_from_payload(payload: Any) -> list[Conversation]:
    """Decode a persisted collection; raises ValueError when the shape is wrong."""
    if not isinstance(payload, list):
        raise ValueError("Persisted conversations must be a JSON array.")
    try:
        return [Conversation.from_dict(item) for item in payload]
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Persisted conversation is malformed: {exc}") from exc
