"""Data types shared by the sync components."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from minicord.sync.errors import ProtocolError

MessageId = int | str

# The server may send nanosecond fractions; datetime takes six digits.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if isinstance(value, bool):
        raise ProtocolError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _EPOCH + timedelta(milliseconds=value)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = _FRACTION_RE.sub(r"\1", value.strip().replace("Z", "+00:00"))
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ProtocolError(f"invalid timestamp: {value!r}") from e
    else:
        raise ProtocolError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ProtocolError(f"message is missing '{key}'")
    return value


@dataclass(frozen=True)
class Message:
    """A chat message as delivered by history or the live channel."""
    id: MessageId
    channel_id: int | str
    user_id: int | str
    content: str
    created_at: datetime
    server_id: int | str | None = None
    user_name: str = ""

    @property
    def sort_key(self) -> tuple[datetime, MessageId]:
        return (self.created_at, self.id)

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Build a message from a wire record, raising ProtocolError if it is malformed."""
        if not isinstance(data, dict):
            raise ProtocolError(f"expected a JSON object, got {type(data).__name__}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ProtocolError("message content must be a string")
        user_name = data.get("user_name")
        return cls(
            id=_require(data, "id"),
            channel_id=_require(data, "channel_id"),
            user_id=_require(data, "user_id"),
            content=content,
            created_at=parse_timestamp(data.get("created_at")),
            server_id=data.get("server_id"),
            user_name=user_name if isinstance(user_name, str) else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "server_id": self.server_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


class ConnectionState(str, Enum):
    """Lifecycle of the push connection."""
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class PaginationCursor:
    """Backward-pagination position for one channel session."""
    channel_id: int | str
    oldest_loaded_id: MessageId | None = None
    has_more: bool = True

    def exhaust(self) -> None:
        # has_more never flips back to True within a session
        self.has_more = False


@dataclass(frozen=True)
class ContainerMetrics:
    """Geometry of the scrollable message container."""
    content_height: float
    scroll_top: float
    viewport_height: float = 0.0


@dataclass(frozen=True)
class ScrollAnchorRecord:
    """Anchor captured before a head insertion and consumed right after it."""
    anchor_message_id: MessageId | None
    anchor_offset_from_viewport_top: float
    content_height: float
