"""Ordered, de-duplicated message store for the active channel."""

from __future__ import annotations

import bisect
from typing import Iterable, Iterator

from minicord.sync.events import Message, MessageId


class MessageStore:
    """
    Messages of one channel session, ascending by (created_at, id).

    History pages and live frames arrive from independent sources, so every
    mutation re-asserts ordering and id uniqueness instead of trusting the
    caller.
    """

    def __init__(self, channel_id: int | str | None = None):
        self.channel_id = channel_id
        self._messages: list[Message] = []
        self._keys: list[tuple] = []
        self._by_id: dict[MessageId, Message] = {}

    # ---- mutations ---------------------------------------------------------

    def seed(self, messages: Iterable[Message]) -> None:
        """Replace the contents with *messages*."""
        self._messages, self._keys, self._by_id = [], [], {}
        self.merge(messages)

    def merge_older(self, messages: Iterable[Message]) -> int:
        """Prepend a page of older messages. Returns the number added."""
        batch = self._fresh_sorted(messages)
        if not batch:
            return 0
        if self._keys and batch[-1].sort_key >= self._keys[0]:
            # Overlaps the current head; do a full ordered merge instead.
            return self._insert_all(batch)
        self._messages[:0] = batch
        self._keys[:0] = [m.sort_key for m in batch]
        self._by_id.update((m.id, m) for m in batch)
        return len(batch)

    def append(self, message: Message) -> bool:
        """Add a live message. No-op (returns False) if its id is already present."""
        if message.id in self._by_id:
            return False
        key = message.sort_key
        if not self._keys or key > self._keys[-1]:
            self._messages.append(message)
            self._keys.append(key)
        else:
            idx = bisect.bisect_right(self._keys, key)
            self._messages.insert(idx, message)
            self._keys.insert(idx, key)
        self._by_id[message.id] = message
        return True

    def merge(self, messages: Iterable[Message]) -> int:
        """Ordered upsert of an arbitrary batch. Returns the number added."""
        return self._insert_all(self._fresh_sorted(messages))

    def clear(self) -> None:
        self._messages, self._keys, self._by_id = [], [], {}

    # ---- queries -----------------------------------------------------------

    def all(self) -> list[Message]:
        return list(self._messages)

    def ids(self) -> list[MessageId]:
        return [m.id for m in self._messages]

    def get(self, message_id: MessageId) -> Message | None:
        return self._by_id.get(message_id)

    @property
    def oldest(self) -> Message | None:
        return self._messages[0] if self._messages else None

    @property
    def newest(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    # ---- internals ---------------------------------------------------------

    def _fresh_sorted(self, messages: Iterable[Message]) -> list[Message]:
        """Drop ids already stored or repeated within the batch, then sort."""
        seen: dict[MessageId, Message] = {}
        for m in messages:
            if m.id not in self._by_id and m.id not in seen:
                seen[m.id] = m
        return sorted(seen.values(), key=lambda m: m.sort_key)

    def _insert_all(self, batch: list[Message]) -> int:
        for m in batch:
            self.append(m)
        return len(batch)
