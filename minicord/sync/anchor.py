"""Scroll anchoring around head insertions."""

from __future__ import annotations

from typing import Protocol

from minicord.sync.events import ContainerMetrics, MessageId, ScrollAnchorRecord


class Viewport(Protocol):
    """Rendering collaborator that owns the scrollable message list."""

    def metrics(self) -> ContainerMetrics: ...

    def topmost_visible_id(self) -> MessageId | None: ...

    def scroll_to(self, scroll_top: float) -> None: ...


class ScrollAnchor:
    """
    Keeps the topmost visible message fixed while older pages are prepended.

    ``capture`` must run before ``MessageStore.merge_older`` and ``restore``
    right after the container has re-measured, otherwise the list jumps.
    """

    def capture(self, anchor_message_id: MessageId | None, metrics: ContainerMetrics) -> ScrollAnchorRecord:
        return ScrollAnchorRecord(
            anchor_message_id=anchor_message_id,
            anchor_offset_from_viewport_top=metrics.scroll_top,
            content_height=metrics.content_height,
        )

    def restore(self, record: ScrollAnchorRecord, new_metrics: ContainerMetrics) -> float:
        """Return the scroll offset that puts the anchor back where it was."""
        grown = new_metrics.content_height - record.content_height
        return max(0.0, grown + record.anchor_offset_from_viewport_top)
