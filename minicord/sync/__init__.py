"""Message-stream synchronization core."""

from minicord.sync.anchor import ScrollAnchor, Viewport
from minicord.sync.connection import ConnectionManager
from minicord.sync.coordinator import SyncCoordinator, SyncState
from minicord.sync.errors import NotConnected, ProtocolError, StaleResult, SyncError, TransportError
from minicord.sync.events import (
    ConnectionState,
    ContainerMetrics,
    Message,
    PaginationCursor,
    ScrollAnchorRecord,
)
from minicord.sync.history import HistoryFetcher, HistoryPage
from minicord.sync.store import MessageStore

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ContainerMetrics",
    "HistoryFetcher",
    "HistoryPage",
    "Message",
    "MessageStore",
    "NotConnected",
    "PaginationCursor",
    "ProtocolError",
    "ScrollAnchor",
    "ScrollAnchorRecord",
    "StaleResult",
    "SyncCoordinator",
    "SyncError",
    "SyncState",
    "TransportError",
    "Viewport",
]
