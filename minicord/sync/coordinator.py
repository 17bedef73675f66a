"""Channel sync coordinator: initial load, live ingestion and backward pagination."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger

from minicord.sync.anchor import ScrollAnchor, Viewport
from minicord.sync.connection import ConnectionManager
from minicord.sync.errors import NotConnected, ProtocolError, StaleResult, SyncError, TransportError
from minicord.sync.events import ConnectionState, Message, PaginationCursor
from minicord.sync.history import DEFAULT_PAGE_SIZE, HistoryFetcher
from minicord.sync.store import MessageStore

Listener = Callable[[MessageStore], Any]


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class _Session:
    """Guard captured at request time; results for another session are stale."""
    generation: int
    channel_id: int | str


class SyncCoordinator:
    """
    Keeps one channel's MessageStore in sync with history and the live channel.

    Live frames that arrive while the initial page is loading are buffered
    and flushed through the idempotent store merge once the page is seeded,
    so nothing received between subscribe and seed is lost.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        fetcher: HistoryFetcher,
        anchor: ScrollAnchor | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.connection = connection
        self.fetcher = fetcher
        self.anchor = anchor or ScrollAnchor()
        self.page_size = HistoryFetcher.clamp_limit(page_size)

        self.state = SyncState.IDLE
        self.server_id: int | str | None = None
        self.store: MessageStore | None = None
        self.cursor: PaginationCursor | None = None
        self.page_request_in_flight = False
        self.last_error: SyncError | None = None

        self._generation = 0
        self._session: _Session | None = None
        self._pending_frames: list[Message] = []
        self._unsubscribers: list[Callable[[], None]] = []
        self._listeners: list[Listener] = []
        self._was_disconnected = False
        self._catch_up_task: asyncio.Task | None = None

    # ---- public state ------------------------------------------------------

    @property
    def channel_id(self) -> int | str | None:
        return self._session.channel_id if self._session else None

    @property
    def has_more(self) -> bool:
        return bool(self.cursor and self.cursor.has_more)

    def messages(self) -> list[Message]:
        return self.store.all() if self.store else []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(store)* after every store mutation. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ---- channel lifecycle -------------------------------------------------

    async def activate(self, channel_id: int | str, server_id: int | str | None = None) -> bool:
        """
        Switch to *channel_id*: reset, subscribe to live frames, load the newest page.

        Returns True once the store is seeded. On failure the coordinator stays
        in LOADING with ``last_error`` set and keeps buffering live frames;
        call ``retry()`` to fetch again without losing them.
        """
        self.deactivate()
        self._generation += 1
        session = _Session(self._generation, channel_id)
        self._session = session
        self.server_id = server_id
        self.store = MessageStore(channel_id)
        self.cursor = PaginationCursor(channel_id=channel_id)
        self.state = SyncState.LOADING
        self._subscribe_connection()
        logger.info("Activating channel {}", channel_id)
        return await self._load_initial(session)

    async def retry(self) -> bool:
        """Re-run a failed initial load for the active channel, keeping buffered frames."""
        session = self._session
        if session is None or self.state is not SyncState.LOADING or self.page_request_in_flight:
            return False
        logger.info("Retrying initial history load for channel {}", session.channel_id)
        return await self._load_initial(session)

    async def _load_initial(self, session: _Session) -> bool:
        channel_id = session.channel_id
        self.page_request_in_flight = True
        try:
            page = await self.fetcher.fetch_page(channel_id, None, self.page_size)
            self._ensure_current(session)
        except StaleResult:
            logger.debug("Discarding initial page for channel {}", channel_id)
            return False
        except SyncError as e:
            self.last_error = e
            logger.warning(
                "Initial history load for channel {} failed ({} live frames held): {}",
                channel_id, len(self._pending_frames), e,
            )
            return False
        finally:
            if self._session is session:
                self.page_request_in_flight = False

        store, cursor = self._current()
        store.seed(page)
        if page.received < self.page_size:
            cursor.exhaust()
        cursor.oldest_loaded_id = store.oldest.id if store.oldest else None

        pending, self._pending_frames = self._pending_frames, []
        added = store.merge(pending)
        self.state = SyncState.READY
        self.last_error = None
        logger.info(
            "Channel {} ready: {} messages ({} buffered live frames applied)",
            channel_id, len(store), added,
        )
        self._notify()
        return True

    def deactivate(self) -> None:
        """Drop the active channel; late results for it will be discarded."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._catch_up_task and not self._catch_up_task.done():
            self._catch_up_task.cancel()
        self._catch_up_task = None

        if self._session is not None:
            logger.info("Deactivating channel {}", self._session.channel_id)
        self._session = None
        self.store = None
        self.cursor = None
        self.server_id = None
        self.page_request_in_flight = False
        self.last_error = None
        self._pending_frames = []
        self._was_disconnected = False
        self.state = SyncState.IDLE

    # ---- backward pagination -----------------------------------------------

    async def load_older(self, viewport: Viewport | None = None) -> bool:
        """
        Visibility trigger: fetch the page before the oldest loaded message.

        Returns True if older messages were merged.
        """
        if (
            self.state is not SyncState.READY
            or self.page_request_in_flight
            or not self.has_more
            or self._session is None
        ):
            return False

        session = self._session
        store, cursor = self._current()
        self.page_request_in_flight = True

        record = None
        if viewport is not None:
            top_id = viewport.topmost_visible_id()
            if top_id is None:
                top_id = cursor.oldest_loaded_id
            record = self.anchor.capture(top_id, viewport.metrics())

        try:
            page = await self.fetcher.fetch_page(session.channel_id, cursor.oldest_loaded_id, self.page_size)
            self._ensure_current(session)
        except StaleResult:
            logger.debug("Discarding older page for channel {}", session.channel_id)
            return False
        except SyncError as e:
            self.last_error = e
            logger.warning("Loading older messages for channel {} failed: {}", session.channel_id, e)
            return False
        finally:
            if self._session is session:
                self.page_request_in_flight = False

        if not page:
            # An all-malformed page leaves nothing to advance the cursor with.
            if page.received:
                logger.warning(
                    "Channel {}: all {} older records were malformed; stopping pagination",
                    session.channel_id, page.received,
                )
            else:
                logger.info("Channel {} has no older history", session.channel_id)
            cursor.exhaust()
            return False

        if viewport is not None and record is not None:
            # Re-measure right before insertion; live appends may have grown the tail.
            record = self.anchor.capture(record.anchor_message_id, viewport.metrics())

        added = store.merge_older(page)
        if page.received < self.page_size:
            cursor.exhaust()
        cursor.oldest_loaded_id = store.oldest.id if store.oldest else None
        self.last_error = None
        self._notify()

        if viewport is not None and record is not None:
            viewport.scroll_to(self.anchor.restore(record, viewport.metrics()))
        logger.debug("Merged {} older messages into channel {}", added, session.channel_id)
        return added > 0

    # ---- outbound ----------------------------------------------------------

    async def send(self, content: str) -> None:
        """
        Send *content* to the active channel.

        The message shows up in the store only when the server echoes it.
        Raises NotConnected if the push connection is not open.
        """
        if self._session is None:
            raise NotConnected("no active channel")
        await self.connection.send({
            "content": content,
            "channel_id": self._session.channel_id,
            "server_id": self.server_id,
        })

    # ---- live channel ------------------------------------------------------

    def _subscribe_connection(self) -> None:
        self._unsubscribers = [
            self.connection.on("message", self._on_frame),
            self.connection.on("state", self._on_connection_state),
            self.connection.on("open", self._on_open),
        ]

    def _on_frame(self, frame: dict[str, Any]) -> None:
        session = self._session
        if session is None or str(frame.get("channel_id")) != str(session.channel_id):
            return
        try:
            message = Message.from_dict(frame)
        except ProtocolError as e:
            logger.warning("Dropping malformed frame for channel {}: {}", session.channel_id, e)
            return

        if self.state is SyncState.LOADING:
            self._pending_frames.append(message)
            return
        if self.store is not None and self.store.append(message):
            self._notify()

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.RECONNECTING:
            self._was_disconnected = True

    def _on_open(self) -> None:
        if not self._was_disconnected or self.state is not SyncState.READY:
            return
        self._was_disconnected = False
        if self._catch_up_task and not self._catch_up_task.done():
            return
        self._catch_up_task = asyncio.create_task(self.catch_up())

    async def catch_up(self) -> int:
        """Merge the newest page to fill frames missed while disconnected."""
        session = self._session
        if session is None or self.store is None or self.state is not SyncState.READY:
            return 0
        newest_before = self.store.newest

        try:
            page = await self.fetcher.fetch_page(session.channel_id, None, self.page_size)
            self._ensure_current(session)
        except StaleResult:
            return 0
        except TransportError as e:
            logger.warning("Catch-up for channel {} failed: {}", session.channel_id, e)
            return 0
        except SyncError as e:
            logger.warning("Catch-up for channel {} returned bad data: {}", session.channel_id, e)
            return 0

        if (
            newest_before is not None
            and page.received >= self.page_size
            and page[0].sort_key > newest_before.sort_key
        ):
            logger.warning("Catch-up for channel {} may have left a gap before {}", session.channel_id, page[0].id)

        added = self.store.merge(page)
        if added:
            logger.info("Catch-up recovered {} messages in channel {}", added, session.channel_id)
            self._notify()
        return added

    # ---- helpers -----------------------------------------------------------

    def _current(self) -> tuple[MessageStore, PaginationCursor]:
        if self.store is None or self.cursor is None:
            raise RuntimeError("no active channel")
        return self.store, self.cursor

    def _ensure_current(self, session: _Session) -> None:
        if self._session != session:
            raise StaleResult(f"result for channel {session.channel_id} arrived after a switch")

    def _notify(self) -> None:
        if self.store is None:
            return
        for listener in list(self._listeners):
            try:
                listener(self.store)
            except Exception:
                logger.exception("Store listener {!r} failed", listener)
