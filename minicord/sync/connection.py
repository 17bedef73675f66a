"""Persistent push connection with automatic reconnection."""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Iterator

import httpx
import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from minicord.sync.errors import NotConnected, TransportError
from minicord.sync.events import ConnectionState
from minicord.utils.helpers import redact_url

EVENT_KINDS = ("open", "message", "error", "close", "state")

Handler = Callable[..., Any]
Connector = Callable[[str], Awaitable[Any]]


def build_connect_url(endpoint: str, credentials: str, channel_id: int | str | None = None) -> str:
    """Put the credential (and optional channel) in the query string; the transport has no headers at connect time."""
    params: dict[str, str] = {"token": credentials}
    if channel_id is not None:
        params["channel_id"] = str(channel_id)
    return str(httpx.URL(endpoint).copy_merge_params(params))


def backoff_delays(initial: float, factor: float, maximum: float) -> Iterator[float]:
    """Yield reconnect delays: initial, initial*factor, ... capped at maximum."""
    delay = max(0.0, initial)
    while True:
        yield min(delay, maximum)
        delay = min(maximum, delay * factor)


class ConnectionManager:
    """
    Owns one websocket transport and fans inbound frames out to subscribers.

    Event kinds and handler arguments:
        open()                 transport is open
        message(frame: dict)   decoded inbound JSON object
        error(exc)             transport failure
        close(reason)          transport closed (reason is None on explicit close)
        state(new_state)       every ConnectionState transition

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and does not affect the connection or other handlers.
    """

    def __init__(
        self,
        reconnect_delay_s: float = 0.5,
        max_reconnect_delay_s: float = 30.0,
        backoff_factor: float = 2.0,
        connect_timeout_s: float = 10.0,
        connector: Connector | None = None,
    ):
        self.reconnect_delay_s = reconnect_delay_s
        self.max_reconnect_delay_s = max_reconnect_delay_s
        self.backoff_factor = backoff_factor
        self.connect_timeout_s = connect_timeout_s
        self._connector: Connector = connector or websockets.connect
        self._handlers: dict[str, list[Handler]] = {kind: [] for kind in EVENT_KINDS}
        self._state = ConnectionState.CLOSED
        self._url: str | None = None
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def display_url(self) -> str:
        return redact_url(self._url) if self._url else ""

    # ---- subscriptions -----------------------------------------------------

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event*; returns a callable that unsubscribes it."""
        if event not in self._handlers:
            raise ValueError(f"unknown event kind '{event}', expected one of {EVENT_KINDS}")
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    # ---- lifecycle ---------------------------------------------------------

    async def connect(
        self, endpoint: str, credentials: str, channel_id: int | str | None = None,
    ) -> "ConnectionManager":
        """
        Open the transport and start the receive loop.

        Raises:
            TransportError: the first attempt failed; state is Closed again.
            RuntimeError: this handle already owns a live transport.
        """
        if self._task and not self._task.done():
            raise RuntimeError("connection already active; close() it first")

        self._url = build_connect_url(endpoint, credentials, channel_id)
        self._closing = False
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._open_transport()
        except TransportError as e:
            logger.error("Failed to connect to {}: {}", self.display_url, e)
            await self._set_state(ConnectionState.CLOSED)
            await self._emit("error", e)
            raise

        await self._on_opened(ws)
        self._task = asyncio.create_task(self._run(ws))
        return self

    async def close(self) -> None:
        """Close the transport and stop reconnecting."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Error while closing push connection: {}", e)

        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self._state is not ConnectionState.CLOSED:
            await self._set_state(ConnectionState.CLOSED)
            await self._emit("close", None)

    async def send(self, payload: dict[str, Any]) -> None:
        """Send one JSON frame. Raises NotConnected unless the connection is open."""
        ws = self._ws
        if self._state is not ConnectionState.OPEN or ws is None:
            raise NotConnected(f"cannot send while connection is {self._state.value}")
        try:
            await ws.send(json.dumps(payload, ensure_ascii=False))
        except (ConnectionClosed, OSError) as e:
            raise NotConnected("connection dropped while sending") from e

    # ---- transport loop ----------------------------------------------------

    async def _open_transport(self) -> Any:
        if self._url is None:
            raise RuntimeError("connect() has not been called")
        try:
            return await asyncio.wait_for(self._connector(self._url), timeout=self.connect_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"connect timed out after {self.connect_timeout_s:.1f}s") from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"connect failed: {e}") from e

    async def _on_opened(self, ws: Any) -> None:
        self._ws = ws
        await self._set_state(ConnectionState.OPEN)
        await self._emit("open")

    async def _run(self, ws: Any) -> None:
        try:
            await self._run_loop(ws)
        except Exception as e:
            logger.exception("Push connection receive loop failed")
            await self._fail(TransportError(f"receive loop failed: {e}"))

    async def _fail(self, error: TransportError) -> None:
        """Tear down after an unexpected error; no reconnect is attempted."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Error while closing push connection: {}", e)
        await self._set_state(ConnectionState.CLOSED)
        await self._emit("error", error)
        await self._emit("close", error)

    async def _run_loop(self, ws: Any) -> None:
        while True:
            reason = await self._pump(ws)
            self._ws = None
            if self._closing:
                return

            logger.warning("Push connection lost: {}", reason or "closed by server")
            await self._emit("close", reason)
            await self._set_state(ConnectionState.RECONNECTING)

            ws = await self._reconnect()
            if ws is None:
                return
            await self._on_opened(ws)

    async def _reconnect(self) -> Any:
        delays = backoff_delays(self.reconnect_delay_s, self.backoff_factor, self.max_reconnect_delay_s)
        attempt = 0
        while not self._closing:
            delay = next(delays)
            attempt += 1
            logger.info("Reconnecting to {} in {:.1f}s (attempt {})", self.display_url, delay, attempt)
            await asyncio.sleep(delay)
            if self._closing:
                break
            try:
                ws = await self._open_transport()
            except TransportError as e:
                logger.warning("Reconnect attempt {} failed: {}", attempt, e)
                await self._emit("error", e)
                continue
            if self._closing:
                await ws.close()
                break
            return ws
        return None

    async def _pump(self, ws: Any) -> Exception | None:
        """Deliver frames until the transport ends; return the reason, if any."""
        try:
            async for raw in ws:
                await self._deliver(raw)
        except (ConnectionClosed, OSError) as e:
            return e
        return None

    async def _deliver(self, raw: str | bytes) -> None:
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
            frame = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Dropping unparseable frame ({}): {!r}", e, raw[:200])
            return
        if not isinstance(frame, dict):
            logger.warning("Dropping non-object frame: {!r}", frame)
            return
        await self._emit("message", frame)

    # ---- dispatch ----------------------------------------------------------

    async def _set_state(self, new_state: ConnectionState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        logger.info("Push connection {} -> {}", old.value, new_state.value)
        await self._emit("state", new_state)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler {!r} for '{}' event failed", handler, event)
