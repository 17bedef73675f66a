"""Tests for the push connection manager using an in-memory transport."""

import asyncio
import json

import pytest

from minicord.sync.connection import ConnectionManager, backoff_delays, build_connect_url
from minicord.sync.errors import NotConnected, TransportError
from minicord.sync.events import ConnectionState
from minicord.utils.helpers import redact_url

_END = object()


class FakeSocket:
    """Async-iterable stand-in for a websocket client connection."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(_END)


class FakeConnector:
    """Hands out queued sockets; an exception in the queue fails that attempt."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        if not self.outcomes:
            raise OSError("no more sockets")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_manager(connector: FakeConnector) -> ConnectionManager:
    return ConnectionManager(
        reconnect_delay_s=0.01, max_reconnect_delay_s=0.05, connect_timeout_s=1.0, connector=connector,
    )


def test_connect_url_carries_token_and_channel() -> None:
    url = build_connect_url("ws://localhost:8080/ws", "abc", 7)
    assert url.startswith("ws://localhost:8080/ws?")
    assert "token=abc" in url
    assert "channel_id=7" in url


def test_redact_url_hides_token() -> None:
    redacted = redact_url(build_connect_url("ws://localhost:8080/ws", "supersecret", 7))
    assert "supersecret" not in redacted
    assert "channel_id=7" in redacted


def test_backoff_delays_grow_and_cap() -> None:
    delays = backoff_delays(0.5, 2.0, 3.0)
    assert [next(delays) for _ in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_unknown_event_kind_rejected() -> None:
    manager = ConnectionManager()
    with pytest.raises(ValueError):
        manager.on("typing", lambda: None)


@pytest.mark.asyncio
async def test_connect_opens_and_logs_states() -> None:
    socket = FakeSocket()
    connector = FakeConnector(socket)
    manager = make_manager(connector)
    states: list[ConnectionState] = []
    opened: list[bool] = []
    manager.on("state", states.append)
    manager.on("open", lambda: opened.append(True))

    handle = await manager.connect("ws://chat.test/ws", "tok", 7)

    assert handle is manager
    assert manager.state is ConnectionState.OPEN
    assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN]
    assert opened == [True]
    assert "token=tok" in connector.urls[0]
    assert "tok" not in manager.display_url
    await manager.close()


@pytest.mark.asyncio
async def test_frames_delivered_in_order_and_garbage_dropped() -> None:
    socket = FakeSocket()
    manager = make_manager(FakeConnector(socket))
    received: list[dict] = []
    manager.on("message", received.append)
    await manager.connect("ws://chat.test/ws", "tok")

    socket.inbox.put_nowait(json.dumps({"id": 1}))
    socket.inbox.put_nowait("not json{")
    socket.inbox.put_nowait(json.dumps([1, 2, 3]))
    socket.inbox.put_nowait(json.dumps({"id": 2}).encode())
    socket.inbox.put_nowait(json.dumps({"id": 3}))

    await wait_until(lambda: len(received) == 3)
    assert [f["id"] for f in received] == [1, 2, 3]
    assert manager.state is ConnectionState.OPEN
    await manager.close()


@pytest.mark.asyncio
async def test_failing_handler_is_isolated() -> None:
    socket = FakeSocket()
    manager = make_manager(FakeConnector(socket))
    received: list[dict] = []

    def broken(frame: dict) -> None:
        raise RuntimeError("boom")

    async def async_handler(frame: dict) -> None:
        received.append(frame)

    manager.on("message", broken)
    manager.on("message", async_handler)
    await manager.connect("ws://chat.test/ws", "tok")

    socket.inbox.put_nowait(json.dumps({"id": 1}))
    socket.inbox.put_nowait(json.dumps({"id": 2}))

    await wait_until(lambda: len(received) == 2)
    assert manager.is_open
    await manager.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    socket = FakeSocket()
    manager = make_manager(FakeConnector(socket))
    first: list[dict] = []
    second: list[dict] = []
    unsubscribe = manager.on("message", first.append)
    manager.on("message", second.append)
    await manager.connect("ws://chat.test/ws", "tok")

    unsubscribe()
    socket.inbox.put_nowait(json.dumps({"id": 1}))

    await wait_until(lambda: len(second) == 1)
    assert first == []
    await manager.close()


@pytest.mark.asyncio
async def test_send_before_open_raises_not_connected() -> None:
    manager = make_manager(FakeConnector(FakeSocket()))
    with pytest.raises(NotConnected):
        await manager.send({"content": "hi"})


@pytest.mark.asyncio
async def test_send_writes_json_frame() -> None:
    socket = FakeSocket()
    manager = make_manager(FakeConnector(socket))
    await manager.connect("ws://chat.test/ws", "tok")

    await manager.send({"content": "hi", "channel_id": 7, "server_id": 3})

    assert json.loads(socket.sent[0]) == {"content": "hi", "channel_id": 7, "server_id": 3}
    await manager.close()


@pytest.mark.asyncio
async def test_first_connect_failure_raises_and_closes() -> None:
    manager = make_manager(FakeConnector(ConnectionRefusedError("refused")))
    errors: list[Exception] = []
    manager.on("error", errors.append)

    with pytest.raises(TransportError):
        await manager.connect("ws://chat.test/ws", "tok")

    assert manager.state is ConnectionState.CLOSED
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_reconnects_after_unexpected_drop() -> None:
    first, second = FakeSocket(), FakeSocket()
    connector = FakeConnector(first, OSError("still down"), second)
    manager = make_manager(connector)
    states: list[ConnectionState] = []
    closes: list = []
    received: list[dict] = []
    manager.on("state", states.append)
    manager.on("close", closes.append)
    manager.on("message", received.append)
    await manager.connect("ws://chat.test/ws", "tok", 7)

    first.inbox.put_nowait(ConnectionResetError("reset by peer"))
    await wait_until(lambda: manager.state is ConnectionState.OPEN and len(connector.urls) == 3)

    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
        ConnectionState.RECONNECTING,
        ConnectionState.OPEN,
    ]
    assert isinstance(closes[0], ConnectionResetError)

    second.inbox.put_nowait(json.dumps({"id": 9}))
    await wait_until(lambda: len(received) == 1)
    await manager.close()


@pytest.mark.asyncio
async def test_close_stops_reconnecting() -> None:
    first = FakeSocket()
    connector = FakeConnector(first)
    manager = make_manager(connector)
    await manager.connect("ws://chat.test/ws", "tok")

    first.inbox.put_nowait(OSError("gone"))
    await wait_until(lambda: manager.state is ConnectionState.RECONNECTING)
    await manager.close()
    attempts = len(connector.urls)
    await asyncio.sleep(0.1)

    assert manager.state is ConnectionState.CLOSED
    assert len(connector.urls) == attempts


@pytest.mark.asyncio
async def test_explicit_close_does_not_reconnect() -> None:
    socket = FakeSocket()
    connector = FakeConnector(socket, FakeSocket())
    manager = make_manager(connector)
    closes: list = []
    manager.on("close", closes.append)
    await manager.connect("ws://chat.test/ws", "tok")

    await manager.close()
    await asyncio.sleep(0.05)

    assert socket.closed
    assert closes == [None]
    assert len(connector.urls) == 1
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_unexpected_receive_error_closes_and_reports() -> None:
    socket = FakeSocket()
    connector = FakeConnector(socket, FakeSocket())
    manager = make_manager(connector)
    errors: list[Exception] = []
    closes: list = []
    manager.on("error", errors.append)
    manager.on("close", closes.append)
    await manager.connect("ws://chat.test/ws", "tok")

    socket.inbox.put_nowait(RuntimeError("decoder blew up"))
    await wait_until(lambda: manager.state is ConnectionState.CLOSED)

    assert socket.closed
    assert len(errors) == 1 and isinstance(errors[0], TransportError)
    assert "decoder blew up" in str(errors[0])
    assert closes == [errors[0]]
    assert len(connector.urls) == 1
    with pytest.raises(NotConnected):
        await manager.send({"content": "hi"})

    await manager.close()
    assert closes == [errors[0]]


@pytest.mark.asyncio
async def test_second_connect_on_live_handle_rejected() -> None:
    manager = make_manager(FakeConnector(FakeSocket(), FakeSocket()))
    await manager.connect("ws://chat.test/ws", "tok")
    with pytest.raises(RuntimeError):
        await manager.connect("ws://chat.test/ws", "tok")
    await manager.close()
