"""Paginated retrieval of a channel's message history over HTTP."""

from __future__ import annotations

from typing import Any, Iterable

import httpx
from loguru import logger

from minicord.sync.errors import ProtocolError, TransportError
from minicord.sync.events import Message, MessageId

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class HistoryPage(list):
    """
    One page of messages, ascending.

    ``received`` is the number of rows the server returned, malformed rows
    included. Whether more history exists is judged by it, not by ``len()``.
    """

    def __init__(self, messages: Iterable[Message] = (), received: int | None = None):
        super().__init__(messages)
        self.received = len(self) if received is None else received


class HistoryFetcher:
    """Fetch pages from ``GET /messages/{channel_id}?limit=&before=``."""

    def __init__(
        self,
        api_url: str,
        token: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url.strip().rstrip("/")
        self._token = token
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "HistoryFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    @staticmethod
    def clamp_limit(limit: int) -> int:
        """Clamp to the range the server honours; outside it the server falls back to 50."""
        return max(1, min(MAX_PAGE_SIZE, int(limit)))

    async def fetch_page(
        self,
        channel_id: int | str,
        before_id: MessageId | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> HistoryPage:
        """
        Fetch up to *limit* messages older than *before_id* (newest page if omitted).

        Returns:
            Messages ascending by id; empty when no further history exists.
            Malformed rows are dropped but still counted in ``received``.

        Raises:
            TransportError: network failure, timeout or non-2xx response.
            ProtocolError: the body is not a JSON list.
        """
        params: dict[str, Any] = {"limit": self.clamp_limit(limit)}
        if before_id is not None:
            params["before"] = str(before_id)
        url = f"{self.api_url}/messages/{channel_id}"

        try:
            response = await self._http.get(url, params=params, headers={"Authorization": self._token})
        except httpx.TimeoutException as e:
            raise TransportError(f"history request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"history request failed: {e}") from e

        if not response.is_success:
            raise TransportError(
                f"history HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            records = response.json()
        except ValueError as e:
            raise ProtocolError("history response is not valid JSON") from e
        if not isinstance(records, list):
            raise ProtocolError(f"history response must be a list, got {type(records).__name__}")

        messages: list[Message] = []
        for record in reversed(records):
            try:
                messages.append(Message.from_dict(record))
            except ProtocolError as e:
                logger.warning("Dropping malformed history record in channel {}: {}", channel_id, e)
        logger.debug(
            "Fetched {}/{} messages for channel {} (before={})",
            len(messages), len(records), channel_id, before_id,
        )
        return HistoryPage(messages, received=len(records))
