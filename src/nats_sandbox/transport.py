"""HTTP transport used to download nats-server release archives."""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


@runtime_checkable
class DownloadTransport(Protocol):
    """Fetches the bytes behind a URL.

    Implementations raise :class:`httpx.HTTPStatusError` for HTTP error
    responses so a 404 can be told apart from other failures. Cancelling the
    consuming task must abort the transfer.
    """

    def stream(self, url: str) -> AsyncGenerator[bytes, None]:
        ...


class HttpxTransport:
    """Default transport backed by :class:`httpx.AsyncClient`.

    Pass a pre-configured client to route downloads through proxies or add
    authentication. Clients created here are closed after each download;
    caller-supplied clients are left open.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 60.0,
    ) -> None:
        self._client = client
        self._timeout = timeout

    async def stream(self, url: str) -> AsyncGenerator[bytes, None]:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
        )
        try:
            logger.debug("GET %s", url)
            async with client.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    yield chunk
        finally:
            if owns_client:
                await client.aclose()
