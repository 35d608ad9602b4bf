"""
HTTP transfers from the replication source.

HttpFetcher is the narrow capability the Fetcher and the Remote State
Client depend on; HttpxFetcher implements it over a single pooled
``httpx.AsyncClient`` so every transfer of a batch reuses keep-alive
connections.

Invariants:
    - Every failure surfaces as TransportError with a categorized reason
    - Retry budgets are bounded; waits between attempts are cancellable
    - Downloads stream to the destination path given by the caller

How to change safely:
    - Keep pool limits >= download parallelism
    - Test new failure categories with httpx.MockTransport
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Protocol, TypeVar, runtime_checkable

import httpx

from ..config import SourceConfig
from ..errors import ShutdownRequested, TransportError
from ..runtime.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = {408, 429}


@runtime_checkable
class HttpFetcher(Protocol):
    """Capability for fetching documents and files over HTTP."""

    async def fetch_text(self, url: str) -> str:
        """GET a small text document.

        Raises:
            TransportError: If the request ultimately fails
        """
        ...

    async def download(self, url: str, dest: Path) -> None:
        """GET a file and stream it to ``dest``.

        Raises:
            TransportError: If the transfer ultimately fails
        """
        ...

    async def close(self) -> None:
        """Release pooled connections."""
        ...


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_error(exc: Exception) -> str:
    """Map a transfer exception to a failure category for the logs."""
    if isinstance(exc, httpx.HTTPStatusError):
        return "http_status"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        for cause in _exception_chain(exc):
            if isinstance(cause, socket.gaierror):
                return "dns"
            if isinstance(cause, ssl.SSLError):
                return "tls"
        message = str(exc).lower()
        if "name or service not known" in message or "nodename nor servname" in message:
            return "dns"
        if "ssl" in message or "certificate" in message:
            return "tls"
        return "connect"
    if isinstance(exc, httpx.RemoteProtocolError):
        message = str(exc).lower()
        if "without sending a response" in message or "disconnected" in message:
            return "empty_reply"
        if "complete message body" in message or "incomplete" in message:
            return "partial_transfer"
        return "protocol"
    if isinstance(exc, httpx.ReadError):
        return "receive"
    if isinstance(exc, httpx.WriteError):
        return "send"
    if isinstance(exc, OSError):
        return "write"
    return "transport"


def is_retryable(error: TransportError) -> bool:
    """Whether another attempt could succeed.

    Client errors other than 408/429 are final; everything else is retried.
    """
    if error.reason == "http_status" and error.status_code is not None:
        return error.status_code >= 500 or error.status_code in _RETRYABLE_STATUS
    return error.reason != "write"


class HttpxFetcher:
    """HttpFetcher backed by one pooled httpx.AsyncClient.

    Attributes:
        source: Source configuration (timeouts, keep-alive, retry budgets)
        parallelism: Maximum concurrent connections

    Example:
        >>> http = HttpxFetcher(SourceConfig(), parallelism=4, token=token)
        >>> text = await http.fetch_text("https://example.org/replication/minute/state.txt")
        >>> await http.close()
    """

    def __init__(
        self,
        source: SourceConfig,
        parallelism: int = 4,
        token: CancellationToken | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            source: Source configuration
            parallelism: Maximum concurrent connections in the pool
            token: Cancellation token interrupting retry waits
            transport: Optional transport (httpx.MockTransport in tests)
        """
        self.source = source
        self.parallelism = parallelism
        self.token = token or CancellationToken()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self.request_count = 0

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(300.0, connect=self.source.connect_timeout),
                    limits=httpx.Limits(
                        max_connections=self.parallelism,
                        max_keepalive_connections=self.parallelism,
                        keepalive_expiry=self.source.keepalive_seconds,
                    ),
                    follow_redirects=True,
                    transport=self._transport,
                )
        return self._client

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def fetch_text(self, url: str) -> str:
        async def attempt() -> str:
            client = await self._ensure_client()
            self.request_count += 1
            try:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
            except httpx.HTTPStatusError as e:
                raise TransportError(
                    "http_status", url, str(e.response.status_code), e.response.status_code
                ) from e
            except httpx.HTTPError as e:
                raise TransportError(classify_error(e), url, str(e)) from e

        return await self._with_retries(
            attempt, url, self.source.state_retries, self.source.state_retry_delay
        )

    async def download(self, url: str, dest: Path) -> None:
        async def attempt() -> None:
            client = await self._ensure_client()
            self.request_count += 1
            try:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(dest, "wb") as fh:
                        async for chunk in response.aiter_bytes():
                            fh.write(chunk)
            except httpx.HTTPStatusError as e:
                raise TransportError(
                    "http_status", url, str(e.response.status_code), e.response.status_code
                ) from e
            except httpx.HTTPError as e:
                raise TransportError(classify_error(e), url, str(e)) from e
            except OSError as e:
                raise TransportError("write", url, str(e)) from e

        await self._with_retries(
            attempt, url, self.source.download_retries, self.source.download_retry_delay
        )

    async def _with_retries(
        self,
        attempt: Callable[[], Awaitable[T]],
        url: str,
        attempts: int,
        delay: float,
    ) -> T:
        number = 1
        while True:
            self.token.raise_if_cancelled()
            try:
                return await attempt()
            except TransportError as e:
                if number >= attempts or not is_retryable(e):
                    raise
                logger.debug(
                    f"Transfer failed ({e.reason}), retry {number}/{attempts - 1}",
                    extra={"url": url, "reason": e.reason},
                )
                if await self.token.sleep(delay):
                    raise ShutdownRequested("Shutdown during transfer retry")
            number += 1
