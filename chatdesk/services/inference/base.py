import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import httpx
import structlog

from chatdesk.core.exceptions import ProviderError, ProviderErrorKind
from chatdesk.schemas.conversations import ChatMessage
from chatdesk.schemas.profiles import ModelParameters, parse_http_url

logger = structlog.get_logger()


@dataclass(frozen=True)
class AdapterTimeouts:
    """Seconds. ``request`` bounds each read/write; ``stream`` bounds a whole streamed transfer."""

    connect: float = 10.0
    request: float = 60.0
    stream: float = 300.0

    @property
    def httpx_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.request, connect=self.connect)


def validate_endpoint(endpoint: str) -> httpx.URL:
    """Parse an absolute http(s) URL or raise ``invalid_url``."""
    try:
        return parse_http_url(endpoint)
    except ValueError as e:
        raise ProviderError(ProviderErrorKind.INVALID_URL, details={"endpoint": endpoint}) from e


def error_for_status(response: httpx.Response) -> ProviderError | None:
    """Map a non-2xx response onto the provider error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return None
    if status == 401:
        return ProviderError(ProviderErrorKind.AUTHENTICATION_FAILED, status_code=status)
    if status == 429:
        return ProviderError(ProviderErrorKind.RATE_LIMITED, status_code=status)
    if status >= 500:
        return ProviderError(
            ProviderErrorKind.SERVER_ERROR,
            message=f"Server error ({status}). Please try again later.",
            status_code=status,
        )
    return ProviderError(ProviderErrorKind.UNKNOWN, status_code=status)


async def raise_for_status(response: httpx.Response, endpoint: str) -> None:
    error = error_for_status(response)
    if error is None:
        return
    # Streamed responses have not been read yet
    body = (await response.aread()).decode("utf-8", errors="replace")
    if body:
        error.details["body"] = body[:500]
    logger.warning(
        "provider_request_failed",
        endpoint=endpoint,
        status_code=response.status_code,
        kind=error.kind.value,
    )
    raise error


@contextmanager
def translate_http_errors(endpoint: str) -> Iterator[None]:
    """Re-raise httpx failures as ``ProviderError``."""
    try:
        yield
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
        raise ProviderError(ProviderErrorKind.INVALID_URL, details={"endpoint": endpoint}) from e
    except httpx.TimeoutException as e:
        logger.warning("provider_timeout", endpoint=endpoint, error=type(e).__name__)
        raise ProviderError(
            ProviderErrorKind.TRANSPORT_FAILURE,
            message="Request timed out. Please try again.",
            details={"endpoint": endpoint},
        ) from e
    except httpx.TransportError as e:
        logger.warning("provider_unreachable", endpoint=endpoint, error=str(e))
        raise ProviderError(ProviderErrorKind.TRANSPORT_FAILURE, details={"endpoint": endpoint}) from e


class StreamDeadline:
    """Total-transfer budget for a streamed response."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def _expired(self) -> ProviderError:
        return ProviderError(
            ProviderErrorKind.TRANSPORT_FAILURE,
            message=f"Streaming response exceeded {self.seconds:g}s.",
        )

    async def lines(self, response: httpx.Response) -> AsyncIterator[str]:
        """``response.aiter_lines()`` cut off at the deadline, even in the middle of a line."""
        lines = response.aiter_lines()
        while True:
            remaining = self._expires_at - time.monotonic()
            if remaining <= 0:
                raise self._expired()
            try:
                async with asyncio.timeout(remaining):
                    line = await anext(lines)
            except StopAsyncIteration:
                return
            except TimeoutError as e:
                raise self._expired() from e
            yield line


class ProviderAdapter(ABC):
    """One backend wire protocol behind the gateway's send/stream/probe contract."""

    def __init__(
        self,
        endpoint: str,
        model_name: str,
        http_client: httpx.AsyncClient | None = None,
        timeouts: AdapterTimeouts | None = None,
    ):
        self.endpoint = endpoint
        self.model_name = model_name
        self.timeouts = timeouts or AdapterTimeouts()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    @abstractmethod
    async def send(self, messages: list[ChatMessage], parameters: ModelParameters) -> ChatMessage:
        """Single-shot completion returning the assistant message."""
        ...

    @abstractmethod
    def stream(self, messages: list[ChatMessage], parameters: ModelParameters) -> AsyncIterator[str]:
        """Yield non-empty text chunks until the backend signals completion."""
        ...

    @abstractmethod
    async def probe(self) -> bool:
        """Check if the backend is reachable."""
        ...

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()
