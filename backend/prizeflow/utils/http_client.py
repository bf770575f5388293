"""Async HTTP client with retry logic.

httpx + tenacity: bounded timeouts and exponential backoff for calls to
external services.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# Retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_MIN_WAIT = 1  # seconds
DEFAULT_MAX_WAIT = 10  # seconds

RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.NetworkError)


class AsyncHttpClient:
    """Async HTTP client with retry logic and connection pooling.

    Only timeouts and network errors are retried. Non-2xx responses raise
    httpx.HTTPStatusError immediately.

    Usage:
        async with AsyncHttpClient(base_url="https://svc") as client:
            data = await client.post_json("/matches/leaderboard", {...})
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_wait: float = DEFAULT_MIN_WAIT,
        max_wait: float = DEFAULT_MAX_WAIT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize HTTP client.

        Args:
            base_url: Prefix for relative request URLs
            timeout: Total request timeout in seconds
            connect_timeout: Connection timeout in seconds
            max_retries: Attempts per request (1 disables retrying)
            min_wait: Minimum backoff between attempts in seconds
            max_wait: Maximum backoff between attempts in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._max_retries = max(1, max_retries)
        self._min_wait = min_wait
        self._max_wait = max_wait
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AsyncHttpClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the underlying httpx client."""
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=1, min=self._min_wait, max=self._max_wait),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """POST request with retry.

        Args:
            url: Request URL (absolute or relative to base_url)
            **kwargs: Additional httpx request arguments

        Returns:
            HTTP response with a 2xx status
        """
        async for attempt in self._retrying():
            with attempt:
                response = await self.client.post(url, **kwargs)
                response.raise_for_status()
        return response

    async def post_json(self, url: str, data: dict[str, Any], **kwargs) -> Any:
        """POST request with JSON body returning parsed JSON."""
        response = await self.post(url, json=data, **kwargs)
        return response.json()
