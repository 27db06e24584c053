"""Shared async HTTP client for the compak registry protocol.

Provides a thin wrapper around ``httpx.AsyncClient`` with standardised
timeouts, user-agent headers, status-code mapping and retries. Every HTTP
registry call goes through this module so that network behaviour is
consistent and testable (tests inject an ``httpx.MockTransport``).

Status mapping:

- 404 raises ``NotFoundError``.
- 408, 429 and 5xx, timeouts and connection errors raise
  ``UnavailableError`` and are retried with exponential backoff.
- Any other 4xx raises ``RegistryError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from compak import __version__
from compak.exceptions import NotFoundError, RegistryError, UnavailableError

logger = logging.getLogger(__name__)

# Timeout for all registry HTTP requests (seconds).
DEFAULT_TIMEOUT: float = 30.0

# User-Agent sent with every request.
USER_AGENT: str = f"compak/{__version__}"

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class RegistryHttpClient:
    """Async HTTP client bound to one registry base URL.

    Args:
        base_url: Registry root, e.g. ``https://registry.example.com/api``.
        timeout: Per-request timeout in seconds.
        max_retries: Retries after the first attempt for transient failures.
        backoff_base: Delay before the first retry; doubled on each retry.
        transport: Optional ``httpx`` transport (used by tests).
        sleep: Coroutine used to wait between retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url + "/",
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        package: str | None = None,
        version: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            package: Package the request concerns (error context).
            version: Version the request concerns (error context).
            **kwargs: Passed through to ``httpx.AsyncClient.request``.

        Returns:
            The successful (2xx) response.

        Raises:
            NotFoundError: On 404.
            UnavailableError: When the retry budget is exhausted.
            RegistryError: On any other client error.
        """
        attempt = 0
        while True:
            try:
                return await self._send(method, path, package, version, **kwargs)
            except UnavailableError as exc:
                if attempt >= self.max_retries:
                    logger.warning(
                        "Giving up on %s %s after %d attempt(s)",
                        method, path, attempt + 1,
                    )
                    raise
                delay = self.backoff_base * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Registry unavailable (%s); retry %d/%d in %.2fs",
                    exc, attempt, self.max_retries, delay,
                )
                await self._sleep(delay)

    async def _send(
        self,
        method: str,
        path: str,
        package: str | None,
        version: str | None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = path.lstrip("/")
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise UnavailableError(f"timeout requesting {url}", package, version) from exc
        except httpx.RequestError as exc:
            raise UnavailableError(f"request error for {url}: {exc}", package, version) from exc

        status = resp.status_code
        if status == 404:
            raise NotFoundError(f"not found: {url}", package, version)
        if status in _RETRYABLE_STATUS:
            raise UnavailableError(f"HTTP {status} from {url}", package, version)
        if status >= 400:
            raise RegistryError(
                f"HTTP {status} from {url}: {resp.text[:200]}", package, version
            )
        return resp

    async def get_json(self, path: str, **kwargs: Any) -> Any:
        """GET *path* and decode the JSON body."""
        resp = await self.request("GET", path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise RegistryError(
                f"invalid JSON from {path}: {exc}",
                kwargs.get("package"),
                kwargs.get("version"),
            ) from exc

    async def get_bytes(self, path: str, **kwargs: Any) -> httpx.Response:
        """GET *path*; the caller reads ``content`` and headers."""
        return await self.request("GET", path, **kwargs)
