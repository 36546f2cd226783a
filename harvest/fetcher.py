"""
Facility Harvester - Retrying Fetcher

Wraps a single network operation with bounded retries and exponential
backoff. Every processor goes through this instead of writing its own retry
loop.

Failures are classified before anything else happens:
    - transient (timeouts, connection resets, 408/429/5xx): retried
    - permanent (other 4xx, PermanentItemError): returned at once
    - anything else (parsing bugs, KeyError, ...): raised unchanged

Usage:
    fetcher = RetryingFetcher(RetryPolicy(max_attempts=3), client=client)

    result = await fetcher.execute(lambda: client.get(url), "facility page")
    if result.ok:
        html = result.value.text

    # Or let failures raise FetchFailedError
    html = await fetcher.get_text(url)
"""

import asyncio
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from config.logging import get_logger
from config.settings import Settings
from harvest.errors import (
    PermanentItemError,
    ResourceUnavailableError,
    TransientFetchError,
)
from harvest.models import FetchResult, RetryAttempt


logger = get_logger(__name__)

T = TypeVar("T")

# Status codes worth another try; everything else in 4xx is the caller's problem
RETRYABLE_STATUS_CODES = frozenset({408, 429})

# Phrases portals put on the HTML page they serve instead of a missing report
UNAVAILABLE_PHRASES = (
    b"not currently available",
    b"not available in electronic format",
)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


class ErrorKind(str, Enum):
    """How the retry loop treats an exception."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_error(error: BaseException) -> Optional[ErrorKind]:
    """
    Classify an exception raised by a network operation.

    Args:
        error: Exception from the wrapped operation

    Returns:
        TRANSIENT or PERMANENT for network-class errors, None for errors
        that must propagate to the caller
    """
    if isinstance(error, TransientFetchError):
        return ErrorKind.TRANSIENT
    if isinstance(error, PermanentItemError):
        return ErrorKind.PERMANENT
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        if code in RETRYABLE_STATUS_CODES or code >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    # TimeoutException is a TransportError; both cover connect/read/reset
    if isinstance(error, httpx.TransportError):
        return ErrorKind.TRANSIENT
    return None


def _retry_after_seconds(error: BaseException) -> Optional[float]:
    """Seconds requested by a Retry-After header, if the error carries one."""
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    value = error.response.headers.get("Retry-After", "").strip()
    if value.isdigit():
        return float(value)
    return None


# =============================================================================
# Retry Policy
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.harvest_max_attempts,
            base_delay=settings.harvest_backoff_base_seconds,
            max_delay=settings.harvest_backoff_ceiling_seconds,
        )


# =============================================================================
# HTTP Client
# =============================================================================

def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """
    Build the shared HTTP client for a run.

    Args:
        settings: Application settings (timeout, user agent, pool size)

    Returns:
        Configured httpx.AsyncClient; the caller closes it
    """
    timeout = settings.request_timeout_seconds
    return httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent, **DEFAULT_HEADERS},
        timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=settings.request_max_connections),
    )


# =============================================================================
# Retrying Fetcher
# =============================================================================

class RetryingFetcher:
    """
    Executes network operations under a RetryPolicy.

    ``execute`` never raises for network-class errors; it returns a
    FetchResult. Parsing-class errors from the operation propagate as-is.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the fetcher.

        Args:
            policy: Retry policy (defaults to 3 attempts, 1s base, 5s ceiling)
            client: HTTP client used by the get/download helpers
            sleep: Coroutine used to wait between attempts
        """
        self.policy = policy or RetryPolicy()
        self.client = client
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "",
    ) -> FetchResult[T]:
        """
        Run an operation with retries.

        Args:
            operation: Zero-argument callable returning an awaitable
            description: Short label used in logs and failure messages

        Returns:
            FetchResult with the value, or the last error and attempt history
        """
        attempts: list[RetryAttempt] = []

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                value = await operation()
                if attempts:
                    logger.info(
                        f"Succeeded after {attempt} attempts: {description}",
                        extra={"attempt": attempt},
                    )
                return FetchResult(value=value, attempts=attempts, description=description)

            except Exception as e:
                kind = classify_error(e)
                if kind is None:
                    raise

                if kind == ErrorKind.PERMANENT:
                    attempts.append(RetryAttempt(attempt, 0.0, e))
                    logger.warning(
                        f"Permanent failure: {description}",
                        extra={"attempt": attempt, "error": f"{type(e).__name__}: {e}"},
                    )
                    return FetchResult(
                        error=e,
                        attempts=attempts,
                        permanent=True,
                        description=description,
                    )

                if attempt == self.policy.max_attempts:
                    attempts.append(RetryAttempt(attempt, 0.0, e))
                    break

                delay = self.policy.delay_for(attempt)
                retry_after = _retry_after_seconds(e)
                if retry_after is not None:
                    delay = min(max(delay, retry_after), self.policy.max_delay)

                attempts.append(RetryAttempt(attempt, delay, e))
                logger.warning(
                    f"Attempt {attempt}/{self.policy.max_attempts} failed, retrying: {description}",
                    extra={
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": f"{type(e).__name__}: {e}",
                    },
                )
                await self._sleep(delay)

        last_error = attempts[-1].last_error
        logger.error(
            f"Giving up after {self.policy.max_attempts} attempts: {description}",
            extra={"error": f"{type(last_error).__name__}: {last_error}"},
        )
        return FetchResult(error=last_error, attempts=attempts, description=description)

    # -------------------------------------------------------------------------
    # HTTP Helpers
    # -------------------------------------------------------------------------

    def _require_client(self) -> httpx.AsyncClient:
        if self.client is None:
            raise RuntimeError("RetryingFetcher has no HTTP client configured")
        return self.client

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        response = await self._require_client().get(url, **kwargs)
        response.raise_for_status()
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """
        GET a URL with retries.

        Raises:
            FetchFailedError: If the request failed permanently or ran out
                of attempts
        """
        result = await self.execute(lambda: self._get(url, **kwargs), f"GET {url}")
        return result.unwrap()

    async def get_text(self, url: str, **kwargs) -> str:
        """GET a URL and return the decoded body."""
        return (await self.get(url, **kwargs)).text

    async def get_bytes(self, url: str, **kwargs) -> bytes:
        """GET a URL and return the raw body."""
        return (await self.get(url, **kwargs)).content

    async def download(self, url: str, dest: Path, **kwargs) -> Path:
        """
        Download a file to ``dest``, replacing it atomically.

        A portal answering with its HTML "not available" placeholder counts
        as a permanent failure rather than a document.

        Raises:
            FetchFailedError: If the download failed or the document is
                not available
        """
        async def _download() -> bytes:
            response = await self._get(url, **kwargs)
            content = response.content
            content_type = response.headers.get("content-type", "")
            if "text/html" in content_type:
                lowered = content[:50_000].lower()
                if any(phrase in lowered for phrase in UNAVAILABLE_PHRASES):
                    raise ResourceUnavailableError(f"Document not available: {url}")
            return content

        result = await self.execute(_download, f"download {url}")
        content = result.unwrap()
        await asyncio.to_thread(_write_atomic, Path(dest), content)
        logger.debug(f"Downloaded {url}", extra={"path": str(dest), "bytes": len(content)})
        return Path(dest)


def _write_atomic(dest: Path, content: bytes) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, dest)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


__all__ = [
    "ErrorKind",
    "RetryPolicy",
    "RetryingFetcher",
    "classify_error",
    "create_http_client",
]
