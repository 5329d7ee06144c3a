"""Base calendar provider abstraction.

This module defines the interface every calendar backend implements and the
canonical event shape all of them translate into.

## Canonical Event Format

Every provider maps its native payload onto `ExternalEvent`:
- Times are timezone-aware UTC datetimes
- `external_id` is the provider identity, unique within one calendar
- `raw_data` keeps the provider payload for diagnostics

## Error Classification

Adapters never fail silently. Every failure surfaces as a `ProviderError`
whose `kind` tells the caller how to react:

| Condition | ErrorKind |
|-----------|-----------|
| HTTP 401 / 403, rejected token grant | auth |
| HTTP 429 (carries `retry_after`) | rate_limit |
| HTTP 5xx, timeouts, connection errors | network |
| Anything else | unknown |

Transient transport failures are retried (3 attempts, exponential wait)
before they are classified.

## Supported Providers

### Exchange (Microsoft Graph)
- Token: client-credentials grant against the tenant token endpoint
- Events: /users/{mailbox}/calendarView, paginated via @odata.nextLink

### Google Calendar
- Token: refresh-token grant (handled by google-auth)
- Events: events.list with singleEvents, paginated via nextPageToken

### CalDAV
- Discovery: PROPFIND (Depth 1) on the server root
- Events: calendar-query REPORT with a VEVENT time-range filter

### ICS feed
- Events: plain GET of the feed, parsed and expanded locally
"""

from __future__ import annotations

import email.utils
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from roomcast.models.event import CalendarInfo, DateRange, ExternalEvent
from roomcast.providers.credentials import ProviderCredentials

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 300


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    AUTH = "auth"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """A classified calendar provider failure."""

    def __init__(
        self,
        message: str,
        provider: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: int | None = None,
        response_body: str | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.kind = kind
        self.status_code = status_code
        self.response_body = response_body
        self.retry_after = retry_after


def parse_retry_after(value: str | None, now: datetime | None = None) -> int:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds or an HTTP-date. Anything unparseable (or a
    missing header) yields the 300 second default.
    """
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS

    value = value.strip()
    if value.isdigit():
        return int(value)

    try:
        retry_at = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0, int((retry_at - now).total_seconds()))


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP error status to an error kind."""
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code >= 500:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_http_error(response: httpx.Response, provider: str, context: str) -> ProviderError:
    """Build a classified error from a failed HTTP response."""
    kind = classify_status(response.status_code)
    retry_after = None
    if kind is ErrorKind.RATE_LIMIT:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        message = f"{context} rate limit exceeded (retry after {retry_after}s)"
    elif kind is ErrorKind.AUTH:
        message = f"{context} authentication failed ({response.status_code})"
    else:
        message = f"{context} request failed ({response.status_code})"

    return ProviderError(
        message,
        provider=provider,
        kind=kind,
        status_code=response.status_code,
        response_body=response.text[:1000],
        retry_after=retry_after,
    )


@dataclass
class ConnectionTestResult:
    """Outcome of a reachability and authentication check."""

    success: bool
    calendar_count: int | None = None
    info: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, calendar_count: int, info: str | None = None) -> ConnectionTestResult:
        return cls(success=True, calendar_count=calendar_count, info=info)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind) -> ConnectionTestResult:
        return cls(success=False, error=error, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            data: dict[str, Any] = {"success": True, "calendarCount": self.calendar_count}
            if self.info:
                data["info"] = self.info
            return data
        return {
            "success": False,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else ErrorKind.UNKNOWN.value,
        }


class ProviderAdapter(ABC):
    """Abstract base class for calendar providers.

    Adapters are async context managers owning one HTTP client. A client can
    be injected (tests pass one built on `httpx.MockTransport`); an injected
    client is never closed by the adapter.

    Example:
        ```python
        async with ICSAdapter() as adapter:
            events = await adapter.fetch_events(credentials, window)
        ```
    """

    name: str
    credentials_type: type

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        user_agent: str | None = None,
    ):
        """Initialize the adapter.

        Args:
            client: Pre-built HTTP client (not closed by the adapter)
            timeout: Request timeout in seconds
            user_agent: User-Agent string for requests
        """
        self.timeout = timeout
        self.user_agent = user_agent or "roomcast-sync/0.1.0"
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> ProviderAdapter:
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            self._owns_client = True
        return self._client

    def _get_default_headers(self) -> dict[str, str]:
        """Get default headers for requests."""
        return {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self._get_client().request(method, url, **kwargs)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        context: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and classify any failure.

        Args:
            method: HTTP method (PROPFIND and REPORT included)
            url: Full URL
            context: Label used in error messages
            headers: Additional headers
            **kwargs: Passed through to httpx (params, data, content, ...)

        Returns:
            Successful (< 400) HTTP response

        Raises:
            ProviderError: On transport failure after retries or HTTP error
        """
        request_headers = self._get_default_headers()
        if headers:
            request_headers.update(headers)

        try:
            response = await self._send(method, url, headers=request_headers, **kwargs)
        except httpx.TransportError as e:
            raise ProviderError(
                f"{context} unreachable: {e.__class__.__name__}",
                provider=self.name,
                kind=ErrorKind.NETWORK,
            ) from e

        if response.status_code >= 400:
            raise classify_http_error(response, self.name, context)

        return response

    def _check_credentials(self, credentials: Any) -> Any:
        if not isinstance(credentials, self.credentials_type):
            raise TypeError(
                f"{self.name} adapter cannot use {type(credentials).__name__}"
            )
        return credentials

    async def test_connection(self, credentials: ProviderCredentials) -> ConnectionTestResult:
        """Check reachability and authentication without changing anything.

        Never raises; failures are returned as a classified result.
        """
        try:
            return await self._probe(credentials)
        except ProviderError as e:
            logger.warning("%s connection test failed (%s): %s", self.name, e.kind.value, e)
            return ConnectionTestResult.failed(str(e), e.kind)
        except httpx.TransportError as e:
            logger.warning("%s connection test failed (network): %s", self.name, e)
            return ConnectionTestResult.failed(f"Network error: {e}", ErrorKind.NETWORK)
        except Exception as e:
            logger.exception("%s connection test failed unexpectedly", self.name)
            return ConnectionTestResult.failed(str(e), ErrorKind.UNKNOWN)

    @abstractmethod
    async def _probe(self, credentials: ProviderCredentials) -> ConnectionTestResult:
        """Perform the provider-specific connection check."""

    @abstractmethod
    async def fetch_events(
        self,
        credentials: ProviderCredentials,
        date_range: DateRange,
    ) -> list[ExternalEvent]:
        """Fetch all events overlapping the window.

        Implementations must follow every page and raise `ProviderError`
        instead of returning a partial result.
        """

    async def list_calendars(self, credentials: ProviderCredentials) -> list[CalendarInfo]:
        """List sub-calendars or resources for setup screens."""
        raise NotImplementedError(f"{self.name} does not support calendar listing")

    def supports_calendar_listing(self) -> bool:
        """Check if provider supports calendar discovery."""
        return False
