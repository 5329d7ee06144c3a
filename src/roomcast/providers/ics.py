"""ICS feed (published iCalendar URL) provider.

## Overview
Read-only subscription to a calendar published as a single `.ics` file,
e.g. an Outlook "publish calendar" link or a Google secret address.

## Endpoint
- Plain GET of the feed URL; redirects are followed
- `webcal://` URLs are fetched over https
- Optional `Authorization` header value for protected feeds

## Processing
The feed carries every event (and recurring series) at once. It is parsed
and expanded locally by `ICalParser`, keeping only occurrences inside the
requested window.
"""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

import httpx

from roomcast.ical.parser import ICalParser, count_events
from roomcast.models.event import CalendarInfo, DateRange, ExternalEvent
from roomcast.providers.base import (
    ConnectionTestResult,
    ErrorKind,
    ProviderAdapter,
)
from roomcast.providers.credentials import ICSCredentials

logger = logging.getLogger(__name__)


def normalize_feed_url(url: str) -> str:
    """Rewrite `webcal://` to `https://`."""
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://") :]
    return url


class ICSAdapter(ProviderAdapter):
    """Published iCalendar feed provider."""

    name = "ics"
    credentials_type = ICSCredentials

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        user_agent: str | None = None,
        parser: ICalParser | None = None,
    ):
        super().__init__(client=client, timeout=timeout, user_agent=user_agent)
        self.parser = parser or ICalParser()

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/calendar, */*;q=0.5",
        }

    async def _fetch_feed(self, credentials: ICSCredentials) -> str:
        headers = {}
        if credentials.auth_header:
            headers["Authorization"] = credentials.auth_header

        response = await self._request(
            "GET",
            normalize_feed_url(credentials.feed_url),
            context="ICS feed",
            headers=headers,
        )
        return response.text

    async def _probe(self, credentials: ICSCredentials) -> ConnectionTestResult:
        credentials = self._check_credentials(credentials)
        text = await self._fetch_feed(credentials)
        if "BEGIN:VCALENDAR" not in text.upper():
            return ConnectionTestResult.failed("Response is not a valid iCalendar feed", ErrorKind.UNKNOWN)

        return ConnectionTestResult.ok(1, info=f"{count_events(text)} events found")

    async def fetch_events(
        self,
        credentials: ICSCredentials,
        date_range: DateRange,
    ) -> list[ExternalEvent]:
        """Download the feed and expand it for the window.

        Raises:
            ProviderError: If the feed cannot be downloaded
        """
        credentials = self._check_credentials(credentials)
        text = await self._fetch_feed(credentials)
        events = self.parser.parse(text, date_range)
        logger.debug("Parsed %d occurrences from ICS feed (%d bytes)", len(events), len(text))
        return events

    async def list_calendars(self, credentials: ICSCredentials) -> list[CalendarInfo]:
        """A feed is exactly one calendar."""
        credentials = self._check_credentials(credentials)
        host = urlsplit(normalize_feed_url(credentials.feed_url)).hostname
        return [CalendarInfo(id=credentials.feed_url, name=host or "ICS feed")]

    def supports_calendar_listing(self) -> bool:
        return True
