"""CalDAV (RFC 4791) calendar provider.

## Protocol Summary
Source: https://datatracker.ietf.org/doc/html/rfc4791

## Authentication
HTTP basic authentication with the account username and password.

## Discovery
`PROPFIND` with `Depth: 1` on the server URL. Every `<D:response>` whose
`resourcetype` contains `<C:calendar/>` is a calendar collection:

```xml
<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:response>
    <D:href>/dav/calendars/ada/work/</D:href>
    <D:propstat>
      <D:prop>
        <D:displayname>Work</D:displayname>
        <D:resourcetype><D:collection/><C:calendar/></D:resourcetype>
        <A:calendar-color xmlns:A="http://apple.com/ns/ical/">#FF2968FF</A:calendar-color>
      </D:prop>
    </D:propstat>
  </D:response>
</D:multistatus>
```

The display name falls back to the last path segment of the href.

## Event Fetch
`REPORT` calendar-query on the collection with a VEVENT `time-range`
filter (compact UTC timestamps). Each response embeds the resource's
iCalendar text in `<C:calendar-data>`; it is handed to `ICalParser`,
which expands recurrences locally.

The collection URL is `calendarPath` resolved against the server URL, so
both absolute hrefs from discovery and relative paths work.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from urllib.parse import unquote, urljoin

import httpx

from roomcast.ical.parser import ICalParser
from roomcast.models.event import CalendarInfo, DateRange, ExternalEvent
from roomcast.providers.base import (
    ConnectionTestResult,
    ErrorKind,
    ProviderAdapter,
    ProviderError,
)
from roomcast.providers.credentials import CalDAVCredentials

logger = logging.getLogger(__name__)

NAMESPACES = {
    "D": "DAV:",
    "C": "urn:ietf:params:xml:ns:caldav",
    "CS": "http://calendarserver.org/ns/",
    "A": "http://apple.com/ns/ical/",
}

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:" xmlns:CS="http://calendarserver.org/ns/" xmlns:A="http://apple.com/ns/ical/">
  <D:prop>
    <D:displayname />
    <D:resourcetype />
    <CS:getctag />
    <A:calendar-color />
  </D:prop>
</D:propfind>"""

REPORT_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data />
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">
        <C:time-range start="{start}" end="{end}" />
      </C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


def compact_utc(value: datetime) -> str:
    """Format a datetime as `YYYYMMDDTHHMMSSZ`."""
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _normalize_url(url: str) -> str:
    return url if url.endswith("/") else url + "/"


class CalDAVAdapter(ProviderAdapter):
    """CalDAV provider (Nextcloud, iCloud, Fastmail, Radicale, ...)."""

    name = "caldav"
    credentials_type = CalDAVCredentials

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
            "Content-Type": "application/xml; charset=utf-8",
            "Depth": "1",
        }

    def _parse_multistatus(self, response: httpx.Response, context: str) -> ET.Element:
        try:
            return ET.fromstring(response.content)
        except ET.ParseError as e:
            raise ProviderError(
                f"{context} returned invalid XML: {e}",
                provider=self.name,
                kind=ErrorKind.UNKNOWN,
                status_code=response.status_code,
            ) from e

    async def discover_calendars(self, credentials: CalDAVCredentials) -> list[CalendarInfo]:
        """List calendar collections directly below the server URL.

        Raises:
            ProviderError: On HTTP failure or unparseable response
        """
        response = await self._request(
            "PROPFIND",
            _normalize_url(credentials.server_url),
            context="CalDAV PROPFIND",
            content=PROPFIND_BODY,
            auth=httpx.BasicAuth(credentials.username, credentials.password),
        )
        root = self._parse_multistatus(response, "CalDAV PROPFIND")

        calendars = []
        for item in root.findall("D:response", NAMESPACES):
            if item.find(".//D:resourcetype/C:calendar", NAMESPACES) is None:
                continue
            href = (item.findtext("D:href", default="", namespaces=NAMESPACES) or "").strip()
            if not href:
                continue

            name = (item.findtext(".//D:displayname", default="", namespaces=NAMESPACES) or "").strip()
            if not name:
                segments = [s for s in href.split("/") if s]
                name = unquote(segments[-1]) if segments else "Calendar"

            # Apple colors carry an alpha channel (#RRGGBBAA)
            color = (item.findtext(".//A:calendar-color", default="", namespaces=NAMESPACES) or "").strip()
            calendars.append(CalendarInfo(id=href, name=name, color=color[:7] or None))

        return calendars

    async def _probe(self, credentials: CalDAVCredentials) -> ConnectionTestResult:
        credentials = self._check_credentials(credentials)
        calendars = await self.discover_calendars(credentials)
        return ConnectionTestResult.ok(len(calendars))

    async def fetch_events(
        self,
        credentials: CalDAVCredentials,
        date_range: DateRange,
    ) -> list[ExternalEvent]:
        """Run a time-range REPORT and parse every returned resource.

        Args:
            credentials: CalDAV account and optional collection path
            date_range: Window to fetch

        Returns:
            Occurrences overlapping the window

        Raises:
            ProviderError: On HTTP failure or unparseable multi-status XML
        """
        credentials = self._check_credentials(credentials)
        base_url = _normalize_url(credentials.server_url)
        if credentials.calendar_path:
            calendar_url = _normalize_url(urljoin(base_url, credentials.calendar_path))
        else:
            calendar_url = base_url

        body = REPORT_BODY.format(start=compact_utc(date_range.start), end=compact_utc(date_range.end))
        response = await self._request(
            "REPORT",
            calendar_url,
            context="CalDAV REPORT",
            content=body,
            auth=httpx.BasicAuth(credentials.username, credentials.password),
        )
        root = self._parse_multistatus(response, "CalDAV REPORT")

        events: list[ExternalEvent] = []
        resources = 0
        for element in root.iterfind(".//C:calendar-data", NAMESPACES):
            if not element.text:
                continue
            resources += 1
            events.extend(self.parser.parse(element.text, date_range))

        logger.debug("Parsed %d CalDAV events from %d resource(s)", len(events), resources)
        return events

    async def list_calendars(self, credentials: CalDAVCredentials) -> list[CalendarInfo]:
        return await self.discover_calendars(self._check_credentials(credentials))

    def supports_calendar_listing(self) -> bool:
        return True
