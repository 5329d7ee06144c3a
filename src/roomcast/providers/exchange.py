"""Microsoft Exchange (Graph API) calendar provider.

## API Documentation Summary
Source: https://learn.microsoft.com/en-us/graph/api/user-list-calendarview
Source: https://learn.microsoft.com/en-us/entra/identity-platform/v2-oauth2-client-creds-grant-flow

## Authentication
- App registration with the `Calendars.Read` application permission
- Client-credentials grant:
  POST https://login.microsoftonline.com/{tenantId}/oauth2/v2.0/token
  with `scope=https://graph.microsoft.com/.default`
- 400/401/403 from the token endpoint mean the registration is wrong -> auth

## Endpoints
- Calendars: GET /v1.0/users/{mailbox}/calendars
- Events: GET /v1.0/users/{mailbox}/calendarView?startDateTime=..&endDateTime=..
- Mailbox is the room resource address if configured, else the user address

## Pagination
Responses carry `@odata.nextLink` (a full URL including the query) until the
last page.

## Response Format
```json
{
  "value": [
    {
      "id": "AAMkAD...",
      "subject": "Standup",
      "bodyPreview": "Daily sync",
      "location": {"displayName": "Room 4.01"},
      "organizer": {"emailAddress": {"name": "Ada", "address": "ada@example.com"}},
      "attendees": [{"emailAddress": {"name": "Bob"}}],
      "start": {"dateTime": "2025-01-06T10:00:00.0000000", "timeZone": "UTC"},
      "end": {"dateTime": "2025-01-06T10:30:00.0000000", "timeZone": "UTC"},
      "isAllDay": false,
      "type": "occurrence",
      "seriesMasterId": "AAMkAD..."
    }
  ],
  "@odata.nextLink": "https://graph.microsoft.com/v1.0/..."
}
```

## Field Translation
| Graph Field | ExternalEvent Field | Notes |
|-------------|---------------------|-------|
| id | external_id | |
| subject | title | "Untitled" if empty |
| bodyPreview | description | |
| location.displayName | location | |
| organizer.emailAddress | organizer | name, else address |
| attendees | attendee_count | list length |
| start/end.dateTime | start/end | UTC via `Prefer: outlook.timezone="UTC"`, 7 digit fractions truncated |
| type | is_recurring | occurrence or exception |
| seriesMasterId | recurrence_id | |
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from roomcast.models.event import CalendarInfo, DateRange, ExternalEvent, isoformat_utc
from roomcast.providers.base import (
    ConnectionTestResult,
    ErrorKind,
    ProviderAdapter,
    ProviderError,
    classify_http_error,
)
from roomcast.providers.credentials import ExchangeCredentials

logger = logging.getLogger(__name__)

TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
PAGE_SIZE = 500
EVENT_FIELDS = (
    "id,subject,bodyPreview,location,organizer,attendees,"
    "start,end,isAllDay,type,seriesMasterId"
)

_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_graph_datetime(value: str) -> datetime:
    """Parse a Graph `dateTime` (UTC, up to 7 fractional digits)."""
    value = _FRACTION.sub(r".\1", value.strip()).rstrip("Z")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ExchangeAdapter(ProviderAdapter):
    """Microsoft Graph calendar provider for rooms and user mailboxes."""

    name = "exchange"
    credentials_type = ExchangeCredentials

    async def _get_access_token(self, credentials: ExchangeCredentials) -> str:
        """Run the client-credentials grant.

        Raises:
            ProviderError: auth if the registration is rejected
        """
        url = TOKEN_URL.format(tenant_id=quote(credentials.tenant_id, safe=""))
        try:
            response = await self._send(
                "POST",
                url,
                data={
                    "client_id": credentials.client_id,
                    "client_secret": credentials.client_secret,
                    "scope": GRAPH_SCOPE,
                    "grant_type": "client_credentials",
                },
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise ProviderError(
                f"Token endpoint unreachable: {e.__class__.__name__}",
                provider=self.name,
                kind=ErrorKind.NETWORK,
            ) from e

        if response.status_code in (400, 401, 403):
            raise ProviderError(
                f"Token request rejected ({response.status_code})",
                provider=self.name,
                kind=ErrorKind.AUTH,
                status_code=response.status_code,
                response_body=response.text[:1000],
            )
        if response.status_code >= 400:
            raise classify_http_error(response, self.name, "Token request")

        token = response.json().get("access_token")
        if not token:
            raise ProviderError(
                "Token response did not contain an access token",
                provider=self.name,
                kind=ErrorKind.AUTH,
            )
        return token

    def _mailbox_url(self, credentials: ExchangeCredentials) -> str:
        return f"{GRAPH_URL}/users/{quote(credentials.calendar_user, safe='@')}"

    async def _get_calendars(self, credentials: ExchangeCredentials, token: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            f"{self._mailbox_url(credentials)}/calendars",
            context="Graph API",
            headers={"Authorization": f"Bearer {token}"},
        )
        return response.json().get("value") or []

    async def _probe(self, credentials: ExchangeCredentials) -> ConnectionTestResult:
        credentials = self._check_credentials(credentials)
        token = await self._get_access_token(credentials)
        calendars = await self._get_calendars(credentials, token)
        return ConnectionTestResult.ok(len(calendars))

    async def fetch_events(
        self,
        credentials: ExchangeCredentials,
        date_range: DateRange,
    ) -> list[ExternalEvent]:
        """Fetch the calendar view for the window, following every page.

        Args:
            credentials: Exchange app registration
            date_range: Window to fetch

        Returns:
            Events overlapping the window

        Raises:
            ProviderError: On token, HTTP or transport failure
        """
        credentials = self._check_credentials(credentials)
        token = await self._get_access_token(credentials)
        headers = {
            "Authorization": f"Bearer {token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

        url: str | None = f"{self._mailbox_url(credentials)}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": isoformat_utc(date_range.start),
            "endDateTime": isoformat_utc(date_range.end),
            "$top": PAGE_SIZE,
            "$select": EVENT_FIELDS,
        }

        events: list[ExternalEvent] = []
        pages = 0
        while url:
            response = await self._request("GET", url, context="Graph API", headers=headers, params=params)
            data = response.json()
            events.extend(self._parse_event(item) for item in data.get("value") or [])
            pages += 1
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        logger.debug("Fetched %d Exchange events in %d page(s)", len(events), pages)
        return events

    def _parse_event(self, item: dict[str, Any]) -> ExternalEvent:
        """Translate one Graph event to the canonical shape."""
        organizer = (item.get("organizer") or {}).get("emailAddress") or {}
        attendees = item.get("attendees")
        start = parse_graph_datetime(item["start"]["dateTime"])
        end = parse_graph_datetime(item["end"]["dateTime"])

        return ExternalEvent(
            external_id=item["id"],
            title=item.get("subject") or "Untitled",
            description=item.get("bodyPreview") or None,
            location=(item.get("location") or {}).get("displayName") or None,
            organizer=organizer.get("name") or organizer.get("address") or None,
            attendee_count=len(attendees) if attendees is not None else None,
            start=start,
            end=max(end, start),
            is_all_day=bool(item.get("isAllDay")),
            is_recurring=item.get("type") in ("occurrence", "exception"),
            recurrence_id=item.get("seriesMasterId") or None,
            raw_data=item,
        )

    async def list_calendars(self, credentials: ExchangeCredentials) -> list[CalendarInfo]:
        credentials = self._check_credentials(credentials)
        token = await self._get_access_token(credentials)
        return [
            CalendarInfo(id=cal["id"], name=cal.get("name") or cal["id"], color=cal.get("hexColor") or None)
            for cal in await self._get_calendars(credentials, token)
        ]

    def supports_calendar_listing(self) -> bool:
        return True
