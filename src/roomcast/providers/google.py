"""Google Calendar provider.

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Authentication

Uses the stored OAuth refresh token. `google-auth` exchanges it for an
access token on the first request and refreshes it when it expires. A
rejected refresh (revoked consent, wrong client secret) is an auth error.

## Event Listing

`events.list` with `singleEvents=true` so the API expands recurring
series into occurrences, `orderBy=startTime` and `maxResults=250`.
Pages are followed through `nextPageToken`. Items with
`status == "cancelled"` are deleted occurrences and are skipped.

## All-day Events

All-day items carry `date` instead of `dateTime`. They are mapped to
midnight UTC of the start date and of the (exclusive) end date.

## Rate Limits

Google Calendar API has quotas:
- 1,000,000 queries per day (default)
- 500 queries per 100 seconds per user

Quota errors arrive as 429 (or 403 with a rate-limit reason) and are
classified as rate_limit.

The API client is synchronous; calls run in a worker thread so a slow
Google response never blocks other calendars.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Any

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from roomcast.models.event import CalendarInfo, DateRange, ExternalEvent, isoformat_utc
from roomcast.providers.base import (
    ConnectionTestResult,
    ErrorKind,
    ProviderAdapter,
    ProviderError,
    classify_status,
    parse_retry_after,
)
from roomcast.providers.credentials import GoogleCredentials

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
PAGE_SIZE = 250

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def parse_google_time(value: dict[str, Any]) -> tuple[datetime, bool]:
    """Parse a Google `start`/`end` object into (UTC datetime, is_all_day)."""
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc), False

    day = date.fromisoformat(value["date"])
    return datetime.combine(day, time.min, tzinfo=timezone.utc), True


class GoogleAdapter(ProviderAdapter):
    """Google Calendar provider backed by the Google API client."""

    name = "google"
    credentials_type = GoogleCredentials

    def _build_service(self, credentials: GoogleCredentials) -> Any:
        google_credentials = Credentials(
            token=None,
            refresh_token=credentials.refresh_token,
            token_uri=TOKEN_URI,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            scopes=SCOPES,
        )
        return build("calendar", "v3", credentials=google_credentials, cache_discovery=False)

    async def _execute(self, request: Any, context: str) -> dict[str, Any]:
        """Run a prepared API request off the event loop and classify failures."""
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise self._classify(e, context) from e
        except RefreshError as e:
            raise ProviderError(
                f"{context} token refresh failed: {e}",
                provider=self.name,
                kind=ErrorKind.AUTH,
            ) from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise ProviderError(
                f"{context} unreachable: {e.__class__.__name__}",
                provider=self.name,
                kind=ErrorKind.NETWORK,
            ) from e

    def _classify(self, error: HttpError, context: str) -> ProviderError:
        status = error.resp.status
        kind = classify_status(status)
        if status == 403 and self._is_rate_limit(error):
            kind = ErrorKind.RATE_LIMIT

        retry_after = None
        if kind is ErrorKind.RATE_LIMIT:
            retry_after = parse_retry_after(error.resp.get("retry-after"))
            message = f"{context} rate limit exceeded (retry after {retry_after}s)"
        elif kind is ErrorKind.AUTH:
            message = f"{context} authentication failed ({status})"
        else:
            message = f"{context} request failed ({status})"

        body = error.content.decode("utf-8", "replace") if isinstance(error.content, bytes) else str(error.content)
        return ProviderError(
            message,
            provider=self.name,
            kind=kind,
            status_code=status,
            response_body=body[:1000],
            retry_after=retry_after,
        )

    @staticmethod
    def _is_rate_limit(error: HttpError) -> bool:
        details = getattr(error, "error_details", None) or []
        if isinstance(details, list):
            return any(
                isinstance(detail, dict) and detail.get("reason") in _RATE_LIMIT_REASONS
                for detail in details
            )
        return False

    async def _list_calendar_items(self, service: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token = None
        while True:
            result = await self._execute(
                service.calendarList().list(pageToken=page_token),
                "Google calendar list",
            )
            items.extend(result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    async def _probe(self, credentials: GoogleCredentials) -> ConnectionTestResult:
        credentials = self._check_credentials(credentials)
        service = self._build_service(credentials)
        items = await self._list_calendar_items(service)
        return ConnectionTestResult.ok(len(items))

    async def fetch_events(
        self,
        credentials: GoogleCredentials,
        date_range: DateRange,
    ) -> list[ExternalEvent]:
        """Fetch expanded occurrences overlapping the window.

        Raises:
            ProviderError: On refresh, HTTP or transport failure
        """
        credentials = self._check_credentials(credentials)
        service = self._build_service(credentials)

        params: dict[str, Any] = {
            "calendarId": credentials.calendar_id,
            "timeMin": isoformat_utc(date_range.start),
            "timeMax": isoformat_utc(date_range.end),
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }

        events: list[ExternalEvent] = []
        cancelled = 0
        while True:
            result = await self._execute(service.events().list(**params), "Google Calendar API")

            for item in result.get("items", []):
                if item.get("status") == "cancelled":
                    cancelled += 1
                    continue
                events.append(self._parse_event(item))

            page_token = result.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug("Fetched %d Google events (%d cancelled skipped)", len(events), cancelled)
        return events

    def _parse_event(self, item: dict[str, Any]) -> ExternalEvent:
        start, is_all_day = parse_google_time(item["start"])
        end, _ = parse_google_time(item.get("end") or item["start"])
        organizer = item.get("organizer") or {}
        attendees = item.get("attendees")

        return ExternalEvent(
            external_id=item["id"],
            title=item.get("summary") or "Untitled",
            description=item.get("description") or None,
            location=item.get("location") or None,
            organizer=organizer.get("displayName") or organizer.get("email") or None,
            attendee_count=len(attendees) if attendees is not None else None,
            start=start,
            end=max(end, start),
            is_all_day=is_all_day,
            is_recurring=bool(item.get("recurringEventId")),
            recurrence_id=item.get("recurringEventId") or None,
            raw_data=item,
        )

    async def list_calendars(self, credentials: GoogleCredentials) -> list[CalendarInfo]:
        credentials = self._check_credentials(credentials)
        service = self._build_service(credentials)
        return [
            CalendarInfo(
                id=item["id"],
                name=item.get("summaryOverride") or item.get("summary") or item["id"],
                color=item.get("backgroundColor") or None,
            )
            for item in await self._list_calendar_items(service)
        ]

    def supports_calendar_listing(self) -> bool:
        return True
