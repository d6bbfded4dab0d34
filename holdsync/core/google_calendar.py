#!/usr/bin/env python3
"""
Google Calendar Backend

Thin client over the Calendar v3 API used by the sync service:
- One API service per account, via service-account domain-wide delegation
- Rate limit handling with exponential backoff (429, rateLimitExceeded, 5xx)
- 404/410 on delete means the event is already gone
- Transparency is exposed as busy/free (Google's opaque/transparent)

Every other failure is raised as CalendarError; nothing is swallowed here.
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from holdsync.core.config import (
    DEFAULT_API_CALL_DELAY,
    DEFAULT_MAX_RETRIES,
    GOOGLE_CREDENTIALS_FILE,
    GOOGLE_SCOPES,
    credentials_file,
)
from holdsync.core.models import CalendarEvent

# Hold vocabulary <-> Calendar API values
TRANSPARENCY_TO_API = {'busy': 'opaque', 'free': 'transparent'}
TRANSPARENCY_FROM_API = {'opaque': 'busy', 'transparent': 'free'}

_MISSING = object()


class CalendarError(RuntimeError):
    """Raised when a Calendar API call fails for good."""


def from_api_event(item: Dict[str, Any]) -> CalendarEvent:
    event = dict(item)
    # Google omits transparency for the default, which is opaque
    api_value = item.get('transparency', 'opaque')
    event['transparency'] = TRANSPARENCY_FROM_API.get(api_value, api_value)
    return event


def to_api_body(event: CalendarEvent) -> Dict[str, Any]:
    body = copy.deepcopy(event)
    # Hold ids are local placeholders; Google assigns the real one
    body.pop('id', None)
    if 'transparency' in body:
        body['transparency'] = TRANSPARENCY_TO_API.get(body['transparency'], body['transparency'])
    return body


class GoogleCalendarClient:
    """List/create/update/delete events on behalf of any delegated account."""

    def __init__(self,
                 credentials_file: str = GOOGLE_CREDENTIALS_FILE,
                 scopes: Optional[List[str]] = None,
                 api_call_delay: float = DEFAULT_API_CALL_DELAY,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 base_backoff: float = 2,
                 service_factory: Optional[Callable[[str], Any]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.logger = logging.getLogger('google-calendar')

        self.credentials_file = credentials_file
        self.scopes = scopes or GOOGLE_SCOPES

        # Rate limiting configuration
        self.api_call_delay = api_call_delay
        self.max_retries = max_retries
        self.base_backoff = base_backoff

        self._service_factory = service_factory or self._build_service
        self._sleep = sleep
        self._services: Dict[str, Any] = {}

        self.stats = {
            'api_calls': 0,
            'rate_limit_hits': 0,
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'GoogleCalendarClient':
        google = config.get('google') or {}
        return cls(
            credentials_file=credentials_file(config),
            api_call_delay=google.get('apiCallDelay', DEFAULT_API_CALL_DELAY),
            max_retries=google.get('maxRetries', DEFAULT_MAX_RETRIES),
        )

    def _build_service(self, account: str):
        """Initialize a Calendar API service acting as `account`."""
        try:
            credentials = Credentials.from_service_account_file(
                self.credentials_file,
                scopes=self.scopes
            ).with_subject(account)
            service = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
            self.logger.info(f"✅ Google Calendar API service initialized for {account}")
            return service
        except (OSError, ValueError) as e:
            self.logger.error(f"❌ Failed to initialize Calendar API for {account}: {e}")
            raise CalendarError(f"Could not load credentials from {self.credentials_file}: {e}") from e

    def _service(self, account: str):
        if account not in self._services:
            self._services[account] = self._service_factory(account)
        return self._services[account]

    def _api_call_with_retry(self, request_factory: Callable[[], Any], description: str,
                             missing_ok: bool = False) -> Any:
        """
        Execute an API call with exponential backoff on rate limits and server errors.

        Returns _MISSING for 404/410 when missing_ok is set.
        """
        for attempt in range(self.max_retries):
            try:
                # Add delay between calls to avoid rate limits
                if self.api_call_delay:
                    self._sleep(self.api_call_delay)

                self.stats['api_calls'] += 1
                return request_factory().execute()

            except HttpError as e:
                status = e.resp.status
                if status == 429 or 'rateLimitExceeded' in str(e):
                    self.stats['rate_limit_hits'] += 1
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(f"⏳ Rate limit hit during {description}, backing off for {backoff_time}s "
                                        f"(attempt {attempt + 1}/{self.max_retries})")
                    self._sleep(backoff_time)
                    continue

                if status in (404, 410) and missing_ok:
                    return _MISSING

                if status >= 500:
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(f"⏳ Server error {status} during {description}, retrying in {backoff_time}s")
                    self._sleep(backoff_time)
                    continue

                self.logger.error(f"❌ HTTP error {status} during {description}: {e}")
                raise CalendarError(f"{description} failed ({status}): {e}") from e

        self.logger.error(f"❌ Max retries ({self.max_retries}) exceeded for {description}")
        raise CalendarError(f"{description} failed after {self.max_retries} attempts")

    def list_events(self, account: str, calendar_id: str, time_min: str, time_max: str) -> List[CalendarEvent]:
        """List non-cancelled event instances in [time_min, time_max)."""
        events_api = self._service(account).events()
        events: List[CalendarEvent] = []
        page_token = None

        while True:
            result = self._api_call_with_retry(
                lambda: events_api.list(
                    calendarId=calendar_id,
                    timeMin=time_min,
                    timeMax=time_max,
                    maxResults=2500,
                    singleEvents=True,
                    orderBy='startTime',
                    pageToken=page_token
                ),
                f"list events on {calendar_id}"
            )

            for item in result.get('items', []):
                if item.get('status') == 'cancelled':
                    continue
                events.append(from_api_event(item))

            page_token = result.get('nextPageToken')
            if not page_token:
                break

        self.logger.debug(f"  Found {len(events)} events on {calendar_id} ({account})")
        return events

    def create_event(self, account: str, calendar_id: str, event: CalendarEvent) -> None:
        body = to_api_body(event)
        events_api = self._service(account).events()
        created = self._api_call_with_retry(
            lambda: events_api.insert(calendarId=calendar_id, body=body, sendUpdates='none'),
            f"create event on {calendar_id}"
        )
        self.logger.debug(f"  Created event: {created.get('id')}")

    def update_event(self, account: str, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        body = to_api_body(event)
        events_api = self._service(account).events()
        self._api_call_with_retry(
            lambda: events_api.update(calendarId=calendar_id, eventId=event_id, body=body, sendUpdates='none'),
            f"update event {event_id}"
        )
        self.logger.debug(f"  Updated event: {event_id}")

    def delete_event(self, account: str, calendar_id: str, event_id: str) -> None:
        events_api = self._service(account).events()
        result = self._api_call_with_retry(
            lambda: events_api.delete(calendarId=calendar_id, eventId=event_id, sendUpdates='none'),
            f"delete event {event_id}",
            missing_ok=True
        )
        if result is _MISSING:
            self.logger.info(f"  Event {event_id} already gone from {calendar_id}")
        else:
            self.logger.debug(f"  Deleted event: {event_id}")
