"""Google Calendar API wrapper."""

import logging
from datetime import datetime
from typing import NoReturn, Optional

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from labcal.errors import (
    AuthenticationRequired,
    ProviderRequestRejected,
    SyncTokenInvalid,
    TransientProviderError,
)
from labcal.models import EventPage

logger = logging.getLogger(__name__)

MAX_RESULTS = 250


def _raise_for_http_error(e: HttpError, what: str) -> NoReturn:
    """Translate an HttpError into the error taxonomy. Always raises."""
    status = e.resp.status
    if status == 410:
        raise SyncTokenInvalid(f"Sync token no longer valid for {what}") from e
    if status == 401:
        raise AuthenticationRequired(f"Access token rejected while {what}") from e
    if status == 429 or status >= 500:
        raise TransientProviderError(f"HTTP {status} while {what}", status) from e
    if status == 403 and b"rateLimitExceeded" in (e.content or b""):
        raise TransientProviderError(f"Rate limited while {what}", status) from e
    raise ProviderRequestRejected(f"HTTP {status} while {what}", status) from e


class GoogleCalendarClient:
    """Wrapper around Google Calendar API.

    All methods block; callers on the event loop run them in a worker thread.
    """

    def __init__(self, access_token: str, timeout: float = 30.0):
        """Initialize with access token."""
        self.credentials = Credentials(token=access_token)
        http = AuthorizedHttp(self.credentials, http=httplib2.Http(timeout=timeout))
        self.service = build("calendar", "v3", http=http, cache_discovery=False)

    def list_events_page(
        self,
        calendar_id: str,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> EventPage:
        """
        Fetch one page of events.

        With a sync token this is an incremental fetch and cancelled events are
        reported in ``deleted_ids``. Without one it is a windowed full fetch.

        Raises:
            SyncTokenInvalid: the provider answered 410 Gone for the sync token
        """
        request_params = {
            "calendarId": calendar_id,
            "maxResults": MAX_RESULTS,
            "singleEvents": True,
        }
        if page_token:
            request_params["pageToken"] = page_token
        if sync_token:
            request_params["syncToken"] = sync_token
            request_params["showDeleted"] = True
        else:
            if time_min:
                request_params["timeMin"] = time_min.isoformat()
            if time_max:
                request_params["timeMax"] = time_max.isoformat()

        try:
            result = self.service.events().list(**request_params).execute()
        except HttpError as e:
            _raise_for_http_error(e, f"listing events of {calendar_id}")
        except (OSError, httplib2.HttpLib2Error) as e:
            raise TransientProviderError(f"Network error listing events of {calendar_id}: {e}") from e

        events = []
        deleted_ids = []
        for item in result.get("items", []):
            if item.get("status") == "cancelled":
                deleted_ids.append(item["id"])
            else:
                events.append(item)

        return EventPage(
            events=events,
            deleted_ids=deleted_ids,
            next_page_token=result.get("nextPageToken"),
            next_sync_token=result.get("nextSyncToken"),
        )

    def list_calendars(self) -> list[dict]:
        """List all calendars the account has access to."""
        try:
            result = self.service.calendarList().list().execute()
        except HttpError as e:
            _raise_for_http_error(e, "listing calendars")
        except (OSError, httplib2.HttpLib2Error) as e:
            raise TransientProviderError(f"Network error listing calendars: {e}") from e
        return result.get("items", [])

    def watch_events(
        self,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
    ) -> dict:
        """Register a push channel for a calendar's events. Returns the channel resource."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "expiration": str(int(expiration.timestamp() * 1000)),
        }
        try:
            return self.service.events().watch(calendarId=calendar_id, body=body).execute()
        except HttpError as e:
            _raise_for_http_error(e, f"registering a channel for {calendar_id}")
        except (OSError, httplib2.HttpLib2Error) as e:
            raise TransientProviderError(f"Network error registering a channel: {e}") from e

    def stop_channel(self, channel_id: str, resource_id: str) -> bool:
        """Stop a push channel. An already-stopped channel counts as stopped."""
        try:
            self.service.channels().stop(body={"id": channel_id, "resourceId": resource_id}).execute()
            return True
        except HttpError as e:
            if e.resp.status == 404:
                return True
            _raise_for_http_error(e, f"stopping channel {channel_id}")
        except (OSError, httplib2.HttpLib2Error) as e:
            raise TransientProviderError(f"Network error stopping channel {channel_id}: {e}") from e
