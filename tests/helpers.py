"""Fake provider clients and builders shared by the tests."""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from labcal.models import ConnectionStatus, EventPage, TokenRecord
from labcal.utils.tasks import _background_tasks


class FakeOAuthClient:
    """Stands in for GoogleOAuthClient and records every call."""

    def __init__(self):
        self.exchange_calls = []
        self.refresh_calls = []
        self.revoked = []
        self.exchange_error = None
        self.refresh_error = None
        self.refresh_delay = 0.0
        self.rotate_refresh_token = False
        self.email = "researcher@example.org"

    def authorization_url(self, redirect_uri: str, state: str, login_hint: Optional[str] = None) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?redirect_uri={redirect_uri}&state={state}"

    async def exchange_code(self, code: str, redirect_uri: str) -> dict:
        self.exchange_calls.append((code, redirect_uri))
        if self.exchange_error:
            raise self.exchange_error
        return {"access_token": f"access-{code}", "refresh_token": f"refresh-{code}", "expires_in": 3600}

    async def refresh_access_token(self, refresh_token: str) -> dict:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        n = len(self.refresh_calls)
        tokens = {"access_token": f"refreshed-{n}", "expires_in": 3600}
        if self.rotate_refresh_token:
            tokens["refresh_token"] = f"rotated-{n}"
        return tokens

    async def get_user_info(self, access_token: str) -> dict:
        return {"email": self.email, "id": "google-user-1"}

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return True


class FakeCalendarProvider:
    """Scriptable Google Calendar backend.

    ``full_pages[calendar_id]`` answers windowed listings; ``incremental[sync_token]``
    answers incremental listings and may hold an exception instance to raise.
    ``errors`` is a queue of exceptions raised before any listing is answered.
    """

    def __init__(self):
        self.full_pages: dict[str, list[EventPage]] = {}
        self.incremental: dict[str, object] = {}
        self.errors: list[Exception] = []
        self.calls: list[dict] = []
        self.tokens_seen: list[str] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self.calendars = [
            {"id": "researcher@example.org", "summary": "Researcher", "primary": True, "accessRole": "owner"},
            {"id": "lab-shared@group.calendar.google.com", "summary": "Lab shared", "accessRole": "reader"},
        ]
        self.watched: list[dict] = []
        self.stopped: list[tuple[str, str]] = []
        self.watch_error = None

    def client(self, access_token: str) -> "FakeCalendarClient":
        self.tokens_seen.append(access_token)
        return FakeCalendarClient(self)


class FakeCalendarClient:
    def __init__(self, provider: FakeCalendarProvider):
        self.provider = provider

    def list_events_page(self, calendar_id, sync_token=None, page_token=None, time_min=None, time_max=None):
        provider = self.provider
        with provider._lock:
            provider.active += 1
            provider.max_active = max(provider.max_active, provider.active)
            provider.calls.append({
                "calendar_id": calendar_id,
                "sync_token": sync_token,
                "page_token": page_token,
                "time_min": time_min,
                "time_max": time_max,
            })
        try:
            if provider.delay:
                time.sleep(provider.delay)
            if provider.errors:
                raise provider.errors.pop(0)

            if sync_token:
                pages = provider.incremental[sync_token]
                if isinstance(pages, Exception):
                    raise pages
            else:
                pages = provider.full_pages[calendar_id]
            return pages[int(page_token) if page_token else 0]
        finally:
            with provider._lock:
                provider.active -= 1

    def list_calendars(self):
        return list(self.provider.calendars)

    def watch_events(self, calendar_id, channel_id, address, token, expiration):
        if self.provider.watch_error:
            raise self.provider.watch_error
        self.provider.watched.append({
            "calendar_id": calendar_id,
            "channel_id": channel_id,
            "address": address,
            "token": token,
        })
        return {
            "id": channel_id,
            "resourceId": f"resource-{calendar_id}",
            "expiration": str(int(expiration.timestamp() * 1000)),
        }

    def stop_channel(self, channel_id, resource_id):
        self.provider.stopped.append((channel_id, resource_id))
        return True


def google_event(event_id: str, summary: str = "Lab meeting", day: int = 20, **extra) -> dict:
    event = {
        "id": event_id,
        "status": "confirmed",
        "summary": summary,
        "start": {"dateTime": f"2026-10-{day:02d}T09:00:00Z"},
        "end": {"dateTime": f"2026-10-{day:02d}T10:00:00Z"},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
        "updated": "2026-10-01T12:00:00Z",
    }
    event.update(extra)
    return event


def page(events=(), deleted=(), next_page: Optional[str] = None, next_sync: Optional[str] = None) -> EventPage:
    return EventPage(
        events=list(events),
        deleted_ids=list(deleted),
        next_page_token=next_page,
        next_sync_token=next_sync,
    )


def token_record(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_in: timedelta = timedelta(hours=1),
    user_id: str = "1",
) -> TokenRecord:
    now = datetime.now(timezone.utc)
    return TokenRecord(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        provider="google",
        user_id=user_id,
        email="researcher@example.org",
        created_at=now,
        last_refreshed_at=now,
    )


async def create_user(db, user_id: int = 1, email: str = "researcher@example.org", is_admin: bool = False):
    await db.execute(
        "INSERT INTO users (id, email, display_name, is_admin) VALUES (?, ?, ?, ?)",
        (user_id, email, email.split("@")[0], is_admin),
    )
    await db.commit()


async def link_connection(
    services,
    connection_id: str = "google-c1",
    user_id: int = 1,
    calendar_ids: Optional[list[str]] = None,
    record: Optional[TokenRecord] = None,
):
    """Create an active connection with stored credentials, bypassing the OAuth dance."""
    await services.connections.create(
        connection_id,
        user_id=user_id,
        provider="google",
        account_email="researcher@example.org",
        calendar_ids=calendar_ids or ["primary"],
        status=ConnectionStatus.ACTIVE,
    )
    await services.store.put(connection_id, record or token_record(user_id=str(user_id)))
    return await services.connections.get(connection_id)


async def drain_background_tasks() -> None:
    """Wait for fire-and-forget tasks (and any they spawn) to finish."""
    for _ in range(10):
        pending = [t for t in _background_tasks if not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending)
