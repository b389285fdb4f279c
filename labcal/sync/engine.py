"""Core sync engine: one-way mirror of provider events into the local store."""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import aiosqlite

from labcal.auth.manager import OAuthConnectionManager
from labcal.config import Settings, get_settings
from labcal.connections import ConnectionRepository
from labcal.errors import (
    AuthenticationRequired,
    ProviderRequestRejected,
    SyncTokenInvalid,
    TransientProviderError,
)
from labcal.models import CalendarConnection, ConnectionStatus, EventPage, SyncResult, SyncStatus
from labcal.sync.google_calendar import GoogleCalendarClient
from labcal.sync.mirror import EventMirror, SyncStateRepository
from labcal.sync.normalize import normalize_google_event
from labcal.utils.tasks import create_background_task

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


class _CalendarStats:
    def __init__(self):
        self.imported = 0
        self.updated = 0
        self.deleted = 0
        self.full_resyncs = 0
        self.errors: list[str] = []


class SyncEngine:
    """Initial and incremental sync of a connection's calendars.

    Passes are serialized per connection. A trigger that arrives while a pass
    is running is coalesced into a single follow-up pass.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        oauth: OAuthConnectionManager,
        connections: ConnectionRepository,
        mirror: EventMirror,
        sync_states: SyncStateRepository,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.oauth = oauth
        self.connections = connections
        self.mirror = mirror
        self.sync_states = sync_states
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda token: GoogleCalendarClient(token, timeout=self.settings.provider_timeout_seconds)
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: set[str] = set()
        self.channels = None

    def attach(self, channels) -> None:
        self.channels = channels

    def _get_lock(self, connection_id: str) -> asyncio.Lock:
        return self._locks.setdefault(connection_id, asyncio.Lock())

    def is_running(self, connection_id: str) -> bool:
        return self._get_lock(connection_id).locked()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger_sync(self, connection_id: str) -> Optional[SyncResult]:
        """Run a sync pass, or coalesce into the one already running.

        Returns the result of the last pass this call ran, or None if the
        trigger was folded into an in-flight pass.
        """
        lock = self._get_lock(connection_id)
        if lock.locked():
            self._pending.add(connection_id)
            logger.info(f"Sync already in progress for connection {connection_id}, queued a follow-up pass")
            return None

        async with lock:
            result = None
            while True:
                self._pending.discard(connection_id)
                result = await self.sync_connection(connection_id)
                if connection_id not in self._pending:
                    return result

    def trigger_manual_sync(self, connection_id: str) -> asyncio.Task:
        """Fire-and-forget sync; completion is observed through the connection status."""
        return create_background_task(self.trigger_sync(connection_id), f"sync_connection_{connection_id}")

    async def run_periodic_sync(self) -> None:
        """Sync every active connection. Connections run concurrently."""
        connections = await self.connections.list_by_status(ConnectionStatus.ACTIVE)
        if not connections:
            logger.debug("No active connections to sync")
            return

        logger.info(f"Running periodic sync for {len(connections)} connections")
        results = await asyncio.gather(
            *(self.trigger_sync(c.id) for c in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"Error syncing connection {connection.id}: {result}")
        logger.info("Periodic sync completed")

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def sync_connection(self, connection_id: str) -> Optional[SyncResult]:
        """Perform one pass over every linked calendar (must be called under the connection lock)."""
        connection = await self.connections.get(connection_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            logger.warning(f"Connection {connection_id} not found or not active, skipping sync")
            return None

        started = time.monotonic()
        stats = _CalendarStats()
        failed_calendars: list[str] = []

        try:
            for calendar_id in connection.calendar_ids:
                try:
                    await self._sync_calendar(connection, calendar_id, stats)
                except (TransientProviderError, ProviderRequestRejected) as e:
                    # Retries exhausted or request refused for this calendar; the others still run
                    logger.error(f"Sync of calendar {calendar_id} on {connection_id} gave up: {e}")
                    failed_calendars.append(calendar_id)
                    stats.errors.append(f"{calendar_id}: {e}")
                    await self.mirror.mark_status(connection_id, SyncStatus.STALE, calendar_id=calendar_id)
                    await self.mirror.commit()
        except AuthenticationRequired as e:
            logger.warning(f"Sync of connection {connection_id} needs the user to reconnect: {e}")
            current = await self.connections.get(connection_id)
            # A rejected refresh already moved it to error; a rejected fresh token has not
            if current is not None and current.status == ConnectionStatus.ACTIVE:
                await self.connections.set_status(connection_id, ConnectionStatus.ERROR, str(e))
            stats.errors.append(str(e))
            result = self._result(connection_id, "failed", stats, started)
            await self._log_result(connection, result)
            return result

        now = datetime.now(timezone.utc)
        if failed_calendars:
            await self.connections.record_sync_failure(
                connection_id,
                f"Sync degraded for {len(failed_calendars)} calendar(s): {stats.errors[-1]}",
            )
            status = "failed" if len(failed_calendars) == len(connection.calendar_ids) else "partial"
        else:
            await self.connections.record_sync_success(connection_id, now)
            status = "partial" if stats.errors else "success"

        result = self._result(connection_id, status, stats, started)
        await self._log_result(connection, result)
        logger.info(
            f"Sync completed for connection {connection_id}: {result.imported} imported, "
            f"{result.updated} updated, {result.deleted} deleted, status={result.status}"
        )
        return result

    @staticmethod
    def _result(connection_id: str, status: str, stats: _CalendarStats, started: float) -> SyncResult:
        return SyncResult(
            connection_id=connection_id,
            status=status,
            imported=stats.imported,
            updated=stats.updated,
            deleted=stats.deleted,
            full_resyncs=stats.full_resyncs,
            errors=stats.errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _sync_calendar(self, connection: CalendarConnection, calendar_id: str, stats: _CalendarStats) -> None:
        state = await self.sync_states.get(connection.id, calendar_id)

        if state is None or not state.sync_token:
            await self._initial_sync(connection, calendar_id, stats)
            return

        try:
            await self._incremental_sync(connection, calendar_id, state.sync_token, stats)
        except SyncTokenInvalid:
            # Never retry a rejected token: drop it and start over
            logger.info(f"Sync token invalid for {connection.id}/{calendar_id}, doing full sync")
            await self.sync_states.clear(connection.id, calendar_id)
            stats.full_resyncs += 1
            await self._initial_sync(connection, calendar_id, stats)

    async def _initial_sync(self, connection: CalendarConnection, calendar_id: str, stats: _CalendarStats) -> None:
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=self.settings.sync_window_past_days)
        window_end = now + timedelta(days=self.settings.sync_window_future_days)

        seen: set[str] = set()
        next_sync_token = await self._consume_pages(
            connection, calendar_id, stats, time_min=window_start, time_max=window_end, seen=seen
        )

        # A full listing is authoritative: anything it did not return is gone at the provider
        removed = await self.mirror.delete_missing(connection.id, calendar_id, seen)
        await self.mirror.commit()
        stats.deleted += removed

        # Persisted only once the whole page sequence has been applied
        await self.sync_states.save_full_sync(
            connection.id, calendar_id, next_sync_token, window_start, window_end
        )

    async def _incremental_sync(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        sync_token: str,
        stats: _CalendarStats,
    ) -> None:
        next_sync_token = await self._consume_pages(connection, calendar_id, stats, sync_token=sync_token)
        if next_sync_token:
            await self.sync_states.save_incremental_sync(connection.id, calendar_id, next_sync_token)

    async def _consume_pages(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        stats: _CalendarStats,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        seen: Optional[set[str]] = None,
    ) -> Optional[str]:
        """Fetch and apply every page. Returns the sync token issued with the last page.

        External ids of listed events are added to ``seen`` when it is given.
        """
        page_token = None
        while True:
            page = await self._fetch_page(
                connection.id,
                calendar_id,
                sync_token=sync_token,
                page_token=page_token,
                time_min=time_min,
                time_max=time_max,
            )
            await self._apply_page(connection, calendar_id, page, stats)
            if seen is not None:
                seen.update(e["id"] for e in page.events if e.get("id"))

            page_token = page.next_page_token
            if not page_token:
                return page.next_sync_token

    async def _apply_page(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        page: EventPage,
        stats: _CalendarStats,
    ) -> None:
        synced_at = datetime.now(timezone.utc)

        for event in page.events:
            try:
                mirrored = normalize_google_event(
                    event, connection.id, calendar_id, connection.user_id, synced_at=synced_at
                )
            except ValueError as e:
                logger.warning(f"Skipping event {event.get('id')} on {connection.id}: {e}")
                stats.errors.append(f"{event.get('id')}: {e}")
                if event.get("id"):
                    await self.mirror.mark_status(
                        connection.id, SyncStatus.SYNC_ERROR, external_id=event["id"]
                    )
                continue

            if await self.mirror.upsert(mirrored):
                stats.imported += 1
            else:
                stats.updated += 1

        for external_id in page.deleted_ids:
            if await self.mirror.delete(connection.id, external_id):
                stats.deleted += 1

        await self.mirror.commit()

    async def _fetch_page(self, connection_id: str, calendar_id: str, **params) -> EventPage:
        """List one page with bounded retries for transient failures.

        A 401 forces one token refresh; SyncTokenInvalid and
        AuthenticationRequired from the refresh path propagate untouched.
        """
        max_attempts = max(1, self.settings.sync_max_attempts)
        attempt = 0
        force_refresh = False

        while True:
            access_token = await self.oauth.get_access_token(connection_id, force_refresh=force_refresh)
            client = self.client_factory(access_token)
            try:
                return await asyncio.to_thread(client.list_events_page, calendar_id, **params)
            except AuthenticationRequired:
                if force_refresh:
                    raise
                logger.info(f"Access token rejected for {connection_id}, forcing a refresh")
                force_refresh = True
            except TransientProviderError as e:
                attempt += 1
                if attempt >= max_attempts:
                    raise
                wait_time = self.settings.sync_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Listing events for {connection_id}/{calendar_id} failed "
                    f"(attempt {attempt}), retrying in {wait_time}s: {e}"
                )
                await asyncio.sleep(wait_time)
                force_refresh = False

    async def _log_result(self, connection: CalendarConnection, result: SyncResult) -> None:
        await self.db.execute(
            """INSERT INTO sync_log (connection_id, user_id, status, details, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                connection.id,
                connection.user_id,
                result.status,
                result.model_dump_json(),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()

    async def get_sync_log(self, connection_id: str, limit: int = 20) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT status, details, created_at FROM sync_log
               WHERE connection_id = ? ORDER BY id DESC LIMIT ?""",
            (connection_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            {"status": row["status"], "created_at": row["created_at"], **json.loads(row["details"] or "{}")}
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Calendar selection and teardown
    # ------------------------------------------------------------------

    async def list_remote_calendars(self, connection_id: str) -> list[dict]:
        access_token = await self.oauth.get_access_token(connection_id)
        client = self.client_factory(access_token)
        calendars = await asyncio.to_thread(client.list_calendars)
        return [
            {
                "id": cal["id"],
                "summary": cal.get("summary", cal["id"]),
                "primary": bool(cal.get("primary")),
                "access_role": cal.get("accessRole"),
            }
            for cal in calendars
        ]

    async def set_linked_calendars(self, connection_id: str, calendar_ids: list[str]) -> CalendarConnection:
        """Replace the set of mirrored calendars.

        Removed calendars lose their sync state, webhook channel and mirrored
        events. Added calendars get a channel and are picked up by a background
        sync pass.
        """
        calendar_ids = list(dict.fromkeys(c for c in calendar_ids if c))
        if not calendar_ids:
            raise ValueError("At least one calendar must stay linked")

        connection = await self.connections.get(connection_id)
        if connection is None:
            raise ValueError(f"Unknown connection {connection_id}")

        removed = [c for c in connection.calendar_ids if c not in calendar_ids]
        added = [c for c in calendar_ids if c not in connection.calendar_ids]

        await self.connections.set_calendar_ids(connection_id, calendar_ids)

        for calendar_id in removed:
            if self.channels is not None:
                await self.channels.stop_channel_for_calendar(connection_id, calendar_id)
            await self.forget_calendar(connection_id, calendar_id)

        if added and connection.status == ConnectionStatus.ACTIVE:
            if self.channels is not None and self.settings.enable_webhooks:
                for calendar_id in added:
                    create_background_task(
                        self.channels.ensure_channel(connection_id, calendar_id),
                        f"webhook_{connection_id}_{calendar_id}",
                    )
            self.trigger_manual_sync(connection_id)

        logger.info(f"Linked calendars for {connection_id}: +{len(added)} -{len(removed)}")
        return await self.connections.get(connection_id)

    async def forget_calendar(self, connection_id: str, calendar_id: str) -> None:
        """Drop the sync cursor and mirrored events of a calendar that is no longer linked."""
        async with self._get_lock(connection_id):
            await self.sync_states.clear(connection_id, calendar_id)
            removed = await self.mirror.delete_calendar(connection_id, calendar_id)
            await self.mirror.commit()
        logger.info(f"Forgot calendar {calendar_id} on {connection_id} ({removed} events removed)")

    async def release_connection(self, connection_id: str) -> None:
        """Called on unlink: cursors are dropped and mirrored events flagged stale."""
        async with self._get_lock(connection_id):
            await self.sync_states.clear(connection_id)
            await self.mirror.mark_status(connection_id, SyncStatus.STALE)
            await self.mirror.commit()
