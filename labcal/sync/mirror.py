"""Local event mirror and sync cursors.

Only the sync engine writes through these classes; everything else reads.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from labcal.models import MirroredEvent, SyncState, SyncStatus

logger = logging.getLogger(__name__)


def _row_to_event(row: aiosqlite.Row) -> MirroredEvent:
    data = dict(row)
    data["start"] = data.pop("start_at")
    data["end"] = data.pop("end_at")
    data["attendees"] = json.loads(data["attendees"] or "[]")
    data["reminders"] = json.loads(data["reminders"] or "[]")
    data["is_all_day"] = bool(data["is_all_day"])
    data["read_only"] = bool(data["read_only"])
    return MirroredEvent(**data)


class EventMirror:
    """Upsert/delete by (connection, external id), so replaying a page converges."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def exists(self, connection_id: str, external_id: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM mirrored_events WHERE connection_id = ? AND external_id = ?",
            (connection_id, external_id),
        )
        return await cursor.fetchone() is not None

    async def upsert(self, event: MirroredEvent) -> bool:
        """Create or replace the mirrored event. Returns True if it was new."""
        created = not await self.exists(event.connection_id, event.external_id)
        await self.db.execute(
            """INSERT INTO mirrored_events
               (connection_id, external_id, calendar_id, owner_id, calendar_source, title,
                description, location, start_at, end_at, is_all_day, attendees, reminders,
                visibility, read_only, sync_status, last_synced_at, external_url,
                remote_created_at, remote_updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(connection_id, external_id) DO UPDATE SET
               calendar_id = excluded.calendar_id,
               owner_id = excluded.owner_id,
               calendar_source = excluded.calendar_source,
               title = excluded.title,
               description = excluded.description,
               location = excluded.location,
               start_at = excluded.start_at,
               end_at = excluded.end_at,
               is_all_day = excluded.is_all_day,
               attendees = excluded.attendees,
               reminders = excluded.reminders,
               visibility = excluded.visibility,
               read_only = excluded.read_only,
               sync_status = excluded.sync_status,
               last_synced_at = excluded.last_synced_at,
               external_url = excluded.external_url,
               remote_created_at = excluded.remote_created_at,
               remote_updated_at = excluded.remote_updated_at""",
            (
                event.connection_id,
                event.external_id,
                event.calendar_id,
                event.owner_id,
                event.calendar_source,
                event.title,
                event.description,
                event.location,
                event.start.isoformat(),
                event.end.isoformat(),
                event.is_all_day,
                json.dumps([a.model_dump() for a in event.attendees]),
                json.dumps([r.model_dump() for r in event.reminders]),
                event.visibility,
                event.read_only,
                event.sync_status.value,
                event.last_synced_at.isoformat() if event.last_synced_at else None,
                event.external_url,
                event.remote_created_at.isoformat() if event.remote_created_at else None,
                event.remote_updated_at.isoformat() if event.remote_updated_at else None,
            ),
        )
        return created

    async def delete(self, connection_id: str, external_id: str) -> bool:
        cursor = await self.db.execute(
            "DELETE FROM mirrored_events WHERE connection_id = ? AND external_id = ?",
            (connection_id, external_id),
        )
        return cursor.rowcount > 0

    async def delete_calendar(self, connection_id: str, calendar_id: str) -> int:
        cursor = await self.db.execute(
            "DELETE FROM mirrored_events WHERE connection_id = ? AND calendar_id = ?",
            (connection_id, calendar_id),
        )
        return cursor.rowcount

    async def delete_missing(self, connection_id: str, calendar_id: str, keep_ids: set[str]) -> int:
        """Delete the calendar's events whose external id is not in ``keep_ids``."""
        cursor = await self.db.execute(
            "SELECT external_id FROM mirrored_events WHERE connection_id = ? AND calendar_id = ?",
            (connection_id, calendar_id),
        )
        missing = [row["external_id"] for row in await cursor.fetchall() if row["external_id"] not in keep_ids]
        for external_id in missing:
            await self.delete(connection_id, external_id)
        if missing:
            logger.info(f"Removed {len(missing)} events of {connection_id}/{calendar_id} absent from the full listing")
        return len(missing)

    async def mark_status(
        self,
        connection_id: str,
        status: SyncStatus,
        calendar_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> int:
        query = "UPDATE mirrored_events SET sync_status = ? WHERE connection_id = ?"
        params: list = [status.value, connection_id]
        if calendar_id is not None:
            query += " AND calendar_id = ?"
            params.append(calendar_id)
        if external_id is not None:
            query += " AND external_id = ?"
            params.append(external_id)
        cursor = await self.db.execute(query, params)
        return cursor.rowcount

    async def commit(self) -> None:
        await self.db.commit()

    async def get(self, connection_id: str, external_id: str) -> Optional[MirroredEvent]:
        cursor = await self.db.execute(
            "SELECT * FROM mirrored_events WHERE connection_id = ? AND external_id = ?",
            (connection_id, external_id),
        )
        row = await cursor.fetchone()
        if row:
            return _row_to_event(row)
        return None

    async def list_events(
        self,
        connection_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[MirroredEvent]:
        query = "SELECT * FROM mirrored_events WHERE connection_id = ?"
        params: list = [connection_id]
        if start is not None:
            query += " AND end_at >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND start_at < ?"
            params.append(end.isoformat())
        query += " ORDER BY start_at, external_id"
        cursor = await self.db.execute(query, params)
        return [_row_to_event(row) for row in await cursor.fetchall()]


class SyncStateRepository:
    """Sync cursors per (connection, calendar). A token is only valid for its calendar."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, connection_id: str, calendar_id: str) -> Optional[SyncState]:
        cursor = await self.db.execute(
            "SELECT * FROM calendar_sync_state WHERE connection_id = ? AND calendar_id = ?",
            (connection_id, calendar_id),
        )
        row = await cursor.fetchone()
        if row:
            return SyncState(**dict(row))
        return None

    async def save_full_sync(
        self,
        connection_id: str,
        calendar_id: str,
        sync_token: Optional[str],
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO calendar_sync_state
               (connection_id, calendar_id, sync_token, window_start, window_end,
                last_full_sync, last_incremental_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(connection_id, calendar_id) DO UPDATE SET
               sync_token = excluded.sync_token,
               window_start = excluded.window_start,
               window_end = excluded.window_end,
               last_full_sync = excluded.last_full_sync,
               last_incremental_sync = excluded.last_incremental_sync""",
            (
                connection_id,
                calendar_id,
                sync_token,
                window_start.isoformat(),
                window_end.isoformat(),
                now,
                now,
            ),
        )
        await self.db.commit()

    async def save_incremental_sync(self, connection_id: str, calendar_id: str, sync_token: str) -> None:
        await self.db.execute(
            """UPDATE calendar_sync_state SET sync_token = ?, last_incremental_sync = ?
               WHERE connection_id = ? AND calendar_id = ?""",
            (sync_token, datetime.now(timezone.utc).isoformat(), connection_id, calendar_id),
        )
        await self.db.commit()

    async def clear(self, connection_id: str, calendar_id: Optional[str] = None) -> None:
        if calendar_id is None:
            await self.db.execute(
                "DELETE FROM calendar_sync_state WHERE connection_id = ?", (connection_id,)
            )
        else:
            await self.db.execute(
                "DELETE FROM calendar_sync_state WHERE connection_id = ? AND calendar_id = ?",
                (connection_id, calendar_id),
            )
        await self.db.commit()
