"""Persistence for calendar connections."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from labcal.models import CalendarConnection, ConnectionStatus

logger = logging.getLogger(__name__)


def _row_to_connection(row: aiosqlite.Row) -> CalendarConnection:
    data = dict(row)
    data["calendar_ids"] = json.loads(data["calendar_ids"] or "[]")
    data["consecutive_failures"] = data["consecutive_failures"] or 0
    return CalendarConnection(**data)


class ConnectionRepository:
    """CRUD for calendar_connections rows."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(
        self,
        connection_id: str,
        user_id: int,
        provider: str,
        account_email: Optional[str],
        calendar_ids: list[str],
        status: ConnectionStatus = ConnectionStatus.LINKING,
    ) -> CalendarConnection:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO calendar_connections
               (id, user_id, provider, account_email, calendar_ids, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                connection_id,
                user_id,
                provider,
                account_email,
                json.dumps(calendar_ids),
                status.value,
                now,
                now,
            ),
        )
        await self.db.commit()
        return await self.get(connection_id)

    async def get(self, connection_id: str) -> Optional[CalendarConnection]:
        cursor = await self.db.execute(
            "SELECT * FROM calendar_connections WHERE id = ?", (connection_id,)
        )
        row = await cursor.fetchone()
        if row:
            return _row_to_connection(row)
        return None

    async def list_for_user(self, user_id: int) -> list[CalendarConnection]:
        cursor = await self.db.execute(
            "SELECT * FROM calendar_connections WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        return [_row_to_connection(row) for row in await cursor.fetchall()]

    async def list_by_status(self, *statuses: ConnectionStatus) -> list[CalendarConnection]:
        placeholders = ",".join("?" for _ in statuses)
        cursor = await self.db.execute(
            f"SELECT * FROM calendar_connections WHERE status IN ({placeholders}) ORDER BY created_at",
            [s.value for s in statuses],
        )
        return [_row_to_connection(row) for row in await cursor.fetchall()]

    async def list_all(self) -> list[CalendarConnection]:
        cursor = await self.db.execute("SELECT * FROM calendar_connections ORDER BY created_at")
        return [_row_to_connection(row) for row in await cursor.fetchall()]

    async def set_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        last_error: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            """UPDATE calendar_connections SET status = ?, last_error = ?, updated_at = ?
               WHERE id = ?""",
            (status.value, last_error, datetime.now(timezone.utc).isoformat(), connection_id),
        )
        await self.db.commit()
        logger.info(f"Connection {connection_id} is now {status.value}")

    async def set_calendar_ids(self, connection_id: str, calendar_ids: list[str]) -> None:
        await self.db.execute(
            "UPDATE calendar_connections SET calendar_ids = ?, updated_at = ? WHERE id = ?",
            (json.dumps(calendar_ids), datetime.now(timezone.utc).isoformat(), connection_id),
        )
        await self.db.commit()

    async def record_sync_success(self, connection_id: str, synced_at: datetime) -> None:
        await self.db.execute(
            """UPDATE calendar_connections SET
               last_synced_at = ?, last_error = NULL, consecutive_failures = 0, updated_at = ?
               WHERE id = ?""",
            (synced_at.isoformat(), synced_at.isoformat(), connection_id),
        )
        await self.db.commit()

    async def record_sync_failure(self, connection_id: str, error: str) -> None:
        """Record a degraded pass; the connection stays active so the next run still happens."""
        await self.db.execute(
            """UPDATE calendar_connections SET
               last_error = ?, consecutive_failures = consecutive_failures + 1, updated_at = ?
               WHERE id = ?""",
            (error, datetime.now(timezone.utc).isoformat(), connection_id),
        )
        await self.db.commit()
