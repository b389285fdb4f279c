"""Read/delete access to the plaintext token table that predates the secret store."""

import logging
from typing import Iterable, Optional

import aiosqlite
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class LegacyToken(BaseModel):
    connection_id: str
    user_id: Optional[str] = None
    provider: Optional[str] = None
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch milliseconds
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LegacyTokenStore:
    """Legacy records are keyed by connection id, same as the secret store."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_all(self) -> list[LegacyToken]:
        cursor = await self.db.execute(
            "SELECT * FROM legacy_calendar_tokens ORDER BY connection_id"
        )
        return [LegacyToken(**dict(row)) for row in await cursor.fetchall()]

    async def get(self, connection_id: str) -> Optional[LegacyToken]:
        cursor = await self.db.execute(
            "SELECT * FROM legacy_calendar_tokens WHERE connection_id = ?", (connection_id,)
        )
        row = await cursor.fetchone()
        if row:
            return LegacyToken(**dict(row))
        return None

    async def count(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM legacy_calendar_tokens")
        return (await cursor.fetchone())[0]

    async def delete_many(self, connection_ids: Iterable[str]) -> int:
        """Delete the given legacy records in a single transaction. Returns the count removed."""
        deleted = 0
        try:
            for connection_id in connection_ids:
                cursor = await self.db.execute(
                    "DELETE FROM legacy_calendar_tokens WHERE connection_id = ?", (connection_id,)
                )
                deleted += cursor.rowcount
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(f"Deleted {deleted} legacy token records")
        return deleted
