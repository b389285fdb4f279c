"""Append-only audit trail."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditLog:
    """Writes audit entries to the audit_log table.

    Appending never raises: a failed append is logged and the caller's
    primary outcome is left untouched.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
        success: bool = True,
        details: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            await self.db.execute(
                """INSERT INTO audit_log
                   (created_at, actor, action, entity_type, entity_id, success, details, error)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    datetime.now(timezone.utc).isoformat(),
                    actor,
                    action,
                    entity_type,
                    entity_id,
                    success,
                    json.dumps(details, default=str) if details is not None else None,
                    error,
                ),
            )
            await self.db.commit()
        except Exception:
            logger.exception(f"Failed to write audit entry {action} for {entity_type} {entity_id}")

    async def list_entries(
        self,
        action: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict]:
        query = "SELECT * FROM audit_log"
        clauses = []
        params: list[Any] = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = await self.db.execute(query, params)
        rows = await cursor.fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["success"] = bool(entry["success"])
            entry["details"] = json.loads(entry["details"]) if entry["details"] else None
            entries.append(entry)
        return entries
