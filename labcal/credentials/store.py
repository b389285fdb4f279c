"""Secret store for OAuth credential records.

Records are kept as AES-GCM encrypted, versioned payloads keyed by
connection id. A metadata row per connection lets ``exists`` answer
without touching (or decrypting) the payload.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone

import aiosqlite
from pydantic import ValidationError

from labcal.audit import AuditLog, SYSTEM_ACTOR
from labcal.encryption import EncryptionManager
from labcal.errors import SecretNotFound, SecretStoreError, SecretStoreUnavailable
from labcal.models import TokenRecord

logger = logging.getLogger(__name__)

ENTITY_TYPE = "calendarToken"


class SecretStore:
    """Durable, access-controlled storage for connection credentials."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        encryption: EncryptionManager,
        audit: AuditLog,
        max_versions: int = 5,
    ):
        self.db = db
        self.encryption = encryption
        self.audit = audit
        self.max_versions = max(1, max_versions)
        # Serializes writers; each read is a single statement and never sees a half-written version.
        self._write_lock = asyncio.Lock()

    async def put(self, connection_id: str, record: TokenRecord, actor: str = SYSTEM_ACTOR) -> int:
        """Store a new version of the record. Returns the version number."""
        payload = self.encryption.encrypt(
            record.model_dump_json(), associated_data=connection_id.encode("utf-8")
        )
        now = datetime.now(timezone.utc).isoformat()

        try:
            async with self._write_lock:
                cursor = await self.db.execute(
                    "SELECT COALESCE(MAX(version), 0) FROM secret_versions WHERE connection_id = ?",
                    (connection_id,),
                )
                version = (await cursor.fetchone())[0] + 1

                try:
                    await self.db.execute(
                        """INSERT INTO secret_versions (connection_id, version, payload_encrypted, created_at)
                           VALUES (?, ?, ?, ?)""",
                        (connection_id, version, payload, now),
                    )
                    await self.db.execute(
                        """INSERT INTO secret_store
                           (connection_id, provider, user_id, latest_version, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?)
                           ON CONFLICT(connection_id) DO UPDATE SET
                           provider = excluded.provider,
                           user_id = excluded.user_id,
                           latest_version = excluded.latest_version,
                           updated_at = excluded.updated_at""",
                        (connection_id, record.provider, record.user_id, version, now, now),
                    )
                    await self.db.execute(
                        "DELETE FROM secret_versions WHERE connection_id = ? AND version <= ?",
                        (connection_id, version - self.max_versions),
                    )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
        except sqlite3.OperationalError as e:
            await self.audit.record(
                "TOKEN_STORAGE_FAILED", ENTITY_TYPE, connection_id, actor=actor,
                success=False, details={"provider": record.provider}, error=str(e),
            )
            raise SecretStoreUnavailable(f"Secret store unavailable: {e}") from e

        await self.audit.record(
            "TOKEN_STORED", ENTITY_TYPE, connection_id, actor=actor,
            details={"provider": record.provider, "user_id": record.user_id, "version": version},
        )
        logger.info(f"Stored credentials for connection {connection_id} (version {version})")
        return version

    async def get(self, connection_id: str, actor: str = SYSTEM_ACTOR) -> TokenRecord:
        """Return the latest record for the connection.

        Raises:
            SecretNotFound: nothing stored for this connection
            SecretStoreUnavailable: the backend could not be read
            SecretStoreError: the stored payload could not be decrypted
        """
        try:
            cursor = await self.db.execute(
                """SELECT payload_encrypted FROM secret_versions
                   WHERE connection_id = ?
                   ORDER BY version DESC LIMIT 1""",
                (connection_id,),
            )
            row = await cursor.fetchone()
        except sqlite3.OperationalError as e:
            await self.audit.record(
                "TOKEN_ACCESS_FAILED", ENTITY_TYPE, connection_id, actor=actor,
                success=False, error=str(e),
            )
            raise SecretStoreUnavailable(f"Secret store unavailable: {e}") from e

        if row is None:
            raise SecretNotFound(f"No credentials stored for connection {connection_id}")

        try:
            record = TokenRecord.model_validate_json(
                self.encryption.decrypt(
                    row["payload_encrypted"], associated_data=connection_id.encode("utf-8")
                )
            )
        except (ValueError, ValidationError) as e:
            await self.audit.record(
                "TOKEN_ACCESS_FAILED", ENTITY_TYPE, connection_id, actor=actor,
                success=False, error=str(e),
            )
            raise SecretStoreError(f"Stored credentials for {connection_id} are unreadable") from e

        await self.audit.record(
            "TOKEN_ACCESSED", ENTITY_TYPE, connection_id, actor=actor,
            details={"provider": record.provider, "user_id": record.user_id},
        )
        return record

    async def exists(self, connection_id: str, actor: str = SYSTEM_ACTOR) -> bool:
        try:
            cursor = await self.db.execute(
                "SELECT 1 FROM secret_store WHERE connection_id = ?", (connection_id,)
            )
            row = await cursor.fetchone()
        except sqlite3.OperationalError as e:
            raise SecretStoreUnavailable(f"Secret store unavailable: {e}") from e

        await self.audit.record(
            "TOKEN_EXISTS_CHECKED", ENTITY_TYPE, connection_id, actor=actor,
            details={"exists": row is not None},
        )
        return row is not None

    async def delete(self, connection_id: str, actor: str = SYSTEM_ACTOR) -> None:
        """Delete every version. Deleting an absent record is not an error."""
        try:
            async with self._write_lock:
                try:
                    cursor = await self.db.execute(
                        "DELETE FROM secret_store WHERE connection_id = ?", (connection_id,)
                    )
                    removed = cursor.rowcount
                    await self.db.execute(
                        "DELETE FROM secret_versions WHERE connection_id = ?", (connection_id,)
                    )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
        except sqlite3.OperationalError as e:
            await self.audit.record(
                "TOKEN_DELETION_FAILED", ENTITY_TYPE, connection_id, actor=actor,
                success=False, error=str(e),
            )
            raise SecretStoreUnavailable(f"Secret store unavailable: {e}") from e

        await self.audit.record(
            "TOKEN_DELETED", ENTITY_TYPE, connection_id, actor=actor,
            details={"existed": removed > 0},
        )
        if removed:
            logger.info(f"Deleted credentials for connection {connection_id}")

    async def list_versions(self, connection_id: str) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT version, created_at FROM secret_versions
               WHERE connection_id = ? ORDER BY version""",
            (connection_id,),
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def list_connection_ids(self) -> list[str]:
        cursor = await self.db.execute("SELECT connection_id FROM secret_store ORDER BY connection_id")
        return [row["connection_id"] for row in await cursor.fetchall()]

    async def count(self) -> int:
        cursor = await self.db.execute("SELECT COUNT(*) FROM secret_store")
        return (await cursor.fetchone())[0]

    async def expiring_before(self, threshold: datetime) -> list[str]:
        """Connection ids whose latest access token expires before ``threshold``.

        Requires decrypting each record; intended for the periodic refresh job.
        """
        expiring: list[str] = []
        for connection_id in await self.list_connection_ids():
            try:
                record = await self.get(connection_id)
            except SecretStoreError as e:
                logger.warning(f"Skipping unreadable credentials for {connection_id}: {e}")
                continue
            if record.expires_at < threshold:
                expiring.append(connection_id)
        return expiring
