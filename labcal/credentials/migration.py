"""Administrator tooling to move credentials out of the legacy plaintext table.

Three phases, each safe to re-run:

1. ``migrate`` copies every legacy record that has no secret store record yet
   and re-checks the write. Legacy data is never touched.
2. ``verify`` reports which connections have a secret store record.
3. ``cleanup`` deletes the legacy table, but only for an administrator who
   supplies the exact confirmation phrase, and only if ``verify`` passes at
   that moment.

Every phase leaves an audit entry, including when it fails.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from labcal.audit import AuditLog
from labcal.config import Settings, get_settings
from labcal.connections import ConnectionRepository
from labcal.credentials.legacy import LegacyToken, LegacyTokenStore
from labcal.credentials.store import SecretStore
from labcal.errors import (
    CalendarSyncError,
    ConfirmationRequired,
    MigrationIncomplete,
    PermissionDenied,
    SecretStoreError,
)
from labcal.models import (
    Actor,
    AuditFinding,
    CalendarConnection,
    CleanupResult,
    ConnectionStatus,
    CredentialAuditReport,
    MigrationResult,
    MigrationSummary,
    TokenRecord,
    VerificationEntry,
    VerificationReport,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "system"
DEFAULT_PROVIDER = "google"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_duration(start: datetime, end: datetime) -> str:
    seconds = int((end - start).total_seconds())
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class CredentialMigrationTool:
    def __init__(
        self,
        legacy: LegacyTokenStore,
        store: SecretStore,
        connections: ConnectionRepository,
        audit: AuditLog,
        settings: Optional[Settings] = None,
    ):
        self.legacy = legacy
        self.store = store
        self.connections = connections
        self.audit = audit
        self.settings = settings or get_settings()

    @staticmethod
    def _require_admin(actor: Actor, operation: str) -> None:
        if not actor.is_admin:
            logger.warning(f"Non-administrator {actor.id} attempted credential {operation}")
            raise PermissionDenied(f"Only administrators can run credential {operation}")

    # ------------------------------------------------------------------
    # Phase 1: migrate
    # ------------------------------------------------------------------

    async def migrate(self, actor: Actor) -> MigrationSummary:
        """Copy legacy records into the secret store. One failure never stops the batch."""
        start_time = datetime.now(timezone.utc)
        results: list[MigrationResult] = []
        errors: list[str] = []
        total_connections = 0
        total_tokens = 0
        failure: Optional[str] = None

        try:
            self._require_admin(actor, "migration")
            logger.info(f"Credential migration started by {actor.id}")

            connections = {c.id: c for c in await self.connections.list_all()}
            legacy_tokens = await self.legacy.list_all()
            total_connections = len(connections)
            total_tokens = len(legacy_tokens)
            logger.info(f"Migrating {total_tokens} legacy tokens ({total_connections} connections)")

            for token in legacy_tokens:
                result = await self._migrate_one(token, connections.get(token.connection_id), actor)
                results.append(result)
                if result.status == "failed":
                    errors.append(f"{result.connection_id} ({result.provider}): {result.error}")
        except Exception as e:
            failure = str(e)
            raise
        finally:
            end_time = datetime.now(timezone.utc)
            migrated = sum(1 for r in results if r.status == "success")
            failed = sum(1 for r in results if r.status == "failed")
            skipped = sum(1 for r in results if r.status == "skipped")
            await self.audit.record(
                "TOKENS_MIGRATED_TO_SECRET_STORE" if failure is None else "TOKEN_MIGRATION_FAILED",
                ENTITY_TYPE,
                actor=actor.id,
                success=failure is None and failed == 0,
                details={
                    "total_connections": total_connections,
                    "total_tokens": total_tokens,
                    "migrated": migrated,
                    "failed": failed,
                    "skipped": skipped,
                    "duration": _format_duration(start_time, end_time),
                },
                error=failure,
            )

        summary = MigrationSummary(
            start_time=start_time,
            end_time=end_time,
            total_connections=total_connections,
            total_tokens=total_tokens,
            migrated=migrated,
            failed=failed,
            skipped=skipped,
            results=tuple(results),
            errors=tuple(errors),
        )
        logger.info(
            f"Credential migration finished: {migrated} migrated, {skipped} skipped, {failed} failed"
        )
        return summary

    async def _migrate_one(
        self,
        token: LegacyToken,
        connection: Optional[CalendarConnection],
        actor: Actor,
    ) -> MigrationResult:
        connection_id = token.connection_id
        user_id = token.user_id or (str(connection.user_id) if connection else None)
        provider = token.provider or (connection.provider if connection else DEFAULT_PROVIDER)

        try:
            if await self.store.exists(connection_id, actor=actor.id):
                return MigrationResult(
                    connection_id=connection_id,
                    user_id=user_id,
                    provider=provider,
                    status="skipped",
                    reason="Already migrated to secret store",
                )

            if not token.access_token and not token.refresh_token:
                raise ValueError("Legacy record holds no tokens")

            record = self._build_record(token, connection, user_id, provider)
            await self.store.put(connection_id, record, actor=actor.id)

            if not await self.store.exists(connection_id, actor=actor.id):
                raise SecretStoreError("Verification failed - record not found after storage")
        except (CalendarSyncError, ValueError) as e:
            logger.error(f"Failed to migrate credentials for {connection_id}: {e}")
            return MigrationResult(
                connection_id=connection_id,
                user_id=user_id,
                provider=provider,
                status="failed",
                error=str(e),
            )

        logger.info(f"Migrated credentials for {connection_id} ({provider})")
        return MigrationResult(
            connection_id=connection_id, user_id=user_id, provider=provider, status="success"
        )

    @staticmethod
    def _build_record(
        token: LegacyToken,
        connection: Optional[CalendarConnection],
        user_id: Optional[str],
        provider: str,
    ) -> TokenRecord:
        now = datetime.now(timezone.utc)
        if not token.access_token:
            # Nothing usable to serve; the first read refreshes
            expires_at = now
        elif token.expires_at:
            expires_at = datetime.fromtimestamp(token.expires_at / 1000, tz=timezone.utc)
        else:
            expires_at = now + timedelta(hours=1)

        return TokenRecord(
            access_token=token.access_token or "",
            refresh_token=token.refresh_token,
            expires_at=expires_at,
            provider=provider,
            user_id=user_id or "",
            email=token.email or (connection.account_email if connection else None) or "unknown",
            created_at=_parse_timestamp(token.created_at) or (connection.created_at if connection else now),
            last_refreshed_at=_parse_timestamp(token.updated_at) or now,
        )

    # ------------------------------------------------------------------
    # Phase 2: verify
    # ------------------------------------------------------------------

    async def _build_verification(self, actor: Actor) -> VerificationReport:
        legacy = {t.connection_id: t for t in await self.legacy.list_all()}
        connections = {
            c.id: c for c in await self.connections.list_all() if c.status != ConnectionStatus.REVOKED
        }

        entries = []
        for connection_id in sorted(set(legacy) | set(connections)):
            connection = connections.get(connection_id)
            token = legacy.get(connection_id)
            entries.append(
                VerificationEntry(
                    connection_id=connection_id,
                    user_id=str(connection.user_id) if connection else token.user_id,
                    provider=connection.provider if connection else token.provider,
                    in_secret_store=await self.store.exists(connection_id, actor=actor.id),
                )
            )

        migrated = sum(1 for e in entries if e.in_secret_store)
        return VerificationReport(
            total_connections=len(entries),
            all_migrated=migrated == len(entries),
            migrated=migrated,
            not_migrated=len(entries) - migrated,
            results=tuple(entries),
        )

    async def verify(self, actor: Actor) -> VerificationReport:
        """Check every live connection and legacy record against the secret store."""
        report = None
        failure: Optional[str] = None
        try:
            self._require_admin(actor, "verification")
            report = await self._build_verification(actor)
            return report
        except Exception as e:
            failure = str(e)
            raise
        finally:
            await self.audit.record(
                "TOKEN_MIGRATION_VERIFIED",
                ENTITY_TYPE,
                actor=actor.id,
                success=failure is None,
                details={
                    "total_connections": report.total_connections,
                    "migrated": report.migrated,
                    "not_migrated": report.not_migrated,
                } if report else None,
                error=failure,
            )

    # ------------------------------------------------------------------
    # Phase 3: cleanup
    # ------------------------------------------------------------------

    async def cleanup(self, actor: Actor, confirmation: Optional[str]) -> CleanupResult:
        """Delete the legacy records covered by a passing verification.

        Raises:
            PermissionDenied: the actor is not an administrator
            ConfirmationRequired: ``confirmation`` is not the exact configured phrase
            MigrationIncomplete: verification found connections without a secret store record
        """
        deleted = 0
        failure: Optional[str] = None
        try:
            self._require_admin(actor, "cleanup")

            expected = self.settings.migration_cleanup_confirmation
            if confirmation != expected:
                raise ConfirmationRequired(f'Must provide confirmation code: "{expected}"')

            verification = await self._build_verification(actor)
            if not verification.all_migrated:
                raise MigrationIncomplete(
                    f"Cannot cleanup: {verification.not_migrated} connections not yet migrated to the secret store"
                )

            # Only the records that were verified; anything written since stays for the next round
            deleted = await self.legacy.delete_many(e.connection_id for e in verification.results)
        except Exception as e:
            failure = str(e)
            logger.warning(f"Legacy token cleanup by {actor.id} refused or failed: {e}")
            raise
        finally:
            await self.audit.record(
                "LEGACY_TOKENS_DELETED" if failure is None else "LEGACY_TOKEN_CLEANUP_FAILED",
                ENTITY_TYPE,
                actor=actor.id,
                success=failure is None,
                details={"deleted_count": deleted},
                error=failure,
            )

        logger.info(f"Legacy token cleanup by {actor.id} removed {deleted} records")
        return CleanupResult(
            success=True,
            deleted_count=deleted,
            message=f"Successfully deleted {deleted} legacy tokens",
        )

    # ------------------------------------------------------------------
    # Collection audit
    # ------------------------------------------------------------------

    async def audit_collections(self, actor: Actor) -> CredentialAuditReport:
        """Compare connections, legacy tokens and secret store records."""
        report = None
        failure: Optional[str] = None
        try:
            self._require_admin(actor, "audit")
            report = await self._build_audit_report()
            return report
        except Exception as e:
            failure = str(e)
            raise
        finally:
            await self.audit.record(
                "CREDENTIAL_AUDIT_EXECUTED" if failure is None else "CREDENTIAL_AUDIT_FAILED",
                ENTITY_TYPE,
                actor=actor.id,
                success=failure is None,
                details={
                    "status": report.status,
                    "findings": len(report.findings),
                    "critical": sum(1 for f in report.findings if f.severity == "critical"),
                    "warnings": sum(1 for f in report.findings if f.severity == "warning"),
                } if report else None,
                error=failure,
            )

    async def _build_audit_report(self) -> CredentialAuditReport:
        connections = await self.connections.list_all()
        legacy_count = await self.legacy.count()
        stored_ids = set(await self.store.list_connection_ids())

        live = [c for c in connections if c.status != ConnectionStatus.REVOKED]
        live_ids = {c.id for c in live}
        findings: list[AuditFinding] = []
        recommendations: list[str] = []

        active_missing = [
            c.id for c in live if c.status == ConnectionStatus.ACTIVE and c.id not in stored_ids
        ]
        if active_missing:
            findings.append(AuditFinding(
                severity="critical",
                category="data_mismatch",
                message=f"{len(active_missing)} active connections have no credentials in the secret store",
                count=len(active_missing),
            ))
            recommendations.append("Run the credential migration, then ask affected users to reconnect")

        if legacy_count:
            findings.append(AuditFinding(
                severity="warning",
                category="security",
                message=f"{legacy_count} OAuth tokens stored in plaintext (should migrate to the secret store)",
                count=legacy_count,
            ))
            recommendations.append("Migrate legacy tokens to the secret store and run cleanup once verified")

        if legacy_count and legacy_count != len(live):
            findings.append(AuditFinding(
                severity="warning",
                category="data_mismatch",
                message=f"Legacy token count ({legacy_count}) does not match connection count ({len(live)})",
                count=abs(legacy_count - len(live)),
            ))
            recommendations.append(
                "Investigate token/connection mismatch - some connections may be missing tokens "
                "or tokens may be orphaned"
            )

        orphaned = stored_ids - live_ids
        if orphaned:
            findings.append(AuditFinding(
                severity="warning",
                category="orphaned_data",
                message=f"{len(orphaned)} secret store records belong to no live connection",
                count=len(orphaned),
            ))
            recommendations.append("Delete secret store records of revoked or removed connections")

        needs_reconnect = sum(1 for c in live if c.needs_reconnect)
        if needs_reconnect:
            findings.append(AuditFinding(
                severity="warning",
                category="performance",
                message=f"{needs_reconnect} connections need to be reconnected by their owners",
                count=needs_reconnect,
            ))

        degraded = sum(1 for c in live if c.is_degraded)
        if degraded:
            findings.append(AuditFinding(
                severity="info",
                category="performance",
                message=f"{degraded} connections are degraded after exhausting sync retries",
                count=degraded,
            ))

        if not findings:
            findings.append(AuditFinding(
                severity="info",
                category="data_mismatch",
                message="Connections and secret store records are consistent",
                count=len(live),
            ))

        if any(f.severity == "critical" for f in findings):
            status = "critical"
        elif any(f.severity == "warning" for f in findings):
            status = "warnings"
        else:
            status = "healthy"

        return CredentialAuditReport(
            timestamp=datetime.now(timezone.utc),
            connections=len(live),
            legacy_tokens=legacy_count,
            secret_store_records=len(stored_ids),
            findings=findings,
            recommendations=recommendations,
            status=status,
        )
