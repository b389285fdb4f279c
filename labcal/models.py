"""Domain models shared by the credential, sync and webhook components."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConnectionStatus(str, Enum):
    LINKING = "linking"
    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    STALE = "stale"
    SYNC_ERROR = "sync-error"


class CalendarConnection(BaseModel):
    """A linked (user, provider) calendar account."""
    id: str
    user_id: int
    provider: str
    account_email: Optional[str] = None
    calendar_ids: list[str] = Field(default_factory=list)
    status: ConnectionStatus
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def needs_reconnect(self) -> bool:
        return self.status == ConnectionStatus.ERROR

    @property
    def is_degraded(self) -> bool:
        """Active, but the last sync pass exhausted its retries."""
        return self.status == ConnectionStatus.ACTIVE and self.last_error is not None


class TokenRecord(BaseModel):
    """OAuth credentials for one connection, as held in the secret store."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    provider: str
    user_id: str
    email: str
    created_at: datetime
    last_refreshed_at: datetime

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        return self.expires_at <= now + margin


class SyncState(BaseModel):
    connection_id: str
    calendar_id: str
    sync_token: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    last_full_sync: Optional[datetime] = None
    last_incremental_sync: Optional[datetime] = None


class Attendee(BaseModel):
    email: str
    display_name: Optional[str] = None
    response: Literal["accepted", "declined", "tentative", "none"] = "none"


class Reminder(BaseModel):
    method: str
    minutes_before: int


class MirroredEvent(BaseModel):
    """Local, read-only copy of a provider event."""
    connection_id: str
    external_id: str
    calendar_id: str
    owner_id: int
    calendar_source: str
    title: str
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime
    is_all_day: bool = False
    attendees: list[Attendee] = Field(default_factory=list)
    reminders: list[Reminder] = Field(default_factory=list)
    visibility: Literal["private", "lab", "organisation"] = "lab"
    read_only: bool = True
    sync_status: SyncStatus = SyncStatus.SYNCED
    last_synced_at: Optional[datetime] = None
    external_url: str = ""
    remote_created_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None


class WebhookChannel(BaseModel):
    channel_id: str
    connection_id: str
    calendar_id: str
    resource_id: str
    token: str
    expiration: datetime
    created_at: datetime


class WebhookNotification(BaseModel):
    """Inbound push notification, reduced to the fields we act on."""
    model_config = ConfigDict(frozen=True)

    channel_id: str
    resource_id: Optional[str] = None


class EventPage(BaseModel):
    """One page of an events listing."""
    events: list[dict] = Field(default_factory=list)
    deleted_ids: list[str] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


class SyncResult(BaseModel):
    connection_id: str
    status: Literal["success", "partial", "failed"]
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    full_resyncs: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class MigrationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    connection_id: str
    user_id: Optional[str] = None
    provider: Optional[str] = None
    status: Literal["success", "failed", "skipped"]
    reason: Optional[str] = None
    error: Optional[str] = None


class MigrationSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    total_connections: int
    total_tokens: int
    migrated: int
    failed: int
    skipped: int
    results: tuple[MigrationResult, ...] = ()
    errors: tuple[str, ...] = ()


class VerificationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    connection_id: str
    user_id: Optional[str] = None
    provider: Optional[str] = None
    in_secret_store: bool


class VerificationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_connections: int
    all_migrated: bool
    migrated: int
    not_migrated: int
    results: tuple[VerificationEntry, ...] = ()


class CleanupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    deleted_count: int
    message: str


class AuditFinding(BaseModel):
    severity: Literal["info", "warning", "critical"]
    category: str
    message: str
    count: Optional[int] = None


class CredentialAuditReport(BaseModel):
    timestamp: datetime
    connections: int
    legacy_tokens: int
    secret_store_records: int
    findings: list[AuditFinding] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    status: Literal["healthy", "warnings", "critical"]


class Actor(BaseModel):
    """Who is invoking an administrative operation."""
    model_config = ConfigDict(frozen=True)

    id: str
    is_admin: bool = False
