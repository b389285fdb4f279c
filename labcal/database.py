"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from labcal.config import get_settings

logger = logging.getLogger(__name__)

# Process-wide connection used by the web application
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Lab members (identity provider login is handled elsewhere)
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT,
    is_admin BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_login_at TIMESTAMP
);

-- One row per linked (user, provider) calendar account
CREATE TABLE IF NOT EXISTS calendar_connections (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    account_email TEXT,
    calendar_ids TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    last_synced_at TIMESTAMP,
    last_error TEXT,
    consecutive_failures INTEGER DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_connections_user ON calendar_connections(user_id);
CREATE INDEX IF NOT EXISTS idx_connections_status ON calendar_connections(status);

-- Hardened credential store: metadata row per connection...
CREATE TABLE IF NOT EXISTS secret_store (
    connection_id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    user_id TEXT NOT NULL,
    latest_version INTEGER NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

-- ...and encrypted, append-only versions
CREATE TABLE IF NOT EXISTS secret_versions (
    connection_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    payload_encrypted BLOB NOT NULL,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (connection_id, version)
);

-- Plaintext tokens written before the secret store existed
CREATE TABLE IF NOT EXISTS legacy_calendar_tokens (
    connection_id TEXT PRIMARY KEY,
    user_id TEXT,
    provider TEXT,
    email TEXT,
    access_token TEXT,
    refresh_token TEXT,
    expires_at INTEGER,
    created_at TEXT,
    updated_at TEXT
);

-- Incremental sync cursor per connection and calendar
CREATE TABLE IF NOT EXISTS calendar_sync_state (
    connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    calendar_id TEXT NOT NULL,
    sync_token TEXT,
    window_start TIMESTAMP,
    window_end TIMESTAMP,
    last_full_sync TIMESTAMP,
    last_incremental_sync TIMESTAMP,
    PRIMARY KEY (connection_id, calendar_id)
);

-- Local mirror of remote events
CREATE TABLE IF NOT EXISTS mirrored_events (
    connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    external_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    owner_id INTEGER NOT NULL,
    calendar_source TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    location TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP NOT NULL,
    is_all_day BOOLEAN DEFAULT FALSE,
    attendees TEXT NOT NULL DEFAULT '[]',
    reminders TEXT NOT NULL DEFAULT '[]',
    visibility TEXT NOT NULL,
    read_only BOOLEAN NOT NULL DEFAULT TRUE,
    sync_status TEXT NOT NULL,
    last_synced_at TIMESTAMP,
    external_url TEXT,
    remote_created_at TIMESTAMP,
    remote_updated_at TIMESTAMP,
    PRIMARY KEY (connection_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_mirrored_events_calendar
    ON mirrored_events(connection_id, calendar_id);
CREATE INDEX IF NOT EXISTS idx_mirrored_events_start ON mirrored_events(owner_id, start_at);

-- Push notification channels
CREATE TABLE IF NOT EXISTS webhook_channels (
    channel_id TEXT PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    calendar_id TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    token TEXT NOT NULL,
    expiration TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_webhook_expiration ON webhook_channels(expiration);
CREATE INDEX IF NOT EXISTS idx_webhook_connection ON webhook_channels(connection_id, calendar_id);

-- Anti-forgery state for the OAuth linking flow
CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    redirect_uri TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_oauth_states_expiry ON oauth_states(expires_at);

-- One row per sync pass
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL,
    user_id INTEGER,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_connection ON sync_log(connection_id, created_at);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY,
    created_at TIMESTAMP NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    success BOOLEAN NOT NULL,
    details TEXT,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at);
"""


async def connect(database_path: str) -> aiosqlite.Connection:
    """Open a connection with the pragmas and schema the application expects."""
    db = await aiosqlite.connect(database_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute("PRAGMA journal_mode = WAL")
    await init_schema(db)
    return db


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await connect(settings.database_path)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")
