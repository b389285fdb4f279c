"""Wiring of the calendar components around one database connection."""

import logging
from typing import Any, Callable, Optional

import aiosqlite
from fastapi import Request

from labcal.audit import AuditLog
from labcal.auth.google import GoogleOAuthClient
from labcal.auth.manager import OAuthConnectionManager
from labcal.config import Settings, get_settings
from labcal.connections import ConnectionRepository
from labcal.credentials.legacy import LegacyTokenStore
from labcal.credentials.migration import CredentialMigrationTool
from labcal.credentials.store import SecretStore
from labcal.encryption import EncryptionManager
from labcal.sync.channels import WebhookChannelManager
from labcal.sync.engine import SyncEngine
from labcal.sync.mirror import EventMirror, SyncStateRepository
from labcal.utils.tasks import create_background_task

logger = logging.getLogger(__name__)


class Services:
    """Every component gets its collaborators explicitly; nothing reaches for globals."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        encryption: EncryptionManager,
        settings: Optional[Settings] = None,
        oauth_client: Optional[GoogleOAuthClient] = None,
        calendar_client_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()

        self.audit = AuditLog(db)
        self.store = SecretStore(db, encryption, self.audit, self.settings.secret_store_max_versions)
        self.legacy = LegacyTokenStore(db)
        self.connections = ConnectionRepository(db)
        self.mirror = EventMirror(db)
        self.sync_states = SyncStateRepository(db)

        self.oauth = OAuthConnectionManager(
            db,
            self.store,
            self.connections,
            oauth_client or GoogleOAuthClient(
                self.settings.google_client_id,
                self.settings.google_client_secret,
                timeout=self.settings.provider_timeout_seconds,
            ),
            self.audit,
            self.settings,
        )
        self.sync_engine = SyncEngine(
            db,
            self.oauth,
            self.connections,
            self.mirror,
            self.sync_states,
            client_factory=calendar_client_factory,
            settings=self.settings,
        )
        self.channels = WebhookChannelManager(
            db,
            self.oauth,
            self.connections,
            client_factory=calendar_client_factory,
            settings=self.settings,
        )
        self.oauth.attach(channels=self.channels, sync_engine=self.sync_engine)
        self.sync_engine.attach(self.channels)
        self.channels.attach(self.sync_engine)

        self.migration = CredentialMigrationTool(
            self.legacy, self.store, self.connections, self.audit, self.settings
        )

    def start_connection(self, connection_id: str) -> None:
        """Kick off the initial sync and webhook registration for a newly linked connection."""
        self.sync_engine.trigger_manual_sync(connection_id)
        if self.settings.enable_webhooks:
            create_background_task(
                self.channels.ensure_channels_for_connection(connection_id),
                f"webhooks_connection_{connection_id}",
            )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the container built at startup."""
    return request.app.state.services
