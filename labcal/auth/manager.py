"""OAuth connection lifecycle: linking, refresh and unlinking."""

import asyncio
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from labcal.audit import AuditLog, SYSTEM_ACTOR
from labcal.auth.google import PROVIDER, GoogleOAuthClient
from labcal.config import Settings, get_settings
from labcal.connections import ConnectionRepository
from labcal.credentials.store import SecretStore
from labcal.errors import (
    AuthenticationRequired,
    ExchangeFailed,
    InvalidState,
    SecretNotFound,
    SecretStoreError,
    TransientProviderError,
)
from labcal.models import CalendarConnection, ConnectionStatus, TokenRecord

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"


class OAuthConnectionManager:
    """Drives the authorization-code flow and owns token refresh.

    Refresh is single-flight per connection: concurrent callers share the
    in-flight refresh instead of issuing their own, since a second refresh
    can invalidate the tokens produced by the first.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        store: SecretStore,
        connections: ConnectionRepository,
        oauth_client: GoogleOAuthClient,
        audit: AuditLog,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.store = store
        self.connections = connections
        self.oauth_client = oauth_client
        self.audit = audit
        self.settings = settings or get_settings()
        self.refresh_margin = timedelta(minutes=self.settings.token_refresh_margin_minutes)
        self._inflight: dict[str, asyncio.Future] = {}
        # Collaborators wired after construction (they depend on this manager)
        self.channels = None
        self.sync_engine = None

    def attach(self, channels=None, sync_engine=None) -> None:
        self.channels = channels
        self.sync_engine = sync_engine

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    async def start_auth(
        self,
        user_id: int,
        redirect_uri: Optional[str] = None,
        login_hint: Optional[str] = None,
    ) -> dict:
        """Issue an authorization URL with a single-use state bound to ``user_id``."""
        redirect_uri = redirect_uri or self.settings.oauth_redirect_uri
        state = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=self.settings.oauth_state_ttl_minutes)

        await self.db.execute(
            """INSERT INTO oauth_states (state, user_id, redirect_uri, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?)""",
            (state, user_id, redirect_uri, now.isoformat(), expires_at.isoformat()),
        )
        await self.db.commit()

        logger.info(f"Started calendar authorization for user {user_id}")
        return {
            "authorization_url": self.oauth_client.authorization_url(redirect_uri, state, login_hint),
            "state": state,
        }

    async def _consume_state(self, state: str, user_id: int) -> str:
        """Validate and burn a state value. Returns the redirect URI it was issued for."""
        if not state:
            raise InvalidState("Missing OAuth state")

        cursor = await self.db.execute(
            "DELETE FROM oauth_states WHERE state = ? RETURNING user_id, redirect_uri, expires_at",
            (state,),
        )
        row = await cursor.fetchone()
        await self.db.commit()

        if row is None:
            logger.warning(f"Rejected unknown or reused OAuth state for user {user_id}")
            raise InvalidState("Unknown or already used OAuth state")

        if datetime.fromisoformat(row["expires_at"]) < datetime.now(timezone.utc):
            raise InvalidState("OAuth state expired")

        if row["user_id"] != user_id:
            logger.warning(f"OAuth state issued to user {row['user_id']} presented by user {user_id}")
            raise InvalidState("OAuth state does not belong to this user")

        return row["redirect_uri"]

    async def complete_auth(self, code: str, state: str, user_id: int) -> CalendarConnection:
        """Exchange the code, store the credentials and create an active connection.

        Raises:
            InvalidState: state missing, expired, reused or issued to another user
            ExchangeFailed: the provider rejected the code
        """
        redirect_uri = await self._consume_state(state, user_id)

        if not code:
            raise ExchangeFailed("Authorization code is required")

        tokens = await self.oauth_client.exchange_code(code, redirect_uri)
        access_token = tokens.get("access_token")
        if not access_token:
            raise ExchangeFailed("Token response did not include an access token")

        user_info = await self.oauth_client.get_user_info(access_token)
        email = user_info.get("email") or "unknown"

        if not tokens.get("refresh_token"):
            logger.warning(f"No refresh token received for user {user_id}; the link will need renewing at expiry")

        connection_id = f"{PROVIDER}-{uuid.uuid4().hex}"
        await self.connections.create(
            connection_id,
            user_id=user_id,
            provider=PROVIDER,
            account_email=email,
            calendar_ids=[DEFAULT_CALENDAR_ID],
            status=ConnectionStatus.LINKING,
        )

        now = datetime.now(timezone.utc)
        record = TokenRecord(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_at=now + timedelta(seconds=int(tokens.get("expires_in") or 3600)),
            provider=PROVIDER,
            user_id=str(user_id),
            email=email,
            created_at=now,
            last_refreshed_at=now,
        )

        try:
            await self.store.put(connection_id, record, actor=f"user:{user_id}")
        except SecretStoreError as e:
            await self.connections.set_status(connection_id, ConnectionStatus.ERROR, f"Failed to store credentials: {e}")
            raise

        await self.connections.set_status(connection_id, ConnectionStatus.ACTIVE)
        await self.audit.record(
            "CONNECTION_LINKED", "calendarConnection", connection_id,
            actor=f"user:{user_id}", details={"provider": PROVIDER, "email": email},
        )
        logger.info(f"Linked {PROVIDER} calendar {email} for user {user_id} as {connection_id}")

        return await self.connections.get(connection_id)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _load(self, connection_id: str) -> TokenRecord:
        try:
            return await self.store.get(connection_id)
        except SecretNotFound as e:
            connection = await self.connections.get(connection_id)
            if connection and connection.status == ConnectionStatus.ACTIVE:
                await self._mark_error(connection_id, "Credentials missing; reconnect required")
            raise AuthenticationRequired(
                f"No credentials for connection {connection_id}", connection_id
            ) from e

    async def refresh_if_needed(self, connection_id: str, force: bool = False) -> TokenRecord:
        """Return a record whose access token is not within the safety margin of expiry.

        Raises:
            AuthenticationRequired: no record, no refresh token, or the provider
                rejected the refresh token. The connection is moved to ``error``.
            SecretStoreUnavailable: the store could not be reached; do not re-prompt.
        """
        inflight = self._inflight.get(connection_id)
        if inflight is not None:
            return await asyncio.shield(inflight)

        record = await self._load(connection_id)
        if not force and not record.expires_within(self.refresh_margin, datetime.now(timezone.utc)):
            return record

        # Re-check: another caller may have started a refresh while we were reading
        inflight = self._inflight.get(connection_id)
        if inflight is None:
            inflight = asyncio.ensure_future(self._refresh(connection_id, record.access_token, force))
            self._inflight[connection_id] = inflight
            inflight.add_done_callback(lambda _f: self._inflight.pop(connection_id, None))
        return await asyncio.shield(inflight)

    async def get_access_token(self, connection_id: str, force_refresh: bool = False) -> str:
        record = await self.refresh_if_needed(connection_id, force=force_refresh)
        return record.access_token

    async def _refresh(self, connection_id: str, seen_access_token: str, force: bool) -> TokenRecord:
        record = await self._load(connection_id)

        # Someone else already replaced the token we were about to refresh
        if record.access_token != seen_access_token:
            return record
        if not force and not record.expires_within(self.refresh_margin, datetime.now(timezone.utc)):
            return record

        if not record.refresh_token:
            await self._mark_error(connection_id, "No refresh token available; reconnect required")
            raise AuthenticationRequired(
                f"Connection {connection_id} has no refresh token", connection_id
            )

        logger.info(f"Refreshing access token for connection {connection_id}")

        max_attempts = max(1, self.settings.token_refresh_max_attempts)
        for attempt in range(max_attempts):
            try:
                tokens = await self.oauth_client.refresh_access_token(record.refresh_token)
                break
            except AuthenticationRequired as e:
                # Never retried: the grant is gone and the user has to relink
                await self._mark_error(connection_id, f"Refresh token rejected: {e}")
                raise AuthenticationRequired(str(e), connection_id) from e
            except TransientProviderError as e:
                if attempt == max_attempts - 1:
                    logger.error(f"Failed to refresh token for {connection_id} after {max_attempts} attempts: {e}")
                    raise
                wait_time = self.settings.sync_retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"Token refresh attempt {attempt + 1} for {connection_id} failed, "
                    f"retrying in {wait_time}s: {e}"
                )
                await asyncio.sleep(wait_time)

        now = datetime.now(timezone.utc)
        refreshed = record.model_copy(
            update={
                "access_token": tokens["access_token"],
                "refresh_token": tokens.get("refresh_token") or record.refresh_token,
                "expires_at": now + timedelta(seconds=int(tokens.get("expires_in") or 3600)),
                "last_refreshed_at": now,
            }
        )
        await self.store.put(connection_id, refreshed)
        return refreshed

    async def _mark_error(self, connection_id: str, message: str) -> None:
        await self.connections.set_status(connection_id, ConnectionStatus.ERROR, message)
        await self.audit.record(
            "TOKEN_REFRESH_FAILED", "calendarToken", connection_id, success=False, error=message,
        )

    async def refresh_expiring_tokens(self) -> None:
        """Proactively refresh active connections whose token expires before the next run."""
        window = timedelta(minutes=self.settings.token_refresh_job_minutes) + self.refresh_margin
        expiring = set(await self.store.expiring_before(datetime.now(timezone.utc) + window))
        if not expiring:
            return

        active = await self.connections.list_by_status(ConnectionStatus.ACTIVE)
        targets = [c.id for c in active if c.id in expiring]
        logger.info(f"Refreshing {len(targets)} expiring tokens")

        for connection_id in targets:
            try:
                await self.refresh_if_needed(connection_id, force=True)
            except AuthenticationRequired:
                logger.warning(f"Connection {connection_id} needs to be relinked")
            except (TransientProviderError, SecretStoreError) as e:
                logger.error(f"Failed to refresh token for {connection_id}: {e}")

    # ------------------------------------------------------------------
    # Unlink
    # ------------------------------------------------------------------

    async def unlink(self, connection_id: str, actor: str = SYSTEM_ACTOR) -> None:
        """Stop channels, revoke and delete credentials, and mark the connection revoked.

        Calling this on a revoked or unknown connection is a no-op.
        """
        connection = await self.connections.get(connection_id)
        if connection is None or connection.status == ConnectionStatus.REVOKED:
            return

        # Read first: an unreachable store must leave the connection untouched
        try:
            record = await self.store.get(connection_id, actor=actor)
        except SecretNotFound:
            record = None

        if self.channels is not None:
            await self.channels.stop_channels_for_connection(connection_id)

        if record is not None:
            try:
                await self.oauth_client.revoke_token(record.refresh_token or record.access_token)
            except TransientProviderError as e:
                logger.warning(f"Could not revoke token for {connection_id} at provider: {e}")

        await self.store.delete(connection_id, actor=actor)

        if self.sync_engine is not None:
            await self.sync_engine.release_connection(connection_id)

        await self.connections.set_status(connection_id, ConnectionStatus.REVOKED)
        await self.audit.record(
            "CONNECTION_UNLINKED", "calendarConnection", connection_id, actor=actor,
            details={"provider": connection.provider},
        )

    async def cleanup_expired_states(self) -> int:
        cursor = await self.db.execute(
            "DELETE FROM oauth_states WHERE expires_at < ?",
            (datetime.now(timezone.utc).isoformat(),),
        )
        await self.db.commit()
        if cursor.rowcount:
            logger.info(f"Removed {cursor.rowcount} expired OAuth states")
        return cursor.rowcount
