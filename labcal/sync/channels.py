"""Push notification channels: registration, renewal and inbound notifications."""

import asyncio
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import aiosqlite

from labcal.auth.manager import OAuthConnectionManager
from labcal.config import Settings, get_settings
from labcal.connections import ConnectionRepository
from labcal.errors import AuthenticationRequired, CalendarSyncError
from labcal.models import ConnectionStatus, WebhookChannel, WebhookNotification
from labcal.sync.google_calendar import GoogleCalendarClient
from labcal.utils.tasks import create_background_task

logger = logging.getLogger(__name__)


def _row_to_channel(row: aiosqlite.Row) -> WebhookChannel:
    return WebhookChannel(**dict(row))


class WebhookChannelManager:
    """Keeps one live push channel per linked calendar.

    Renewal registers the replacement before stopping the old channel, so a
    calendar that had a channel is never left without one.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        oauth: OAuthConnectionManager,
        connections: ConnectionRepository,
        client_factory: Optional[Callable[[str], Any]] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.oauth = oauth
        self.connections = connections
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda token: GoogleCalendarClient(token, timeout=self.settings.provider_timeout_seconds)
        )
        self.sync_engine = None
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def attach(self, sync_engine) -> None:
        self.sync_engine = sync_engine

    async def _client(self, connection_id: str):
        access_token = await self.oauth.get_access_token(connection_id)
        return self.client_factory(access_token)

    async def get_channel(self, channel_id: str) -> Optional[WebhookChannel]:
        cursor = await self.db.execute(
            "SELECT * FROM webhook_channels WHERE channel_id = ?", (channel_id,)
        )
        row = await cursor.fetchone()
        if row:
            return _row_to_channel(row)
        return None

    async def list_for_connection(self, connection_id: str) -> list[WebhookChannel]:
        cursor = await self.db.execute(
            "SELECT * FROM webhook_channels WHERE connection_id = ? ORDER BY expiration",
            (connection_id,),
        )
        return [_row_to_channel(row) for row in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _get_lock(self, connection_id: str, calendar_id: str) -> asyncio.Lock:
        return self._locks.setdefault((connection_id, calendar_id), asyncio.Lock())

    async def _calendar_channels(self, connection_id: str, calendar_id: str) -> list[WebhookChannel]:
        cursor = await self.db.execute(
            """SELECT * FROM webhook_channels
               WHERE connection_id = ? AND calendar_id = ? ORDER BY expiration""",
            (connection_id, calendar_id),
        )
        return [_row_to_channel(row) for row in await cursor.fetchall()]

    def _renewal_threshold(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(hours=self.settings.webhook_renewal_window_hours)

    async def ensure_channel(self, connection_id: str, calendar_id: str) -> WebhookChannel:
        """Return a channel for the calendar that is not about to expire.

        A channel inside the renewal window is replaced: the new one is
        registered first, then the old one is stopped.
        """
        async with self._get_lock(connection_id, calendar_id):
            channels = await self._calendar_channels(connection_id, calendar_id)
            threshold = self._renewal_threshold()
            live = [c for c in channels if c.expiration > threshold]
            if live:
                return live[-1]
            return await self._replace(connection_id, calendar_id, channels)

    async def _replace(
        self,
        connection_id: str,
        calendar_id: str,
        old_channels: list[WebhookChannel],
    ) -> WebhookChannel:
        """Register a new channel, then stop the old ones. Caller holds the calendar lock."""
        channel = await self._register(connection_id, calendar_id)
        for old in old_channels:
            await self._stop(old)
        return channel

    async def _register(self, connection_id: str, calendar_id: str) -> WebhookChannel:
        client = await self._client(connection_id)

        now = datetime.now(timezone.utc)
        channel_id = str(uuid.uuid4())
        channel_token = secrets.token_urlsafe(32)
        expiration = now + timedelta(hours=self.settings.webhook_channel_ttl_hours)

        result = await asyncio.to_thread(
            client.watch_events,
            calendar_id,
            channel_id,
            self.settings.webhook_url,
            channel_token,
            expiration,
        )

        # The provider may shorten the requested lifetime
        if result.get("expiration"):
            expiration = datetime.fromtimestamp(int(result["expiration"]) / 1000, tz=timezone.utc)

        channel = WebhookChannel(
            channel_id=channel_id,
            connection_id=connection_id,
            calendar_id=calendar_id,
            resource_id=result["resourceId"],
            token=channel_token,
            expiration=expiration,
            created_at=now,
        )
        await self.db.execute(
            """INSERT INTO webhook_channels
               (channel_id, connection_id, calendar_id, resource_id, token, expiration, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                channel.channel_id,
                channel.connection_id,
                channel.calendar_id,
                channel.resource_id,
                channel.token,
                channel.expiration.isoformat(),
                channel.created_at.isoformat(),
            ),
        )
        await self.db.commit()

        logger.info(f"Registered webhook channel {channel_id} for {connection_id}/{calendar_id}")
        return channel

    async def ensure_channels_for_connection(self, connection_id: str) -> None:
        """Register channels for every linked calendar; failures are logged per calendar."""
        connection = await self.connections.get(connection_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            return

        for calendar_id in connection.calendar_ids:
            try:
                await self.ensure_channel(connection_id, calendar_id)
            except CalendarSyncError as e:
                logger.error(f"Failed to register webhook for {connection_id}/{calendar_id}: {e}")

    # ------------------------------------------------------------------
    # Renewal and teardown
    # ------------------------------------------------------------------

    async def renew_expiring(self, now: Optional[datetime] = None) -> int:
        """Replace every channel expiring within the renewal window. Returns the number renewed."""
        threshold = self._renewal_threshold(now)

        cursor = await self.db.execute(
            "SELECT * FROM webhook_channels WHERE expiration < ? ORDER BY expiration",
            (threshold.isoformat(),),
        )
        expiring = [_row_to_channel(row) for row in await cursor.fetchall()]

        if not expiring:
            logger.debug("No webhooks need renewal")
            return 0

        logger.info(f"Renewing {len(expiring)} expiring webhooks")

        renewed = 0
        for channel in expiring:
            async with self._get_lock(channel.connection_id, channel.calendar_id):
                # Already replaced along with a sibling, or by ensure_channel
                if await self.get_channel(channel.channel_id) is None:
                    continue

                connection = await self.connections.get(channel.connection_id)
                if (
                    connection is None
                    or connection.status != ConnectionStatus.ACTIVE
                    or channel.calendar_id not in connection.calendar_ids
                ):
                    await self._stop(channel)
                    continue

                channels = await self._calendar_channels(channel.connection_id, channel.calendar_id)
                if any(c.expiration > threshold for c in channels):
                    await self._stop(channel)
                    continue

                try:
                    await self._replace(channel.connection_id, channel.calendar_id, channels)
                except CalendarSyncError as e:
                    # Keep the old channel; it stays useful until it actually expires
                    logger.error(f"Failed to renew webhook {channel.channel_id}: {e}")
                    continue

                renewed += 1

        return renewed

    async def _stop(self, channel: WebhookChannel) -> None:
        """Stop a channel at the provider (best effort) and forget it locally."""
        try:
            client = await self._client(channel.connection_id)
            await asyncio.to_thread(client.stop_channel, channel.channel_id, channel.resource_id)
        except AuthenticationRequired:
            logger.info(f"No credentials to stop channel {channel.channel_id}; it will lapse at expiry")
        except CalendarSyncError as e:
            logger.warning(f"Failed to stop webhook channel {channel.channel_id}: {e}")

        await self.db.execute(
            "DELETE FROM webhook_channels WHERE channel_id = ?", (channel.channel_id,)
        )
        await self.db.commit()
        logger.info(f"Stopped webhook channel {channel.channel_id}")

    async def stop_channels_for_connection(self, connection_id: str) -> int:
        calendar_ids = {c.calendar_id for c in await self.list_for_connection(connection_id)}
        stopped = 0
        for calendar_id in sorted(calendar_ids):
            stopped += await self.stop_channel_for_calendar(connection_id, calendar_id)
        return stopped

    async def stop_channel_for_calendar(self, connection_id: str, calendar_id: str) -> int:
        async with self._get_lock(connection_id, calendar_id):
            channels = await self._calendar_channels(connection_id, calendar_id)
            for channel in channels:
                await self._stop(channel)
        return len(channels)

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    @staticmethod
    def verify_channel_token(channel: WebhookChannel, token: Optional[str]) -> bool:
        return hmac.compare_digest(channel.token.encode("utf-8"), (token or "").encode("utf-8"))

    async def handle_notification(
        self,
        notification: WebhookNotification,
        token: Optional[str] = None,
    ) -> bool:
        """Queue an incremental sync for the channel's connection.

        Returns False when the notification is discarded: unknown channel,
        token or resource mismatch, or an expired channel.
        """
        channel = await self.get_channel(notification.channel_id)
        if channel is None:
            logger.warning(f"Unknown webhook channel: {notification.channel_id}")
            return False

        if not self.verify_channel_token(channel, token):
            logger.warning(f"Webhook token mismatch for channel {notification.channel_id}")
            return False

        if notification.resource_id and notification.resource_id != channel.resource_id:
            logger.warning(
                f"Webhook resource mismatch for channel {notification.channel_id}: "
                f"expected={channel.resource_id} got={notification.resource_id}"
            )
            return False

        if channel.expiration < datetime.now(timezone.utc):
            logger.warning(f"Expired webhook channel: {notification.channel_id}, cleaning up")
            await self.db.execute(
                "DELETE FROM webhook_channels WHERE channel_id = ?", (channel.channel_id,)
            )
            await self.db.commit()
            return False

        if self.sync_engine is None:
            logger.error("Webhook received before the sync engine was wired")
            return False

        create_background_task(
            self.sync_engine.trigger_sync(channel.connection_id),
            f"sync_connection_{channel.connection_id}",
        )
        logger.info(f"Sync triggered for {channel.connection_id}/{channel.calendar_id} by webhook")
        return True
