"""APScheduler setup for background jobs."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from labcal.services import Services

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def setup_scheduler(services: Services, start: bool = True) -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = services.settings

    _scheduler = AsyncIOScheduler()

    # Periodic sync job - hourly by default
    _scheduler.add_job(
        services.sync_engine.run_periodic_sync,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Calendar Sync",
        replace_existing=True,
        max_instances=1,
    )

    # Webhook renewal - daily by default (optional)
    if settings.enable_webhooks:
        _scheduler.add_job(
            services.channels.renew_expiring,
            trigger=IntervalTrigger(hours=settings.webhook_renewal_interval_hours),
            id="webhook_renewal",
            name="Webhook Renewal",
            replace_existing=True,
            max_instances=1,
        )
    else:
        logger.info("Webhook renewal job disabled (ENABLE_WEBHOOKS=false)")

    # Token refresh - every 30 minutes
    _scheduler.add_job(
        services.oauth.refresh_expiring_tokens,
        trigger=IntervalTrigger(minutes=settings.token_refresh_job_minutes),
        id="token_refresh",
        name="Token Refresh",
        replace_existing=True,
        max_instances=1,
    )

    # Expired OAuth state cleanup - daily at 3 AM
    _scheduler.add_job(
        services.oauth.cleanup_expired_states,
        trigger=CronTrigger(hour=3, minute=0),
        id="oauth_state_cleanup",
        name="OAuth State Cleanup",
        replace_existing=True,
    )

    if start:
        _scheduler.start()
        logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        if _scheduler.running:
            _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
