"""Webhook receiver for Google Calendar push notifications."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from labcal.limiter import limiter, webhook_rate_limit
from labcal.models import WebhookNotification
from labcal.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/google-calendar")
@limiter.limit(webhook_rate_limit)
async def receive_google_calendar_webhook(
    request: Request,
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
    services: Services = Depends(get_services),
):
    """
    Receive push notifications from Google Calendar.

    Google sends a POST request with headers indicating what changed.
    We don't receive the actual event data - we need to fetch it ourselves.
    Anything we cannot match is acknowledged anyway so Google stops retrying.
    """
    if not x_goog_channel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing channel ID"
        )

    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, "
        f"resource={x_goog_resource_id}, state={x_goog_resource_state}"
    )

    # Handshake sent when the channel is first registered
    if x_goog_resource_state == "sync":
        return {"status": "ok"}

    notification = WebhookNotification(channel_id=x_goog_channel_id, resource_id=x_goog_resource_id)
    accepted = await services.channels.handle_notification(notification, token=x_goog_channel_token)
    return {"status": "ok", "sync_triggered": accepted}
