"""Calendar linking routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labcal.api.connections import serialize_connection
from labcal.auth.session import User, get_current_user
from labcal.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class StartCalendarAuthRequest(BaseModel):
    login_hint: Optional[str] = None


class CompleteCalendarAuthRequest(BaseModel):
    code: str
    state: str


@router.post("/calendar/start")
async def start_calendar_auth(
    body: Optional[StartCalendarAuthRequest] = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Return the provider consent URL; the client opens it in a popup or redirect."""
    return await services.oauth.start_auth(user.id, login_hint=body.login_hint if body else None)


@router.post("/calendar/callback")
async def complete_calendar_auth(
    body: CompleteCalendarAuthRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Finish linking. Initial sync and webhook registration continue in the background."""
    connection = await services.oauth.complete_auth(body.code, body.state, user.id)
    services.start_connection(connection.id)
    return serialize_connection(connection)
