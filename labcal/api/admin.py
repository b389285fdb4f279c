"""Administrator endpoints for the legacy credential migration."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labcal.auth.session import User, get_current_user
from labcal.models import CleanupResult, CredentialAuditReport, MigrationSummary, VerificationReport
from labcal.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/credentials", tags=["admin"])


class CleanupRequest(BaseModel):
    confirmation: Optional[str] = None


# Administrator checks happen inside the migration tool so refused attempts are audited too


@router.post("/migrate", response_model=MigrationSummary)
async def migrate_credentials(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.migration.migrate(user.actor)


@router.get("/verify", response_model=VerificationReport)
async def verify_credentials(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.migration.verify(user.actor)


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup_legacy_credentials(
    request: CleanupRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Delete legacy plaintext tokens. Refused unless every connection verifies."""
    return await services.migration.cleanup(user.actor, request.confirmation)


@router.get("/audit", response_model=CredentialAuditReport)
async def audit_credentials(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.migration.audit_collections(user.actor)
