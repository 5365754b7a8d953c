"""
Email campaign routes.

Recipient preview runs the eligibility pipeline inline; sending hands the
campaign to the worker.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.database import get_db
from peoplesync.dependencies.auth import TokenPayload, get_current_user
from peoplesync.services.eligibility_service import EligibilityService
from peoplesync.worker import enqueue_eligibility


router = APIRouter(prefix="/api/emails", tags=["emails"])


@router.get("/{email_id}/recipients", response_model=dict)
async def preview_recipients(
    email_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Compute who would receive the email right now.

    Read-only; skipped and deferred outcomes come back as 200 with a reason.
    """
    service = EligibilityService(db)
    campaign = await service.get_campaign(token.org_id, email_id)
    if campaign is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Email not found"
        )

    result = await service.compute_eligible_recipients(campaign)
    return result.to_dict()


@router.post("/{email_id}/send", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def send_email(
    email_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Queue the recipient computation that precedes dispatch."""
    campaign = await EligibilityService(db).get_campaign(token.org_id, email_id)
    if campaign is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Email not found"
        )

    if not await enqueue_eligibility(token.org_id, email_id):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to queue email"
        )
    return {"message": "Email queued", "email_id": email_id}
