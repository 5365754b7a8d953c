"""
Inbound upstream webhook route.

The organization comes from the path; authenticity comes from the HMAC
signature header, so this route takes no bearer token.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.database import get_db
from peoplesync.services.webhook_service import WebhookService


router = APIRouter(tags=["webhooks"])


@router.post("/webhook/{organization_id}")
async def receive_webhook(
    organization_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Verify and apply one upstream event delivery.

    The signature is computed over the exact bytes received, so the body is
    read raw and never re-serialized before verification.
    """
    raw_body = await request.body()
    result = await WebhookService(db).handle(organization_id, request.headers, raw_body)
    return JSONResponse(status_code=result.status_code, content=result.body)
