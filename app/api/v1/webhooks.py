"""Inbound webhook endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api.deps import CRMClientDep, DbSession
from app.core.config import settings
from app.core.security import verify_webhook_signature
from app.schemas.webhook import TypeformWebhook
from app.services.intake import WebhookIntakeService, WebhookValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "Typeform-Signature"


@router.post(
    "/typeform",
    summary="Receive a form submission",
    description=(
        "Creates or finds the application for the submission token, then "
        "ingests and scores its answers. 202 when another delivery owns the "
        "token or the application is already processed."
    ),
)
async def receive_typeform_webhook(
    request: Request,
    db: DbSession,
    crm_client: CRMClientDep,
) -> JSONResponse:
    """Handle one submission delivery."""
    body = await request.body()

    if not verify_webhook_signature(
        body, request.headers.get(SIGNATURE_HEADER), settings.typeform_webhook_secret
    ):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        webhook = TypeformWebhook.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Rejected malformed webhook payload: {e.error_count()} errors")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )

    service = WebhookIntakeService(db, crm_client=crm_client)
    try:
        outcome = await service.handle_delivery(webhook)
    except WebhookValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    return JSONResponse(status_code=outcome.http_status, content=outcome.body())
