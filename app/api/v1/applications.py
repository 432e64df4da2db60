"""Application endpoints: detail, duplicate check, re-score and re-processing."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import CRMClientDep, DbSession, require_cron_key
from app.schemas.application import (
    ApplicationDetail,
    ApplicationRead,
    DuplicateCheckResult,
    ReprocessRequest,
    ReprocessResult,
    UnprocessedLookupResult,
)
from app.schemas.scoring import ScoreSummaryRead
from app.services.applications import ApplicationService
from app.services.crm import CRMSyncService
from app.services.intake import ApplicationNotFoundError, WebhookIntakeService
from app.services.scoring import ScoringService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/reprocess",
    response_model=ReprocessResult,
    dependencies=[Depends(require_cron_key)],
    summary="Re-process a stored submission",
)
async def reprocess_application(
    request: ReprocessRequest,
    db: DbSession,
    crm_client: CRMClientDep,
) -> ReprocessResult:
    """Re-run ingestion and scoring from the stored payload, then release its lock."""
    service = WebhookIntakeService(db, crm_client=crm_client)
    try:
        run = await service.reprocess(request.typeform_response_id)
    except ApplicationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return ReprocessResult(application_id=run.application_id, score=run.score)


@router.post(
    "/reprocess-unprocessed",
    response_model=UnprocessedLookupResult,
    dependencies=[Depends(require_cron_key)],
    summary="Re-process submissions stuck behind old locks",
)
async def reprocess_unprocessed(
    db: DbSession,
    crm_client: CRMClientDep,
) -> UnprocessedLookupResult:
    sweep = await WebhookIntakeService(db, crm_client=crm_client).reprocess_unprocessed()
    return UnprocessedLookupResult(
        count=len(sweep.pending),
        pending=sweep.pending,
        failed=sweep.failed,
    )


@router.get(
    "/check-duplicate",
    response_model=DuplicateCheckResult,
    summary="Check whether a submission token was already received",
)
async def check_duplicate(
    db: DbSession,
    token: str = Query(..., min_length=1, description="Provider submission token"),
) -> DuplicateCheckResult:
    existing = await ApplicationService(db).get_by_token(token)
    return DuplicateCheckResult(
        is_duplicate=existing is not None,
        existing_application=ApplicationRead.model_validate(existing) if existing else None,
    )


@router.get(
    "/{application_id}",
    response_model=ApplicationDetail,
    summary="Get application detail",
)
async def get_application(application_id: str, db: DbSession) -> ApplicationDetail:
    """Application, participant and answers arranged by field hierarchy."""
    detail = await ApplicationService(db).get_detail(application_id)
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Application not found",
        )
    return detail


@router.post(
    "/{application_id}/score",
    response_model=ScoreSummaryRead,
    summary="Re-score an application",
)
async def score_application(
    application_id: str,
    db: DbSession,
    crm_client: CRMClientDep,
) -> ScoreSummaryRead:
    if await ApplicationService(db).get_by_id(application_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Application not found",
        )
    summary = await ScoringService(db, CRMSyncService(crm_client)).calculate_score(application_id)
    return ScoreSummaryRead(
        application_id=summary.application_id,
        red_count=summary.red_count,
        yellow_count=summary.yellow_count,
        green_count=summary.green_count,
        total_score=summary.total_score,
        answers_scored=summary.answers_scored,
        partial=summary.partial,
    )
