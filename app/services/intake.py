"""Webhook intake controller.

Drives one submission delivery through the pipeline:

    RECEIVED -> DEDUP_CHECK -> LOCK_ACQUIRE -> {SKIPPED_LOCKED | INGEST -> SCORE -> DONE} -> LOCK_RELEASE

Per-token mutual exclusion comes only from the processing lock row, so it
holds across worker processes. Ingestion and scoring are idempotent, so a
delivery that slips past the lock (fail-open, stale reclaim) is harmless.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import pipeline_logger
from app.models.form import Form
from app.schemas.webhook import FORM_RESPONSE_EVENT, FormResponse, TypeformWebhook
from app.services.answer_ingestion import AnswerIngestionService, IngestionResult
from app.services.applications import ApplicationService
from app.services.crm import CRMClient, CRMSyncService, NullCRMClient
from app.services.form_sync import FormNotFoundError
from app.services.processing_lock import ProcessingLockService
from app.services.retry import RetryPolicy, retry_async
from app.services.scoring import ScoreSummary, ScoringService

logger = logging.getLogger(__name__)


class WebhookValidationError(ValueError):
    """Raised when a delivery is not a usable submission event."""


class ApplicationNotFoundError(LookupError):
    """Raised when no application exists for a submission token."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"No application for token {token}")


@dataclass
class IntakeOutcome:
    """Result of handling one delivery, ready to render as a response."""

    http_status: int
    status: str
    tracking_id: str
    message: str | None = None
    application_id: str | None = None
    score: int | None = None
    token: str | None = None

    def body(self) -> dict[str, Any]:
        content: dict[str, Any] = {"status": self.status, "tracking_id": self.tracking_id}
        if self.message is not None:
            content["message"] = self.message
        if self.application_id is not None:
            content["application_id"] = self.application_id
        if self.token is not None:
            content["token"] = self.token
        if self.status == "success":
            content["score"] = self.score
        return content


@dataclass
class PipelineRun:
    """What a pipeline pass actually did."""

    application_id: str
    ingested: bool
    scored: bool
    score: int | None
    ingestion: IngestionResult | None = None
    summary: ScoreSummary | None = None


def validate_webhook(webhook: TypeformWebhook) -> FormResponse:
    """Check the envelope and return its form response.

    Raises:
        WebhookValidationError: Wrong event type or missing token / form id
    """
    if webhook.event_type != FORM_RESPONSE_EVENT:
        raise WebhookValidationError(f"Unsupported event type: {webhook.event_type}")
    form_response = webhook.form_response
    if form_response is None or not form_response.form_id or not form_response.token:
        raise WebhookValidationError("Invalid webhook data: missing required fields")
    return form_response


@dataclass
class UnprocessedSweep:
    """Outcome of re-processing applications stuck behind old locks."""

    pending: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class WebhookIntakeService:
    """Runs deliveries and re-processing requests through ingestion and scoring."""

    def __init__(
        self,
        session: AsyncSession,
        crm_client: CRMClient | None = None,
        retry_policy: RetryPolicy | None = None,
        lock_stale_after: timedelta | None = None,
    ):
        self.session = session
        self.applications = ApplicationService(session)
        self.locks = ProcessingLockService(session, stale_after=lock_stale_after)
        self.ingestion = AnswerIngestionService(session)
        self.scoring = ScoringService(session, CRMSyncService(crm_client or NullCRMClient()))
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=2,
            delay_seconds=settings.retry_delay_ms / 1000,
        )

    async def _get_form(self, external_form_id: str) -> Form:
        result = await self.session.execute(
            select(Form).where(Form.form_id == external_form_id)
        )
        form = result.scalar_one_or_none()
        if form is None:
            raise FormNotFoundError(external_form_id)
        return form

    async def _ingest(
        self,
        application_id: str,
        form_response: FormResponse | None,
    ) -> IngestionResult:
        try:
            application = await self.applications.get_by_id(application_id, refresh=True)
            if form_response is None:
                return await self.ingestion.ingest_stored_submission(application)
            return await self.ingestion.process_answers(
                application_id,
                application.form_id,
                form_response.answers,
                form_response.field_definitions(),
            )
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def _score(self, application_id: str) -> ScoreSummary:
        try:
            return await self.scoring.calculate_score(application_id)
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def run_pipeline(
        self,
        application_id: str,
        tracking_id: str,
        form_response: FormResponse | None = None,
        force: bool = False,
    ) -> PipelineRun:
        """INGEST then SCORE for one application, each with the retry policy.

        Without ``force``, ingestion is skipped when response rows already
        exist, and scoring is skipped when ingestion was skipped and a score
        already exists.
        """
        ingestion = None
        ingested = force or not await self.applications.has_responses(application_id)
        if ingested:
            pipeline_logger.log("ingest_started", tracking_id, application_id)
            ingestion = await retry_async(
                lambda: self._ingest(application_id, form_response),
                self.retry_policy,
                f"Answer ingestion for {application_id}",
            )
            pipeline_logger.log(
                "ingest_completed",
                tracking_id,
                application_id,
                processed=ingestion.processed_count,
                skipped=ingestion.skipped_count,
            )
        else:
            pipeline_logger.log("ingest_skipped", tracking_id, application_id)

        if not ingested:
            application = await self.applications.get_by_id(application_id, refresh=True)
            if application is not None and application.calculated_score is not None:
                pipeline_logger.log("score_skipped", tracking_id, application_id)
                return PipelineRun(
                    application_id=application_id,
                    ingested=False,
                    scored=False,
                    score=application.calculated_score,
                )

        summary = await retry_async(
            lambda: self._score(application_id),
            self.retry_policy,
            f"Scoring for {application_id}",
        )
        pipeline_logger.log(
            "score_completed",
            tracking_id,
            application_id,
            total=summary.total_score,
            partial=summary.partial,
        )
        return PipelineRun(
            application_id=application_id,
            ingested=ingested,
            scored=True,
            score=summary.total_score,
            ingestion=ingestion,
            summary=summary,
        )

    async def handle_delivery(self, webhook: TypeformWebhook) -> IntakeOutcome:
        """Process one webhook delivery.

        Validation errors are raised to the caller (400). Every other
        failure is logged and turned into a generic 500 outcome carrying
        the tracking id.
        """
        form_response = validate_webhook(webhook)
        token = form_response.token
        tracking_id = str(uuid4())
        lock_acquired = False
        pipeline_logger.log("received", tracking_id, token=token, form_id=form_response.form_id)

        try:
            # DEDUP_CHECK
            application = await self.applications.get_by_token(token)
            duplicate = application is not None
            if application is None:
                form = await self._get_form(form_response.form_id)
                application, created = await self.applications.create_application(
                    form_response, form
                )
                duplicate = not created
            application_id = application.id

            if duplicate:
                pipeline_logger.log(
                    "duplicate_submission",
                    tracking_id,
                    application_id,
                    level=logging.WARNING,
                    token=token,
                )
                if application.is_fully_processed:
                    return IntakeOutcome(
                        http_status=202,
                        status="ignored",
                        tracking_id=tracking_id,
                        message="Application already processed and scored",
                        application_id=application_id,
                    )

            # LOCK_ACQUIRE
            acquisition = await self.locks.acquire(token, tracking_id)
            if not acquisition.acquired:
                pipeline_logger.log("skipped_locked", tracking_id, application_id, token=token)
                return IntakeOutcome(
                    http_status=202,
                    status="ignored",
                    tracking_id=tracking_id,
                    message="Another worker is processing this submission",
                    token=token,
                )
            lock_acquired = True

            run = await self.run_pipeline(application_id, tracking_id, form_response)
            pipeline_logger.log("done", tracking_id, application_id, score=run.score)
            return IntakeOutcome(
                http_status=200,
                status="success",
                tracking_id=tracking_id,
                message="Webhook processed successfully",
                application_id=application_id,
                score=run.score,
            )
        except Exception as e:
            await self.session.rollback()
            logger.exception(f"Webhook processing failed tracking={tracking_id}: {e}")
            pipeline_logger.log("failed", tracking_id, level=logging.ERROR, error=str(e))
            return IntakeOutcome(
                http_status=500,
                status="error",
                tracking_id=tracking_id,
                message="Internal server error",
            )
        finally:
            # LOCK_RELEASE
            if lock_acquired:
                await self.locks.release(token)

    async def reprocess(self, token: str) -> PipelineRun:
        """Re-run ingestion and scoring from the stored payload, then release the lock.

        Raises:
            ApplicationNotFoundError: If no application exists for ``token``
        """
        application = await self.applications.get_by_token(token)
        if application is None:
            raise ApplicationNotFoundError(token)
        application_id = application.id
        tracking_id = str(uuid4())
        pipeline_logger.log("reprocess_started", tracking_id, application_id, token=token)
        try:
            return await self.run_pipeline(application_id, tracking_id, force=True)
        finally:
            await self.locks.release(token)

    async def reprocess_unprocessed(self, limit: int = 10) -> UnprocessedSweep:
        """Re-process applications whose lock outlived the unprocessed threshold."""
        applications = await self.applications.find_unprocessed(
            timedelta(seconds=settings.unprocessed_lock_age_seconds),
            limit=limit,
        )
        tokens = [(a.id, a.typeform_response_id) for a in applications]
        sweep = UnprocessedSweep()
        for application_id, token in tokens:
            try:
                await self.reprocess(token)
                sweep.pending.append(application_id)
            except Exception as e:
                logger.error(f"Re-processing {application_id} failed: {e}")
                sweep.failed.append(application_id)
        logger.info(
            f"Unprocessed sweep: processed={len(sweep.pending)} failed={len(sweep.failed)}"
        )
        return sweep
