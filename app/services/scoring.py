"""Application scoring service.

Colours every stored answer of an application against the active scoring
rules and persists the aggregate. Runs under a wall-clock budget:
- inputs are bulk-loaded once, never per answer
- answers are evaluated in batches with a budget check before each batch
- when the budget is nearly spent before evaluation starts, only the first
  batch is scored and persisted (partial but consistent)

The CRM sync tail has its own guard and never affects the result.
"""

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.application import Application, ApplicationFieldResponse
from app.models.participant import Participant
from app.rules.engine import aggregate
from app.rules.facts import extract_response_facts, load_snapshot
from app.rules.models import AnswerEvaluation
from app.services.crm import CRMSyncService

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
UPDATE_BATCH_SIZE = 50
# Stop evaluating when less than this remains of the budget
TIMEOUT_GUARD_SECONDS = 5.0
# Skip the CRM tail when less than this remains
CRM_SYNC_GUARD_SECONDS = 10.0


@dataclass
class ScoreSummary:
    """Aggregate score of one application."""

    application_id: str
    red_count: int = 0
    yellow_count: int = 0
    green_count: int = 0
    total_score: int = 0
    answers_scored: int = 0
    partial: bool = False


class ScoringService:
    """Calculates and persists application scores."""

    def __init__(
        self,
        session: AsyncSession,
        crm_sync: CRMSyncService | None = None,
        time_budget: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.crm_sync = crm_sync
        self.time_budget = (
            time_budget if time_budget is not None else settings.scoring_time_budget_seconds
        )
        self.clock = clock
        self._started_at = 0.0

    def _remaining(self) -> float:
        return self.time_budget - (self.clock() - self._started_at)

    def _budget_exhausted(self) -> bool:
        remaining = self._remaining()
        if remaining < TIMEOUT_GUARD_SECONDS:
            logger.warning(f"Scoring budget nearly exhausted: {remaining:.1f}s remaining")
            return True
        return False

    async def _load_responses(self, application_id: str) -> list[ApplicationFieldResponse]:
        # Arrival order; the fallback path scores a prefix of this list
        result = await self.session.execute(
            select(ApplicationFieldResponse)
            .where(ApplicationFieldResponse.application_id == application_id)
            .order_by(ApplicationFieldResponse.created_at, ApplicationFieldResponse.id)
        )
        return list(result.scalars().all())

    async def calculate_score(self, application_id: str) -> ScoreSummary:
        """Score an application.

        Args:
            application_id: Application to score

        Returns:
            ScoreSummary with colour counts and the weighted total

        Raises:
            SQLAlchemyError: If inputs cannot be loaded or the aggregate
                cannot be written
        """
        self._started_at = self.clock()
        logger.info(f"Calculating score for application {application_id}")

        rows = await self._load_responses(application_id)
        if not rows:
            logger.warning(f"No field responses for application {application_id}")
            return ScoreSummary(application_id=application_id)

        responses = extract_response_facts(rows)
        snapshot = await load_snapshot(self.session, responses)
        engine = snapshot.engine()
        logger.info(
            f"Scoring {len(responses)} responses with {len(snapshot.rules)} rule groups"
        )

        if self._budget_exhausted():
            evaluations = engine.evaluate_all(responses[:BATCH_SIZE])
            summary = await self._persist_aggregate(application_id, evaluations, partial=True)
            logger.warning(
                f"Fallback scoring for {application_id}: "
                f"{len(evaluations)}/{len(responses)} responses"
            )
            return summary

        evaluations: list[AnswerEvaluation] = []
        total_batches = (len(responses) + BATCH_SIZE - 1) // BATCH_SIZE
        for start in range(0, len(responses), BATCH_SIZE):
            batch_number = start // BATCH_SIZE + 1
            if self._budget_exhausted():
                logger.warning(
                    f"Stopping at batch {batch_number}/{total_batches} for {application_id}"
                )
                break
            evaluations.extend(engine.evaluate_all(responses[start:start + BATCH_SIZE]))

        partial = len(evaluations) < len(responses)
        summary = await self._persist_aggregate(application_id, evaluations, partial=partial)
        await self._persist_response_scores(evaluations)
        await self._sync_crm(application_id)

        logger.info(
            f"Scored application {application_id}: red={summary.red_count} "
            f"yellow={summary.yellow_count} green={summary.green_count} "
            f"total={summary.total_score}"
        )
        return summary

    async def _persist_aggregate(
        self,
        application_id: str,
        evaluations: list[AnswerEvaluation],
        partial: bool,
    ) -> ScoreSummary:
        counts, total = aggregate(evaluations)
        await self.session.execute(
            update(Application)
            .where(Application.id == application_id)
            .values(
                red_count=counts.red,
                yellow_count=counts.yellow,
                green_count=counts.green,
                calculated_score=total,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return ScoreSummary(
            application_id=application_id,
            red_count=counts.red,
            yellow_count=counts.yellow,
            green_count=counts.green,
            total_score=total,
            answers_scored=len(evaluations),
            partial=partial,
        )

    async def _persist_response_scores(self, evaluations: list[AnswerEvaluation]) -> None:
        """Write each answer's colour back onto its row, chunked by row id."""
        for start in range(0, len(evaluations), UPDATE_BATCH_SIZE):
            if self._budget_exhausted():
                logger.warning(
                    f"Stopping response score updates at {start}/{len(evaluations)}"
                )
                return
            ids_by_score: dict[str, list[str]] = defaultdict(list)
            for evaluation in evaluations[start:start + UPDATE_BATCH_SIZE]:
                ids_by_score[evaluation.score.value].append(evaluation.response_id)
            try:
                for score, ids in ids_by_score.items():
                    await self.session.execute(
                        update(ApplicationFieldResponse)
                        .where(ApplicationFieldResponse.id.in_(ids))
                        .values(score=score)
                        .execution_options(synchronize_session=False)
                    )
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.error(f"Error updating response scores batch at {start}: {e}")

    async def _sync_crm(self, application_id: str) -> None:
        """Best-effort CRM update. Errors are logged, never raised."""
        if self.crm_sync is None or not self.crm_sync.client.enabled:
            return

        remaining = self._remaining()
        if remaining < CRM_SYNC_GUARD_SECONDS:
            logger.warning(f"Skipping CRM sync, {remaining:.1f}s remaining")
            return

        try:
            result = await self.session.execute(
                select(Application)
                .where(Application.id == application_id)
                .execution_options(populate_existing=True)
            )
            application = result.scalar_one()
            result = await self.session.execute(
                select(Participant).where(Participant.id == application.participant_id)
            )
            participant = result.scalar_one_or_none()

            sync = await asyncio.wait_for(
                self.crm_sync.sync_application(application, participant),
                timeout=remaining - TIMEOUT_GUARD_SECONDS,
            )
            if sync.deal_id and application.hubspot_deal_id != sync.deal_id:
                application.hubspot_deal_id = sync.deal_id
                await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"CRM sync failed for application {application_id}: {e}")
