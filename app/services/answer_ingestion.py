"""Answer ingestion: turn a submission's answers into versioned response rows.

Each answer is resolved to the active field version of its field; answers to
fields that were removed from the form are skipped. Multi-select
answers fan out into one row per selected choice, with no summary row for
the field itself. Rows are written in fixed-size chunks; a failed chunk is
counted as skipped and the remaining chunks still run.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utc_now
from app.models.application import (
    Application,
    ApplicationFieldResponse,
    ApplicationStatus,
    response_key,
)
from app.models.form import ChoiceVersion, FieldVersion
from app.schemas.webhook import (
    DefinitionField,
    FormResponse,
    MultiChoice,
    SingleChoice,
    WebhookAnswer,
)

logger = logging.getLogger(__name__)

INSERT_CHUNK_SIZE = 50
RAW_SNAPSHOT_LIMIT = 100


def extract_response_value(answer: WebhookAnswer) -> str:
    """Render an answer's value as a string.

    Total over answer types; unknown types fall back to the JSON of the
    answer as delivered. Never raises.
    """
    try:
        answer_type = answer.type
        if answer_type == "text":
            return answer.text or ""
        if answer_type == "email":
            return answer.email or ""
        if answer_type == "phone_number":
            return answer.phone_number or ""
        if answer_type == "number":
            return "" if answer.number is None else str(answer.number)
        if answer_type == "date":
            return answer.date or ""
        if answer_type == "boolean":
            if answer.boolean is None:
                return ""
            return "yes" if answer.boolean else "no"
        if answer_type == "choice":
            if isinstance(answer.selection, SingleChoice):
                item = answer.selection.item
                return item.label or item.id or ""
            return ""
        if answer_type == "choices":
            if isinstance(answer.selection, MultiChoice):
                return ",".join(
                    item.id or item.label or "" for item in answer.selection.items
                )
            return ""
        return json.dumps(answer.wire_payload(), default=str)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not extract value for field {answer.field.id}: {e}")
        return ""


def is_multi_select(answer: WebhookAnswer, definition: DefinitionField | None) -> bool:
    """Multi-select when the wire shape is a choice list or the definition allows several.

    The wire shape takes precedence: a definition flag only adds fields that
    would otherwise be treated as single-valued.
    """
    if answer.type == "choices" or isinstance(answer.selection, MultiChoice):
        return True
    return bool(
        definition is not None
        and definition.type == "multiple_choice"
        and definition.allows_multiple
    )


@dataclass
class IngestionResult:
    """Outcome of one ingestion pass."""

    processed_count: int = 0
    skipped_count: int = 0
    duplicate_count: int = 0
    total_answers: int = 0
    raw_storage: bool = False


class AnswerIngestionService:
    """Persists submission answers as application field responses."""

    def __init__(self, session: AsyncSession, chunk_size: int = INSERT_CHUNK_SIZE):
        self.session = session
        self.chunk_size = chunk_size

    async def _active_field_versions(
        self, form_id: str, field_ids: Sequence[str]
    ) -> dict[str, FieldVersion]:
        """Most recent active version per field id, in a single query."""
        if not field_ids:
            return {}
        result = await self.session.execute(
            select(FieldVersion)
            .where(
                FieldVersion.form_id == form_id,
                FieldVersion.field_id.in_(list(field_ids)),
                FieldVersion.is_active == True,  # noqa: E712
            )
            .order_by(FieldVersion.field_id, FieldVersion.version_date.desc())
        )
        latest: dict[str, FieldVersion] = {}
        for version in result.scalars().all():
            # Ordered newest first within each field id
            latest.setdefault(version.field_id, version)
        return latest

    async def _choice_versions(
        self, field_version_ids: Sequence[str]
    ) -> dict[tuple[str, str], ChoiceVersion]:
        """Choice versions keyed by (field version id, choice id), active preferred."""
        if not field_version_ids:
            return {}
        result = await self.session.execute(
            select(ChoiceVersion)
            .where(ChoiceVersion.field_version_id.in_(list(field_version_ids)))
            .order_by(ChoiceVersion.is_active.desc(), ChoiceVersion.version_date.desc())
        )
        choices: dict[tuple[str, str], ChoiceVersion] = {}
        for choice in result.scalars().all():
            choices.setdefault((choice.field_version_id, choice.choice_id), choice)
        return choices

    async def _existing_keys(self, application_id: str) -> set[str]:
        result = await self.session.execute(
            select(ApplicationFieldResponse.response_key).where(
                ApplicationFieldResponse.application_id == application_id
            )
        )
        return set(result.scalars().all())

    async def _get_application(self, application_id: str) -> Application:
        result = await self.session.execute(
            select(Application).where(Application.id == application_id)
        )
        return result.scalar_one()

    def _build_rows(
        self,
        application_id: str,
        answer: WebhookAnswer,
        field_version: FieldVersion,
        definition: DefinitionField | None,
        choices: dict[tuple[str, str], ChoiceVersion],
    ) -> list[ApplicationFieldResponse]:
        if is_multi_select(answer, definition):
            if isinstance(answer.selection, MultiChoice):
                items = answer.selection.items
            elif isinstance(answer.selection, SingleChoice):
                items = [answer.selection.item]
            else:
                items = []

            rows = []
            for index, item in enumerate(items):
                choice_version = (
                    choices.get((field_version.id, item.id)) if item.id else None
                )
                value = (
                    choice_version.choice_label
                    if choice_version is not None
                    else item.label or item.id or ""
                )
                rows.append(
                    ApplicationFieldResponse(
                        application_id=application_id,
                        field_version_id=field_version.id,
                        choice_version_id=choice_version.id if choice_version else None,
                        response_value=value,
                        response_metadata={
                            "is_multi_select": True,
                            "is_choice": True,
                            "choice_index": index,
                            "choice_id": item.id,
                            "choice_ref": item.ref,
                        },
                        is_raw=False,
                    )
                )
            return rows

        if answer.type == "boolean" and answer.boolean is None:
            return []

        choice_version = None
        metadata: dict[str, Any] = {"is_multi_select": False, "answer_type": answer.type}
        if isinstance(answer.selection, SingleChoice):
            item = answer.selection.item
            if item.id:
                choice_version = choices.get((field_version.id, item.id))
            metadata.update(
                {"is_choice": True, "choice_id": item.id, "choice_ref": item.ref}
            )
        else:
            metadata["is_choice"] = False

        return [
            ApplicationFieldResponse(
                application_id=application_id,
                field_version_id=field_version.id,
                choice_version_id=choice_version.id if choice_version else None,
                response_value=extract_response_value(answer),
                response_metadata=metadata,
                is_raw=False,
            )
        ]

    async def process_answers(
        self,
        application_id: str,
        form_id: str,
        answers: Sequence[WebhookAnswer],
        field_definitions: dict[str, DefinitionField] | None = None,
    ) -> IngestionResult:
        """Resolve, fan out and persist the answers of one submission.

        Rows that already exist for the application are not written again,
        so repeating a pass is a no-op.
        """
        field_definitions = field_definitions or {}
        result = IngestionResult(total_answers=len(answers))
        field_ids = sorted({answer.field.id for answer in answers})

        try:
            versions = await self._active_field_versions(form_id, field_ids)
            choices = await self._choice_versions([v.id for v in versions.values()])
            existing = await self._existing_keys(application_id)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                f"Field version lookup failed for application {application_id}, "
                f"storing raw answers: {e}"
            )
            return await self.store_raw_snapshot(application_id, form_id, answers)

        rows: list[ApplicationFieldResponse] = []
        for answer in answers:
            field_version = versions.get(answer.field.id)
            if field_version is None:
                logger.warning(
                    f"No active field version for {answer.field.id} on form {form_id}, skipping"
                )
                result.skipped_count += 1
                continue

            built = self._build_rows(
                application_id,
                answer,
                field_version,
                field_definitions.get(answer.field.id),
                choices,
            )
            if not built:
                logger.warning(f"Empty answer for {answer.field.id}, skipping")
                result.skipped_count += 1
                continue

            for row in built:
                key = response_key(row.field_version_id, row.choice_version_id, row.response_value)
                row.response_key = key
                if key in existing:
                    result.duplicate_count += 1
                    continue
                existing.add(key)
                rows.append(row)

        if not rows and result.duplicate_count:
            logger.info(f"Answers for application {application_id} already stored")
            return result

        for start in range(0, len(rows), self.chunk_size):
            chunk = rows[start:start + self.chunk_size]
            try:
                self.session.add_all(chunk)
                await self.session.commit()
                result.processed_count += len(chunk)
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.error(
                    f"Failed to insert response chunk {start // self.chunk_size} "
                    f"for application {application_id}: {e}"
                )
                result.skipped_count += len(chunk)

        application = await self._get_application(application_id)
        application.application_data = {
            **(application.application_data or {}),
            "form_id": form_id,
            "answers_processed": True,
            "processed_count": result.processed_count,
            "skipped_count": result.skipped_count,
            "total_answers": result.total_answers,
            "processed_at": utc_now().isoformat(),
        }
        application.answers_processed = True
        if result.processed_count > 0 and application.status == ApplicationStatus.PENDING:
            application.status = ApplicationStatus.NEW
        await self.session.commit()

        logger.info(
            f"Ingested application {application_id}: processed={result.processed_count} "
            f"skipped={result.skipped_count} duplicates={result.duplicate_count}"
        )
        return result

    async def store_raw_snapshot(
        self,
        application_id: str,
        form_id: str,
        answers: Sequence[WebhookAnswer],
    ) -> IngestionResult:
        """Keep a bounded copy of the answers on the application itself."""
        snapshot = [answer.wire_payload() for answer in answers[:RAW_SNAPSHOT_LIMIT]]
        application = await self._get_application(application_id)
        application.application_data = {
            **(application.application_data or {}),
            "form_id": form_id,
            "raw_storage": True,
            "raw_answers": snapshot,
            "answers_count": len(answers),
            "stored_count": len(snapshot),
            "processed_at": utc_now().isoformat(),
        }
        await self.session.commit()
        return IngestionResult(
            processed_count=0,
            skipped_count=len(answers),
            total_answers=len(answers),
            raw_storage=True,
        )

    async def ingest_stored_submission(self, application: Application) -> IngestionResult:
        """Re-run ingestion from the application's stored raw payload."""
        form_response = FormResponse.model_validate(application.raw_data or {})
        return await self.process_answers(
            application.id,
            application.form_id,
            form_response.answers,
            form_response.field_definitions(),
        )
