"""Application and participant persistence for incoming submissions."""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Sequence

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utc_now
from app.models.application import Application, ApplicationFieldResponse, ApplicationStatus
from app.models.form import FieldVersion, Form
from app.models.participant import Participant
from app.schemas.application import (
    ApplicationDetail,
    ApplicationRead,
    FieldNode,
    FieldResponseRead,
    ParticipantRead,
)
from app.schemas.webhook import DefinitionField, FormResponse, WebhookAnswer
from app.services.processing_lock import ProcessingLockService, token_from_lock_id

logger = logging.getLogger(__name__)


@dataclass
class ParticipantData:
    """Participant details pulled from a submission."""

    email: str
    first_name: str
    last_name: str
    phone: str | None = None
    date_of_birth: str | None = None


def _is_emergency_contact(ref: str, title: str) -> bool:
    return "emergency" in ref or "emergency" in title or "contact_" in ref


def extract_participant_data(
    answers: Sequence[WebhookAnswer],
    fields: Sequence[DefinitionField],
) -> ParticipantData:
    """Identify the applicant's own details among a submission's answers.

    Emergency-contact fields are ignored. The first match for each attribute
    wins; missing email and names fall back to placeholder values.
    """
    titles = {f.id: (f.title or "").lower() for f in fields}

    email = first_name = last_name = ""
    phone: str | None = None
    date_of_birth: str | None = None

    for answer in answers:
        ref = (answer.field.ref or "").lower()
        title = titles.get(answer.field.id, "")

        if _is_emergency_contact(ref, title):
            continue

        if answer.type == "email":
            if not email:
                email = answer.email or ""
        elif answer.type in ("text", "short_text"):
            text = answer.text or ""
            if ("first" in ref or "first name" in title or "first_name" in title) and not first_name:
                first_name = text
            elif ("last" in ref or "last name" in title or "last_name" in title) and not last_name:
                last_name = text
            elif ("name" in ref or "name" in title) and not (first_name and last_name):
                parts = text.split()
                if len(parts) >= 2:
                    first_name = first_name or parts[0]
                    last_name = last_name or parts[-1]
        elif answer.type == "phone_number":
            if phone is None:
                phone = answer.phone_number or ""
        elif answer.type == "date" and date_of_birth is None:
            if "birth" in ref or "dob" in ref or "birth" in title or "dob" in title:
                date_of_birth = answer.date or ""

    if not email:
        logger.warning("Email not found in submission, using a placeholder")
        email = f"applicant_{int(time.time() * 1000)}@example.com"
    if not first_name:
        first_name = "Anonymous"
    if not last_name:
        last_name = "Applicant"

    return ParticipantData(
        email=email,
        first_name=first_name,
        last_name=last_name,
        phone=phone or None,
        date_of_birth=date_of_birth or None,
    )


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning(f"Ignoring unparseable date of birth: {value}")
        return None


def build_field_tree(
    versions: Sequence[FieldVersion],
    responses: Sequence[ApplicationFieldResponse],
) -> list[FieldNode]:
    """Arrange flat field versions into a parent/child tree with their answers."""
    responses_by_field: dict[str, list[FieldResponseRead]] = defaultdict(list)
    for response in responses:
        responses_by_field[response.field_version_id].append(
            FieldResponseRead.model_validate(response)
        )

    known_ids = {version.id for version in versions}
    children_of: dict[str | None, list[FieldVersion]] = defaultdict(list)
    for version in versions:
        parent = version.parent_field_version_id
        # Orphans (parent not loaded) are shown at the top level
        children_of[parent if parent in known_ids else None].append(version)

    def build(parent_id: str | None) -> list[FieldNode]:
        nodes = []
        for version in sorted(children_of.get(parent_id, []), key=lambda v: v.display_order):
            nodes.append(
                FieldNode(
                    field_version_id=version.id,
                    field_id=version.field_id,
                    title=version.field_title,
                    field_type=version.field_type,
                    hierarchy_level=version.hierarchy_level,
                    display_order=version.display_order,
                    responses=responses_by_field.get(version.id, []),
                    children=build(version.id),
                )
            )
        return nodes

    return build(None)


class ApplicationService:
    """Lookups and find-or-create operations for applications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, application_id: str, refresh: bool = False) -> Application | None:
        """Get an application by id.

        With ``refresh``, column values are re-read even if the row is
        already in the session (bulk score updates bypass the session).
        """
        query = select(Application).where(Application.id == application_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_token(self, token: str) -> Application | None:
        """Get the application created for a submission token."""
        result = await self.session.execute(
            select(Application).where(Application.typeform_response_id == token)
        )
        return result.scalar_one_or_none()

    async def get_participant(self, participant_id: str) -> Participant | None:
        """Get a participant by id."""
        result = await self.session.execute(
            select(Participant).where(Participant.id == participant_id)
        )
        return result.scalar_one_or_none()

    async def has_responses(self, application_id: str) -> bool:
        """Whether any field response rows exist for an application."""
        result = await self.session.execute(
            select(
                exists().where(ApplicationFieldResponse.application_id == application_id)
            )
        )
        return bool(result.scalar())

    async def find_or_create_participant(self, data: ParticipantData) -> Participant:
        """Find a participant by email or create one."""
        result = await self.session.execute(
            select(Participant).where(Participant.email == data.email)
        )
        participant = result.scalar_one_or_none()
        if participant is not None:
            return participant

        participant = Participant(
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
            date_of_birth=_parse_date(data.date_of_birth),
        )
        self.session.add(participant)
        try:
            await self.session.commit()
        except IntegrityError:
            # Created concurrently by another delivery
            await self.session.rollback()
            result = await self.session.execute(
                select(Participant).where(Participant.email == data.email)
            )
            return result.scalar_one()
        logger.info(f"Created participant {participant.id[:8]}")
        return participant

    async def create_application(
        self,
        form_response: FormResponse,
        form: Form,
    ) -> tuple[Application, bool]:
        """Create the application for a submission.

        Returns (application, created). A concurrent insert for the same
        token resolves to the row that won the unique constraint.
        """
        token = form_response.token or ""
        form_pk = form.id
        participant = await self.find_or_create_participant(
            extract_participant_data(form_response.answers, form_response.definition.fields)
        )

        application = Application(
            participant_id=participant.id,
            form_id=form_pk,
            typeform_response_id=token,
            submission_date=form_response.submitted_at or datetime.now().astimezone(),
            status=ApplicationStatus.PENDING,
            raw_data=form_response.model_dump(
                mode="json",
                exclude_none=True,
                exclude={"answers": {"__all__": {"selection"}}},
            ),
        )
        self.session.add(application)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.get_by_token(token)
            if existing is None:
                raise
            logger.info(f"Application for token {token} created concurrently")
            return existing, False

        logger.info(f"Created application {application.id[:8]} for token {token}")
        return application, True

    async def find_unprocessed(
        self,
        older_than: timedelta,
        limit: int = 10,
    ) -> Sequence[Application]:
        """Applications whose processing lock outlived ``older_than``.

        Oldest first; only applications created before the cutoff.
        """
        cutoff = utc_now() - older_than
        locks = await ProcessingLockService(self.session).find_locks_older_than(older_than)
        tokens = [token_from_lock_id(lock.lock_id) for lock in locks]
        if not tokens:
            return []

        result = await self.session.execute(
            select(Application)
            .where(
                Application.typeform_response_id.in_(tokens),
                Application.created_at <= cutoff,
            )
            .order_by(Application.created_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def get_detail(self, application_id: str) -> ApplicationDetail | None:
        """Application with participant and its answers arranged by field hierarchy."""
        application = await self.get_by_id(application_id)
        if application is None:
            return None

        participant = await self.get_participant(application.participant_id)

        response_result = await self.session.execute(
            select(ApplicationFieldResponse)
            .where(ApplicationFieldResponse.application_id == application_id)
            .order_by(ApplicationFieldResponse.created_at)
        )
        responses = response_result.scalars().all()

        # Load answered versions, then walk up to their ancestors
        versions: dict[str, FieldVersion] = {}
        pending_ids = {response.field_version_id for response in responses}
        while pending_ids:
            version_result = await self.session.execute(
                select(FieldVersion).where(FieldVersion.id.in_(list(pending_ids)))
            )
            loaded = version_result.scalars().all()
            for version in loaded:
                versions[version.id] = version
            pending_ids = {
                v.parent_field_version_id
                for v in loaded
                if v.parent_field_version_id and v.parent_field_version_id not in versions
            }

        return ApplicationDetail(
            application=ApplicationRead.model_validate(application),
            participant=ParticipantRead.model_validate(participant) if participant else None,
            fields=build_field_tree(list(versions.values()), responses),
        )
