"""Form sync: reconcile a provider form definition into the version store."""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utc_now
from app.models.form import ChoiceVersion, FieldVersion, Form
from app.models.scoring_rule import RuleTargetType, ScoringRule
from app.schemas.form import (
    ChoiceVersionRead,
    FieldVersionRead,
    FieldVersionWithChoices,
    FormSyncResult,
    ProviderField,
    ProviderForm,
)
from app.services.typeform import FormProvider
from app.services.version_store import FieldSyncStats, FieldVersionStore

logger = logging.getLogger(__name__)


class FormNotFoundError(Exception):
    """Raised when a form is not known locally."""

    def __init__(self, form_id: str):
        self.form_id = form_id
        super().__init__(f"Form not found: {form_id}")


def collect_field_ids(fields: list[ProviderField]) -> set[str]:
    """All field ids of a provider form, including nested group children."""
    ids: set[str] = set()
    for provider_field in fields:
        ids.add(provider_field.id)
        ids |= collect_field_ids(provider_field.children)
    return ids


class FormSyncService:
    """Pulls form definitions from the provider and versions them locally."""

    def __init__(self, session: AsyncSession, provider: FormProvider):
        self.session = session
        self.provider = provider
        self.store = FieldVersionStore(session)

    async def get_form(self, external_form_id: str) -> Form | None:
        """Get a form by its external id."""
        result = await self.session.execute(
            select(Form).where(Form.form_id == external_form_id)
        )
        return result.scalar_one_or_none()

    async def upsert_form(self, provider_form: ProviderForm) -> Form:
        """Create, reactivate or update the form row."""
        form = await self.get_form(provider_form.id)
        workspace_id = provider_form.workspace.workspace_id if provider_form.workspace else None

        if form is None:
            form = Form(
                form_id=provider_form.id,
                form_title=provider_form.title,
                workspace_id=workspace_id,
                is_active=True,
            )
            self.session.add(form)
            logger.info(f"Registered form {provider_form.id}")
        else:
            if not form.is_active:
                logger.info(f"Reactivating form {provider_form.id}")
                form.reactivate()
            if form.form_title != provider_form.title:
                form.form_title = provider_form.title
            if workspace_id and form.workspace_id != workspace_id:
                form.workspace_id = workspace_id

        await self.session.commit()
        return form

    async def sync_form(self, external_form_id: str) -> FormSyncResult:
        """Fetch the provider definition and reconcile fields and choices.

        Re-running with an unchanged definition performs no destructive
        writes and creates no versions.
        """
        provider_form = await self.provider.get_form_details(external_form_id)
        form = await self.upsert_form(provider_form)
        form_pk = form.id

        # One version timestamp for the whole sync
        version_date = utc_now()
        stats = FieldSyncStats()

        for index, provider_field in enumerate(provider_form.fields):
            await self.store.upsert_field(
                provider_field,
                form_pk,
                None,
                0,
                version_date,
                index,
                stats,
            )

        present_ids = collect_field_ids(provider_form.fields)
        # Failed fields keep whatever version they had
        present_ids |= set(stats.failed_field_ids)
        deactivated = await self.store.deactivate_missing_fields(form_pk, present_ids)

        logger.info(
            f"Synced form {external_form_id}: processed={stats.processed} "
            f"new_versions={stats.new_versions} failed={stats.failed} "
            f"deactivated={deactivated}"
        )
        return FormSyncResult(
            form_id=external_form_id,
            internal_form_id=form_pk,
            fields_processed=stats.processed,
            fields_failed=stats.failed,
            fields_deactivated=deactivated,
        )

    async def delete_form(self, external_form_id: str) -> None:
        """Soft-deactivate a form with its fields, choices and their rules."""
        form = await self.get_form(external_form_id)
        if form is None:
            raise FormNotFoundError(external_form_id)

        field_ids = select(FieldVersion.id).where(FieldVersion.form_id == form.id)
        choice_ids = select(ChoiceVersion.id).where(
            ChoiceVersion.field_version_id.in_(field_ids)
        )

        await self.session.execute(
            update(ScoringRule)
            .where(
                ScoringRule.target_type == RuleTargetType.FIELD,
                ScoringRule.target_id.in_(field_ids),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(ScoringRule)
            .where(
                ScoringRule.target_type == RuleTargetType.CHOICE,
                ScoringRule.target_id.in_(choice_ids),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(ChoiceVersion)
            .where(ChoiceVersion.field_version_id.in_(field_ids))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(FieldVersion)
            .where(FieldVersion.form_id == form.id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        form.deactivate()
        await self.session.commit()
        logger.info(f"Deactivated form {external_form_id}")

    async def get_fields_with_choices(
        self, external_form_id: str
    ) -> list[FieldVersionWithChoices]:
        """Active field versions of a form, each with its active choices."""
        form = await self.get_form(external_form_id)
        if form is None:
            raise FormNotFoundError(external_form_id)

        versions = await self.store.get_field_versions(form.id)
        result = await self.session.execute(
            select(ChoiceVersion)
            .where(
                ChoiceVersion.field_version_id.in_([v.id for v in versions]),
                ChoiceVersion.is_active == True,  # noqa: E712
            )
            .order_by(ChoiceVersion.display_order)
        )
        choices_by_field: dict[str, list[ChoiceVersionRead]] = {}
        for choice in result.scalars().all():
            choices_by_field.setdefault(choice.field_version_id, []).append(
                ChoiceVersionRead.model_validate(choice)
            )

        return [
            FieldVersionWithChoices(
                **FieldVersionRead.model_validate(version).model_dump(),
                choices=choices_by_field.get(version.id, []),
            )
            for version in versions
        ]
