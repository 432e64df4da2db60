"""Tests for form sync and the field/choice version store."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utc_now
from app.models.application import Application, ApplicationFieldResponse
from app.models.form import ChoiceVersion, FieldVersion, Form
from app.models.scoring_rule import RuleTargetType, ScoreValue, ScoringRule
from app.schemas.form import ProviderField
from app.schemas.webhook import TypeformWebhook
from app.services.form_sync import FormNotFoundError, FormSyncService, collect_field_ids
from app.services.intake import WebhookIntakeService
from app.services.scoring import ScoringService
from app.services.scoring_rules import ScoringRuleService
from app.services.typeform import FormProviderError
from app.services.version_store import (
    DesiredChoice,
    FieldVersionStore,
    field_has_changed,
    scale_choices,
)
from tests.conftest import FORM_ID, FakeFormProvider, build_webhook, screening_form_definition


async def _count(session: AsyncSession, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _active_version(session: AsyncSession, field_id: str) -> FieldVersion:
    result = await session.execute(
        select(FieldVersion).where(
            FieldVersion.field_id == field_id,
            FieldVersion.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one()


async def _versions_by_field(session: AsyncSession) -> dict[str, str]:
    result = await session.execute(
        select(FieldVersion.field_id, FieldVersion.id).where(
            FieldVersion.is_active == True  # noqa: E712
        )
    )
    return {row[0]: row[1] for row in result.all()}


class TestFormSync:
    """Form registration and field walk."""

    @pytest.mark.asyncio
    async def test_first_sync_creates_all_versions(
        self, async_session: AsyncSession, form_provider: FakeFormProvider
    ) -> None:
        result = await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        # 5 top-level fields, 1 group, 2 group children
        assert result.fields_processed == 8
        assert result.fields_failed == 0
        assert result.fields_deactivated == 0
        assert await _count(async_session, FieldVersion) == 8
        # 3 medication choices + 5 synthetic scale steps
        assert await _count(async_session, ChoiceVersion) == 8

        form = (await async_session.execute(select(Form))).scalar_one()
        assert form.form_id == FORM_ID
        assert form.workspace_id == "ws123"
        assert form.is_active is True

    @pytest.mark.asyncio
    async def test_group_children_link_to_parent(
        self, async_session: AsyncSession, synced_form
    ) -> None:
        group = await _active_version(async_session, "support_group")
        child = await _active_version(async_session, "support_network")

        assert child.parent_field_version_id == group.id
        assert child.hierarchy_level == 1
        assert group.hierarchy_level == 0

    @pytest.mark.asyncio
    async def test_resync_unchanged_form_is_stable(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        """Re-syncing an unchanged schema creates no versions and keeps ids."""
        before = await _versions_by_field(async_session)
        choices_before = await _count(async_session, ChoiceVersion)

        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        assert await _versions_by_field(async_session) == before
        assert await _count(async_session, FieldVersion) == 8
        assert await _count(async_session, ChoiceVersion) == choices_before

    @pytest.mark.asyncio
    async def test_child_title_change_does_not_reversion_group(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        before = await _versions_by_field(async_session)
        form_provider.set_form(screening_form_definition(support_title="Who supports you?"))

        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        after = await _versions_by_field(async_session)
        assert after["support_group"] == before["support_group"]
        assert after["support_network"] != before["support_network"]
        assert after["emergency_contact_name"] == before["emergency_contact_name"]

        child = await _active_version(async_session, "support_network")
        assert child.field_title == "Who supports you?"
        assert child.parent_field_version_id == before["support_group"]

    @pytest.mark.asyncio
    async def test_new_version_carries_is_scored(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        child = await _active_version(async_session, "support_network")
        await ScoringRuleService(async_session).set_rule(
            RuleTargetType.FIELD, child.id, ScoreValue.GREEN
        )
        form_provider.set_form(screening_form_definition(support_title="Who supports you?"))

        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        new_child = await _active_version(async_session, "support_network")
        assert new_child.id != child.id
        assert new_child.is_scored is True

    @pytest.mark.asyncio
    async def test_removed_field_is_deactivated_and_rules_kept(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        child = await _active_version(async_session, "support_network")
        child_id = child.id
        rule = await ScoringRuleService(async_session).set_rule(
            RuleTargetType.FIELD, child_id, ScoreValue.GREEN
        )
        rule_id = rule.id
        form_provider.set_form(screening_form_definition(include_support_group=False))

        result = await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        assert result.fields_deactivated == 3
        version = (
            await async_session.execute(
                select(FieldVersion)
                .where(FieldVersion.id == child_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert version.is_active is False
        kept_rule = (
            await async_session.execute(select(ScoringRule).where(ScoringRule.id == rule_id))
        ).scalar_one()
        assert kept_rule.is_active is True

    @pytest.mark.asyncio
    async def test_removed_field_no_longer_scores(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, seeded_rules
    ) -> None:
        removed_id = (await _active_version(async_session, "support_network")).id
        form_provider.set_form(screening_form_definition(include_support_group=False))
        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)
        webhook = TypeformWebhook.model_validate(build_webhook("after-removal"))

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        assert outcome.http_status == 200
        application = (
            await async_session.execute(
                select(Application)
                .where(Application.id == outcome.application_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        # The support network rule would have added the only green
        assert application.green_count == 0
        assert application.red_count == 3
        assert application.yellow_count == 3
        assert application.calculated_score == -12
        # Both answers inside the removed group are skipped
        assert application.application_data["skipped_count"] == 2
        rows = await async_session.execute(
            select(func.count())
            .select_from(ApplicationFieldResponse)
            .where(ApplicationFieldResponse.field_version_id == removed_id)
        )
        assert rows.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_existing_answers_to_removed_field_stop_scoring(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, seeded_rules
    ) -> None:
        webhook = TypeformWebhook.model_validate(build_webhook())
        first = await WebhookIntakeService(async_session).handle_delivery(webhook)
        assert first.score == -9
        form_provider.set_form(screening_form_definition(include_support_group=False))
        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        summary = await ScoringService(async_session).calculate_score(first.application_id)

        assert (summary.red_count, summary.yellow_count, summary.green_count) == (3, 3, 0)
        assert summary.total_score == -12

    @pytest.mark.asyncio
    async def test_reappearing_field_is_reactivated_in_place(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        before = await _versions_by_field(async_session)
        form_provider.set_form(screening_form_definition(include_support_group=False))
        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        form_provider.set_form(screening_form_definition())
        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        after = await _versions_by_field(async_session)
        assert after["support_group"] == before["support_group"]
        assert after["support_network"] == before["support_network"]
        assert await _count(async_session, FieldVersion) == 8

    @pytest.mark.asyncio
    async def test_opinion_scale_steps_reduced(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        form_provider.set_form(screening_form_definition(steps=4))

        await FormSyncService(async_session, form_provider).sync_form(FORM_ID)

        scale = await _active_version(async_session, "wellbeing_scale")
        choices = await FieldVersionStore(async_session).get_choice_versions(scale.id)
        assert [c.choice_label for c in choices] == ["1", "2", "3", "4"]
        assert [c.choice_id for c in choices] == [f"wellbeing_scale-{n}" for n in range(1, 5)]

        active_fives = await async_session.execute(
            select(ChoiceVersion).where(
                ChoiceVersion.choice_id == "wellbeing_scale-5",
                ChoiceVersion.is_active == True,  # noqa: E712
            )
        )
        assert active_fives.scalars().all() == []

    @pytest.mark.asyncio
    async def test_provider_404_propagates(self, async_session: AsyncSession) -> None:
        with pytest.raises(FormProviderError):
            await FormSyncService(async_session, FakeFormProvider()).sync_form("missing")

    @pytest.mark.asyncio
    async def test_delete_form_deactivates_everything(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, seeded_rules
    ) -> None:
        await FormSyncService(async_session, form_provider).delete_form(FORM_ID)

        async_session.expire_all()
        forms = (await async_session.execute(select(Form))).scalars().all()
        assert [f.is_active for f in forms] == [False]
        active_fields = await async_session.execute(
            select(func.count())
            .select_from(FieldVersion)
            .where(FieldVersion.is_active == True)  # noqa: E712
        )
        assert active_fields.scalar_one() == 0
        active_rules = await async_session.execute(
            select(func.count())
            .select_from(ScoringRule)
            .where(ScoringRule.is_active == True)  # noqa: E712
        )
        assert active_rules.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_form(self, async_session: AsyncSession) -> None:
        with pytest.raises(FormNotFoundError):
            await FormSyncService(async_session, FakeFormProvider()).delete_form("missing")

    @pytest.mark.asyncio
    async def test_fields_with_choices_ordered(
        self, async_session: AsyncSession, form_provider: FakeFormProvider, synced_form
    ) -> None:
        fields = await FormSyncService(async_session, form_provider).get_fields_with_choices(
            FORM_ID
        )

        levels = [f.hierarchy_level for f in fields]
        assert levels == sorted(levels)
        medications = next(f for f in fields if f.field_id == "current_medications")
        assert [c.choice_label for c in medications.choices] == ["SSRIs", "Lithium", "None"]


class TestChoiceReconciliation:
    """Choice upsert rules on a single field version."""

    @pytest.mark.asyncio
    async def test_shrinking_scale_only_deactivates_dropped_step(
        self, async_session: AsyncSession, synced_form
    ) -> None:
        scale = await _active_version(async_session, "wellbeing_scale")
        store = FieldVersionStore(async_session)
        before = {c.choice_id: c.id for c in await store.get_choice_versions(scale.id)}
        field = ProviderField(
            id="wellbeing_scale",
            type="opinion_scale",
            properties={"steps": 4, "start_at_one": True},
        )

        await store.reconcile_choices(scale.id, scale_choices(field), utc_now())
        await async_session.commit()

        after = {c.choice_id: c.id for c in await store.get_choice_versions(scale.id)}
        assert set(after) == {f"wellbeing_scale-{n}" for n in range(1, 5)}
        assert all(after[choice_id] == before[choice_id] for choice_id in after)

    @pytest.mark.asyncio
    async def test_label_change_updates_in_place(
        self, async_session: AsyncSession, synced_form
    ) -> None:
        medications = await _active_version(async_session, "current_medications")
        store = FieldVersionStore(async_session)
        before = await store.get_choice_versions(medications.id)
        ids_before = [c.id for c in before]
        desired = [
            DesiredChoice("med_ssri", "SSRIs (e.g. sertraline)", "ssri", 0),
            DesiredChoice("med_lithium", "Lithium", "lithium", 1),
            DesiredChoice("med_none", "None", "none", 2),
        ]

        await store.reconcile_choices(medications.id, desired, utc_now() + timedelta(days=1))
        await async_session.commit()

        after = await store.get_choice_versions(medications.id)
        assert [c.id for c in after] == ids_before
        assert after[0].choice_label == "SSRIs (e.g. sertraline)"
        assert await _count(async_session, ChoiceVersion) == 8

    @pytest.mark.asyncio
    async def test_dropped_choice_reactivated_when_restored(
        self, async_session: AsyncSession, synced_form
    ) -> None:
        medications = await _active_version(async_session, "current_medications")
        store = FieldVersionStore(async_session)
        full = [
            DesiredChoice("med_ssri", "SSRIs", "ssri", 0),
            DesiredChoice("med_lithium", "Lithium", "lithium", 1),
            DesiredChoice("med_none", "None", "none", 2),
        ]
        none_id = (await store.get_choice_versions(medications.id))[2].id

        await store.reconcile_choices(medications.id, full[:2], utc_now())
        await async_session.commit()
        assert len(await store.get_choice_versions(medications.id)) == 2

        await store.reconcile_choices(medications.id, full, utc_now())
        await async_session.commit()

        restored = await store.get_choice_versions(medications.id)
        assert [c.id for c in restored][2] == none_id


class TestChangeDetection:
    """Meaningful-change comparison."""

    def _version(self, **overrides) -> FieldVersion:
        values = dict(
            field_title="Pick",
            field_type="multiple_choice",
            field_ref="pick",
            parent_field_version_id=None,
            hierarchy_level=0,
            properties={"choices": [{"id": "a"}, {"id": "b"}], "fields": []},
        )
        values.update(overrides)
        return FieldVersion(**values)

    def _field(self, **overrides) -> ProviderField:
        values = dict(
            id="pick",
            title="Pick",
            type="multiple_choice",
            ref="pick",
            properties={"choices": [{"id": "b"}, {"id": "a"}], "fields": []},
        )
        values.update(overrides)
        return ProviderField(**values)

    def test_choice_order_is_not_a_change(self) -> None:
        assert field_has_changed(self._version(), self._field(), None, 0) is False

    def test_choice_set_change(self) -> None:
        field = self._field(properties={"choices": [{"id": "a"}, {"id": "c"}]})

        assert field_has_changed(self._version(), field, None, 0) is True

    def test_child_list_is_ignored(self) -> None:
        field = self._field(
            properties={"choices": [{"id": "a"}, {"id": "b"}], "fields": [{"id": "new"}]}
        )

        assert field_has_changed(self._version(), field, None, 0) is False

    def test_title_change(self) -> None:
        assert field_has_changed(self._version(), self._field(title="Choose"), None, 0) is True

    def test_parent_change(self) -> None:
        assert field_has_changed(self._version(), self._field(), "other-parent", 1) is True


class TestHelpers:
    """Pure helpers."""

    def test_scale_choices_zero_based(self) -> None:
        field = ProviderField(id="s", type="opinion_scale", properties={"steps": 3})

        choices = scale_choices(field)

        assert [c.label for c in choices] == ["0", "1", "2"]
        assert [c.choice_id for c in choices] == ["s-0", "s-1", "s-2"]

    def test_scale_choices_invalid_steps(self) -> None:
        field = ProviderField(id="s", type="opinion_scale", properties={"steps": "five"})

        assert scale_choices(field) is None

    def test_collect_field_ids_includes_children(self) -> None:
        fields = [
            ProviderField.model_validate(f) for f in screening_form_definition()["fields"]
        ]

        ids = collect_field_ids(fields)

        assert {"support_group", "support_network", "emergency_contact_name"} <= ids
        assert len(ids) == 8
