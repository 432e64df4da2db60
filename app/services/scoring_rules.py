"""Scoring rule administration: set, list, soft-delete and seed import."""

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.form import ChoiceVersion, FieldVersion, Form
from app.models.scoring_rule import RuleTargetType, ScoreValue, ScoringRule
from app.rules.loader import ScoringSeed

logger = logging.getLogger(__name__)


class RuleTargetNotFoundError(Exception):
    """Raised when a rule targets an unknown field or choice version."""

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(f"{target_type} version not found: {target_id}")


@dataclass
class SeedImportResult:
    """Outcome of binding a seed file to a form's active versions."""

    seed_id: str
    rules_set: int = 0
    unresolved: list[str] = field(default_factory=list)


def _normalize_criteria(criteria: dict[str, Any] | None) -> dict[str, Any] | None:
    return criteria or None


class ScoringRuleService:
    """Manages scoring rules bound to field and choice versions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_rules(
        self,
        target_type: RuleTargetType | None = None,
        target_ids: Sequence[str] | None = None,
    ) -> Sequence[ScoringRule]:
        """Active rules, optionally filtered by target type and ids."""
        query = select(ScoringRule).where(ScoringRule.is_active == True)  # noqa: E712
        if target_type is not None:
            query = query.where(ScoringRule.target_type == target_type)
        if target_ids:
            query = query.where(ScoringRule.target_id.in_(list(target_ids)))
        result = await self.session.execute(query.order_by(ScoringRule.created_at))
        return result.scalars().all()

    async def _field_version_for_target(
        self, target_type: RuleTargetType, target_id: str
    ) -> str:
        """Resolve the field version a rule target belongs to."""
        if target_type == RuleTargetType.FIELD:
            result = await self.session.execute(
                select(FieldVersion.id).where(FieldVersion.id == target_id)
            )
        else:
            result = await self.session.execute(
                select(ChoiceVersion.field_version_id).where(ChoiceVersion.id == target_id)
            )
        field_version_id = result.scalar_one_or_none()
        if field_version_id is None:
            raise RuleTargetNotFoundError(target_type.value, target_id)
        return field_version_id

    async def set_rule(
        self,
        target_type: RuleTargetType,
        target_id: str,
        score_value: ScoreValue,
        criteria: dict[str, Any] | None = None,
        created_by: str | None = None,
        commit: bool = True,
    ) -> ScoringRule:
        """Create or update a rule.

        Field rules are matched on criteria as well, so a yes/no field can
        carry one rule per answer. A choice has at most one active rule.
        Also marks the owning field version as scored.

        Raises:
            RuleTargetNotFoundError: If the target version doesn't exist
        """
        target_type = RuleTargetType(target_type)
        criteria = _normalize_criteria(criteria)
        field_version_id = await self._field_version_for_target(target_type, target_id)

        existing = None
        for rule in await self.get_rules(target_type, [target_id]):
            if target_type == RuleTargetType.CHOICE or _normalize_criteria(rule.criteria) == criteria:
                existing = rule
                break

        if existing is not None:
            existing.score_value = ScoreValue(score_value).value
            existing.criteria = criteria
            rule = existing
        else:
            rule = ScoringRule(
                target_type=target_type.value,
                target_id=target_id,
                score_value=ScoreValue(score_value).value,
                criteria=criteria,
                created_by=created_by,
                is_active=True,
            )
            self.session.add(rule)

        await self.session.execute(
            update(FieldVersion)
            .where(FieldVersion.id == field_version_id)
            .values(is_scored=True)
            .execution_options(synchronize_session="fetch")
        )
        if commit:
            await self.session.commit()
        logger.info(
            f"Set {target_type.value} rule on {target_id[:8]}: {ScoreValue(score_value).value}"
        )
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        """Soft-delete a rule. Returns False when no active rule had that id."""
        result = await self.session.execute(
            update(ScoringRule)
            .where(
                ScoringRule.id == rule_id,
                ScoringRule.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def import_seed(self, seed: ScoringSeed, created_by: str = "seed") -> SeedImportResult:
        """Bind seed rules to the form's currently active field and choice versions.

        Entries whose field or choice is not active on the form are reported
        as unresolved and skipped.
        """
        outcome = SeedImportResult(seed_id=seed.id)

        result = await self.session.execute(select(Form.id).where(Form.form_id == seed.form_id))
        form_pk = result.scalar_one_or_none()
        if form_pk is None:
            outcome.unresolved = [rule.field_id for rule in seed.rules]
            logger.warning(f"Seed {seed.id}: form {seed.form_id} has not been synced")
            return outcome

        result = await self.session.execute(
            select(FieldVersion).where(
                FieldVersion.form_id == form_pk,
                FieldVersion.is_active == True,  # noqa: E712
            )
        )
        versions = {version.field_id: version for version in result.scalars().all()}

        result = await self.session.execute(
            select(ChoiceVersion).where(
                ChoiceVersion.field_version_id.in_([v.id for v in versions.values()]),
                ChoiceVersion.is_active == True,  # noqa: E712
            )
        )
        choices = {
            (choice.field_version_id, choice.choice_label): choice
            for choice in result.scalars().all()
        }

        for seed_rule in seed.rules:
            version = versions.get(seed_rule.field_id)
            if version is None:
                outcome.unresolved.append(seed_rule.field_id)
                continue

            if seed_rule.choice is not None:
                choice = choices.get((version.id, seed_rule.choice))
                if choice is None:
                    outcome.unresolved.append(f"{seed_rule.field_id}:{seed_rule.choice}")
                    continue
                await self.set_rule(
                    RuleTargetType.CHOICE,
                    choice.id,
                    seed_rule.score,
                    seed_rule.criteria,
                    created_by,
                    commit=False,
                )
            else:
                await self.set_rule(
                    RuleTargetType.FIELD,
                    version.id,
                    seed_rule.score,
                    seed_rule.criteria,
                    created_by,
                    commit=False,
                )
            # Later entries for the same target must see this rule
            await self.session.flush()
            outcome.rules_set += 1

        await self.session.commit()
        logger.info(
            f"Imported seed {seed.id} v{seed.version}: rules={outcome.rules_set} "
            f"unresolved={len(outcome.unresolved)}"
        )
        return outcome
