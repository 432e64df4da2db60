"""Snapshot loading for a scoring run.

Rules, field types and choice labels are read once, in bulk, before any
answer is evaluated. Later admin edits do not affect an in-flight run.
Only active field and choice versions take part: a field removed from the
form keeps its rules but no longer contributes to a score.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.application import ApplicationFieldResponse
from app.models.form import ChoiceVersion, FieldVersion
from app.models.scoring_rule import ScoringRule
from app.rules.engine import RuleIndex, ScoringRulesEngine
from app.rules.models import ResponseFacts, RuleSnapshot, parse_criteria


@dataclass
class ScoringSnapshot:
    """Everything the engine needs, loaded up front."""

    rules: RuleIndex
    field_types: dict[str, str]
    choice_ids_by_label: dict[tuple[str, str], str]

    def engine(self) -> ScoringRulesEngine:
        """Build an engine over this snapshot."""
        return ScoringRulesEngine(self.rules, self.field_types, self.choice_ids_by_label)


def extract_response_facts(rows: Iterable[ApplicationFieldResponse]) -> list[ResponseFacts]:
    """Detach the fields the engine reads from ORM rows."""
    return [
        ResponseFacts(
            id=row.id,
            field_version_id=row.field_version_id,
            choice_version_id=row.choice_version_id,
            response_value=row.response_value,
        )
        for row in rows
    ]


async def load_rule_index(session: AsyncSession) -> RuleIndex:
    """Active scoring rules whose target version is still active, one query."""
    active_fields = select(FieldVersion.id).where(
        FieldVersion.is_active == True  # noqa: E712
    )
    active_choices = (
        select(ChoiceVersion.id)
        .join(FieldVersion, ChoiceVersion.field_version_id == FieldVersion.id)
        .where(
            ChoiceVersion.is_active == True,  # noqa: E712
            FieldVersion.is_active == True,  # noqa: E712
        )
    )
    result = await session.execute(
        select(ScoringRule).where(
            ScoringRule.is_active == True,  # noqa: E712
            or_(
                ScoringRule.target_id.in_(active_fields),
                ScoringRule.target_id.in_(active_choices),
            ),
        )
    )
    return RuleIndex(
        RuleSnapshot(
            id=rule.id,
            target_id=rule.target_id,
            score_value=rule.score_value,
            criteria=parse_criteria(rule.criteria),
        )
        for rule in result.scalars().all()
    )


async def load_field_types(session: AsyncSession) -> dict[str, str]:
    """Field type of every active field version, keyed by version id, one query."""
    result = await session.execute(
        select(FieldVersion.id, FieldVersion.field_type).where(
            FieldVersion.is_active == True  # noqa: E712
        )
    )
    return {row[0]: row[1] for row in result.all()}


async def load_choice_labels(
    session: AsyncSession,
    field_version_ids: Sequence[str],
) -> dict[tuple[str, str], str]:
    """Active choice ids keyed by (field version id, label) for the given fields."""
    if not field_version_ids:
        return {}
    result = await session.execute(
        select(ChoiceVersion.field_version_id, ChoiceVersion.choice_label, ChoiceVersion.id)
        .where(
            ChoiceVersion.field_version_id.in_(list(field_version_ids)),
            ChoiceVersion.is_active == True,  # noqa: E712
        )
        .order_by(ChoiceVersion.display_order)
    )
    labels: dict[tuple[str, str], str] = {}
    for field_version_id, label, choice_id in result.all():
        labels.setdefault((field_version_id, label), choice_id)
    return labels


async def load_snapshot(
    session: AsyncSession,
    responses: Sequence[ResponseFacts],
) -> ScoringSnapshot:
    """Load rules, field types and choice labels for scoring ``responses``.

    Errors propagate: scoring cannot proceed without its inputs.
    """
    rules = await load_rule_index(session)
    field_types = await load_field_types(session)
    field_version_ids = sorted({response.field_version_id for response in responses})
    choice_labels = await load_choice_labels(session, field_version_ids)
    return ScoringSnapshot(
        rules=rules,
        field_types=field_types,
        choice_ids_by_label=choice_labels,
    )
