"""Deterministic scoring rules engine.

Evaluates stored answer rows against a snapshot of active scoring rules.
The engine is pure: every input (rules, field types, choice labels) is
loaded once by the caller and never re-read during a run, so the same
answers and rules always produce the same colours.
"""

import logging
from typing import Iterable

from app.models.form import FieldType
from app.models.scoring_rule import ScoreValue
from app.rules.models import (
    AnswerEvaluation,
    ColorCounts,
    ResponseFacts,
    RuleSnapshot,
    total_score,
)

logger = logging.getLogger(__name__)


class RuleIndex:
    """Active rules grouped by the id of the field or choice version they target."""

    def __init__(self, rules: Iterable[RuleSnapshot] = ()) -> None:
        self._by_target: dict[str, list[RuleSnapshot]] = {}
        for rule in rules:
            self._by_target.setdefault(rule.target_id, []).append(rule)

    def for_target(self, target_id: str | None) -> list[RuleSnapshot]:
        """Rules targeting ``target_id``, empty when none."""
        if not target_id:
            return []
        return self._by_target.get(target_id, [])

    def __len__(self) -> int:
        return len(self._by_target)


class ScoringRulesEngine:
    """Colour assignment for answer rows.

    Dispatch is by the answer's field type:
    - yes_no: only rules whose ``criteria.answer`` matches the value fire
    - multiple_choice: field rules, plus rules on the choice matching the value's label
    - opinion_scale: only rules on the step choice matching the value's label
    - anything else: every field rule fires

    Rules targeting a row's ``choice_version_id`` fire in addition, whatever
    the field type.
    """

    def __init__(
        self,
        rules: RuleIndex,
        field_types: dict[str, str],
        choice_ids_by_label: dict[tuple[str, str], str],
    ) -> None:
        """Initialize engine with a loaded snapshot.

        Args:
            rules: Active rules indexed by target id
            field_types: Field type keyed by field version id
            choice_ids_by_label: Active choice version id keyed by
                (field version id, choice label)
        """
        self.rules = rules
        self.field_types = field_types
        self.choice_ids_by_label = choice_ids_by_label

    def _apply(self, rules: list[RuleSnapshot], counts: ColorCounts) -> None:
        for rule in rules:
            counts.add(rule.score_value)

    def _choice_by_label(self, field_version_id: str, value: str | None) -> str | None:
        if not value:
            return None
        return self.choice_ids_by_label.get((field_version_id, value))

    def evaluate(self, response: ResponseFacts) -> AnswerEvaluation:
        """Evaluate one answer row.

        A failure while evaluating a single answer scores it ``na``
        instead of failing the run.
        """
        counts = ColorCounts()
        try:
            field_type = self.field_types.get(response.field_version_id)
            if field_type is None:
                logger.warning(
                    f"No field version {response.field_version_id} for response {response.id}"
                )
                return AnswerEvaluation(response.id, ScoreValue.NA, counts)

            field_rules = self.rules.for_target(response.field_version_id)

            if response.choice_version_id:
                self._apply(self.rules.for_target(response.choice_version_id), counts)

            if field_type == FieldType.YES_NO:
                for rule in field_rules:
                    if rule.matches_answer(response.response_value):
                        counts.add(rule.score_value)
            elif field_type == FieldType.MULTIPLE_CHOICE:
                self._apply(field_rules, counts)
                choice_id = self._choice_by_label(
                    response.field_version_id, response.response_value
                )
                self._apply(self.rules.for_target(choice_id), counts)
            elif field_type == FieldType.OPINION_SCALE:
                choice_id = self._choice_by_label(
                    response.field_version_id, response.response_value
                )
                self._apply(self.rules.for_target(choice_id), counts)
            else:
                self._apply(field_rules, counts)
        except Exception as e:
            logger.error(f"Error evaluating response {response.id}: {e}")
            return AnswerEvaluation(response.id, ScoreValue.NA, ColorCounts())

        return AnswerEvaluation(response.id, counts.final_color, counts)

    def evaluate_all(self, responses: Iterable[ResponseFacts]) -> list[AnswerEvaluation]:
        """Evaluate answers in order."""
        return [self.evaluate(response) for response in responses]


def aggregate(evaluations: Iterable[AnswerEvaluation]) -> tuple[ColorCounts, int]:
    """Sum per-answer counters and compute the weighted total."""
    totals = ColorCounts()
    for evaluation in evaluations:
        totals = totals + evaluation.counts
    return totals, total_score(totals.red, totals.yellow, totals.green)
