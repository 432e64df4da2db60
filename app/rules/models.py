"""Rule and evaluation data models."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from app.models.scoring_rule import ScoreValue

logger = logging.getLogger(__name__)


def parse_criteria(raw: Any) -> dict[str, Any] | None:
    """Normalize stored criteria to a dict.

    Criteria written by older clients may arrive as a JSON string.
    Unparseable criteria are treated as absent.
    """
    if raw is None or isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring unparseable rule criteria: {raw!r}")
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable copy of an active scoring rule taken at the start of a run."""

    id: str
    target_id: str
    score_value: str
    criteria: Optional[dict[str, Any]] = None

    def matches_answer(self, value: Optional[str]) -> bool:
        """Whether ``criteria.answer`` equals ``value``, ignoring case."""
        expected = (self.criteria or {}).get("answer")
        if not expected or value is None:
            return False
        return str(expected).lower() == str(value).lower()


@dataclass(frozen=True)
class ResponseFacts:
    """The parts of a stored answer row the engine looks at."""

    id: str
    field_version_id: str
    choice_version_id: Optional[str]
    response_value: Optional[str]


@dataclass
class ColorCounts:
    """Per-colour counters. Several rules may fire for one answer."""

    red: int = 0
    yellow: int = 0
    green: int = 0

    def add(self, score_value: str) -> None:
        """Count one fired rule. ``na`` rules do not count."""
        if score_value == ScoreValue.RED:
            self.red += 1
        elif score_value == ScoreValue.YELLOW:
            self.yellow += 1
        elif score_value == ScoreValue.GREEN:
            self.green += 1

    @property
    def final_color(self) -> ScoreValue:
        """Red beats yellow beats green; nothing fired reads as na."""
        if self.red > 0:
            return ScoreValue.RED
        if self.yellow > 0:
            return ScoreValue.YELLOW
        if self.green > 0:
            return ScoreValue.GREEN
        return ScoreValue.NA

    def __add__(self, other: "ColorCounts") -> "ColorCounts":
        return ColorCounts(
            red=self.red + other.red,
            yellow=self.yellow + other.yellow,
            green=self.green + other.green,
        )


def total_score(red: int, yellow: int, green: int) -> int:
    """Weighted total: green and red weigh 3, yellow weighs 1 against."""
    return 3 * green - 3 * red - yellow


@dataclass
class AnswerEvaluation:
    """Result of evaluating a single answer row."""

    response_id: str
    score: ScoreValue
    counts: ColorCounts = field(default_factory=ColorCounts)
