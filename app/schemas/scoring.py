"""Pydantic schemas for scoring rules and score results."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.scoring_rule import RuleTargetType, ScoreValue


class ScoringRuleUpsert(BaseModel):
    """Schema for setting a scoring rule."""

    target_type: RuleTargetType
    target_id: str
    score_value: ScoreValue
    criteria: dict[str, Any] | None = Field(
        default=None,
        description="Optional match condition, e.g. {\"answer\": \"yes\"}",
    )
    created_by: str | None = None


class ScoringRuleRead(BaseModel):
    """Schema for reading a scoring rule."""

    id: str
    target_type: RuleTargetType
    target_id: str
    score_value: ScoreValue
    criteria: dict[str, Any] | None = None
    created_by: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ScoreSummaryRead(BaseModel):
    """Aggregate score for one application."""

    application_id: str
    red_count: int
    yellow_count: int
    green_count: int
    total_score: int
    answers_scored: int
    partial: bool
