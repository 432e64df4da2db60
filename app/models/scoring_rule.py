"""Scoring rule model mapping form fields and choices to screening colours."""

from enum import Enum

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import ActiveFlagMixin, Base, TimestampMixin


class ScoreValue(str, Enum):
    """Screening colour assigned by a rule."""

    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"
    NA = "na"


class RuleTargetType(str, Enum):
    """Kind of versioned entity a rule is bound to."""

    FIELD = "field"
    CHOICE = "choice"


class ScoringRule(Base, TimestampMixin, ActiveFlagMixin):
    """Configured colour for a field version or choice version.

    Several active rules may target the same entity (one per yes/no answer,
    for example). Rules are soft-deleted by flipping ``is_active``.
    """

    __tablename__ = "scoring_rules"

    target_type: Mapped[RuleTargetType] = mapped_column(
        String(20),
        nullable=False,
    )
    # Field version id or choice version id, depending on target_type
    target_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        index=True,
    )
    score_value: Mapped[ScoreValue] = mapped_column(
        String(10),
        nullable=False,
    )
    # Optional match condition, e.g. {"answer": "yes"}
    criteria: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ScoringRule {self.target_type}:{self.target_id[:8]} -> {self.score_value}>"
