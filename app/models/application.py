"""Application and per-answer response models."""

import hashlib
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, utc_now


class ApplicationStatus(str, Enum):
    """Application workflow status."""

    PENDING = "pending"  # Received, answers not yet ingested
    NEW = "new"  # Answers ingested, awaiting screening
    SCREENING_SCHEDULED = "screening_scheduled"
    SCREENING_NO_SHOW = "screening_no_show"
    INVITED_TO_RESCHEDULE = "invited_to_reschedule"
    SECONDARY_SCREENING = "secondary_screening"
    MEDICAL_REVIEW_REQUIRED = "medical_review_required"
    PENDING_MEDICAL_REVIEW = "pending_medical_review"
    PENDING_MEDICATION_CHANGE = "pending_medication_change"
    PENDING_IC = "pending_ic"
    CONDITIONALLY_APPROVED = "conditionally_approved"
    SCREENING_IN_PROCESS = "screening_in_process"
    SCREENING_COMPLETED = "screening_completed"
    CLOSED = "closed"


class Application(Base, TimestampMixin):
    """One application per external submission token.

    Applications are never hard-deleted. Aggregate score fields are written by
    the scoring engine; ``application_data`` carries the ingestion summary.
    """

    __tablename__ = "applications"

    participant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("participants.id"),
        nullable=False,
        index=True,
    )
    form_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_forms.id"),
        nullable=False,
        index=True,
    )
    # Submission token; second deliveries resolve to the same row
    typeform_response_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    submission_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    status: Mapped[ApplicationStatus] = mapped_column(
        String(50),
        default=ApplicationStatus.PENDING,
        nullable=False,
        index=True,
    )
    # Raw form_response payload as delivered
    raw_data: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    # Ingestion summary or bounded raw snapshot
    application_data: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    answers_processed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    red_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    yellow_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    green_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    # Null until scoring has run at least once
    calculated_score: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    hubspot_deal_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    screener_notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    @property
    def is_fully_processed(self) -> bool:
        """Whether answers were ingested and a score exists."""
        return self.answers_processed and self.calculated_score is not None

    def __repr__(self) -> str:
        return f"<Application {self.id[:8]}... token={self.typeform_response_id}>"


def response_key(
    field_version_id: str,
    choice_version_id: str | None,
    response_value: str | None,
) -> str:
    """Stable digest identifying a response row within its application."""
    raw = "\x1f".join([field_version_id, choice_version_id or "", response_value or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _default_response_key(context) -> str:
    params = context.get_current_parameters()
    return response_key(
        params["field_version_id"],
        params.get("choice_version_id"),
        params.get("response_value"),
    )


class ApplicationFieldResponse(Base):
    """One answered field, or one selected choice of a multi-select field."""

    __tablename__ = "application_field_responses"
    __table_args__ = (
        UniqueConstraint(
            "application_id",
            "response_key",
            name="uq_application_field_responses_application_id_response_key",
        ),
    )

    application_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field_version_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_field_versions.id"),
        nullable=False,
        index=True,
    )
    choice_version_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_choice_versions.id"),
        nullable=True,
    )
    response_value: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    # Digest of (field version, choice version, value); one row per key per application
    response_key: Mapped[str] = mapped_column(
        String(64),
        default=_default_response_key,
        nullable=False,
    )
    # Computed colour (red/yellow/green/na), null until scored
    score: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    # is_multi_select / is_choice / choice_index / choice_id / choice_ref
    response_metadata: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    is_raw: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    @property
    def is_multi_select(self) -> bool:
        """Whether this row is one choice of a multi-select answer."""
        return bool((self.response_metadata or {}).get("is_multi_select"))

    def __repr__(self) -> str:
        return f"<ApplicationFieldResponse app={self.application_id[:8]} field={self.field_version_id[:8]}>"
