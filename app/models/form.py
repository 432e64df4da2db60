"""Versioned form schema models.

A form's fields and choices are stored as append-only version rows. At most
one version per external id is active at a time; older versions are kept
(inactive) so historical responses always point at the definition that was
answered.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import ActiveFlagMixin, Base, TimestampMixin, utc_now


class FieldType:
    """Provider field types with special handling."""

    GROUP = "group"
    MULTIPLE_CHOICE = "multiple_choice"
    YES_NO = "yes_no"
    OPINION_SCALE = "opinion_scale"
    STATEMENT = "statement"


class Form(Base, TimestampMixin, ActiveFlagMixin):
    """One row per external form identity."""

    __tablename__ = "typeform_forms"

    # External provider form id
    form_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
    )
    form_title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    workspace_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Form {self.form_id}>"


class FieldVersion(Base, TimestampMixin, ActiveFlagMixin):
    """Snapshot of one form field at one point in time."""

    __tablename__ = "typeform_field_versions"
    __table_args__ = (
        UniqueConstraint(
            "form_id",
            "field_id",
            "version_date",
            name="uq_typeform_field_versions_form_field_version",
        ),
    )

    form_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_forms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Stable external field id
    field_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    field_title: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    field_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    field_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    # Type-specific provider properties (choices, steps, nested fields...)
    properties: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    # Whether any scoring rule has been configured for this field
    is_scored: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # Enclosing group field version (null for top-level fields)
    parent_field_version_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_field_versions.id"),
        nullable=True,
        index=True,
    )
    hierarchy_level: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    display_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    version_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<FieldVersion {self.field_id} ({self.field_type}) active={self.is_active}>"


class ChoiceVersion(Base, TimestampMixin, ActiveFlagMixin):
    """Snapshot of one selectable option within a field version."""

    __tablename__ = "typeform_choice_versions"

    field_version_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("typeform_field_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Provider choice id, or "{field_id}-{step}" for synthetic scale choices
    choice_id: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    choice_label: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    choice_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    display_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    version_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ChoiceVersion {self.choice_id} '{self.choice_label}'>"
