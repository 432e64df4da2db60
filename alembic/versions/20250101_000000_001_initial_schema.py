"""Initial schema: versioned forms, scoring rules, applications and locks.

Revision ID: 001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # Forms
    op.create_table(
        "typeform_forms",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("form_id", sa.String(100), nullable=False),
        sa.Column("form_title", sa.String(500), nullable=False),
        sa.Column("workspace_id", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_typeform_forms"),
        sa.UniqueConstraint("form_id", name="uq_typeform_forms_form_id"),
    )
    op.create_index("ix_typeform_forms_is_active", "typeform_forms", ["is_active"])

    # Field versions (self-referencing for group children)
    op.create_table(
        "typeform_field_versions",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("form_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("field_id", sa.String(100), nullable=False),
        sa.Column("field_title", sa.Text(), nullable=False),
        sa.Column("field_type", sa.String(50), nullable=False),
        sa.Column("field_ref", sa.String(255), nullable=True),
        sa.Column("properties", postgresql.JSON(), nullable=True),
        sa.Column("is_scored", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("parent_field_version_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("hierarchy_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["form_id"],
            ["typeform_forms.id"],
            name="fk_typeform_field_versions_form_id_typeform_forms",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["parent_field_version_id"],
            ["typeform_field_versions.id"],
            name="fk_typeform_field_versions_parent_field_version_id_typeform_field_versions",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_typeform_field_versions"),
        sa.UniqueConstraint(
            "form_id",
            "field_id",
            "version_date",
            name="uq_typeform_field_versions_form_field_version",
        ),
    )
    op.create_index("ix_typeform_field_versions_form_id", "typeform_field_versions", ["form_id"])
    op.create_index("ix_typeform_field_versions_field_id", "typeform_field_versions", ["field_id"])
    op.create_index(
        "ix_typeform_field_versions_parent_field_version_id",
        "typeform_field_versions",
        ["parent_field_version_id"],
    )
    op.create_index(
        "ix_typeform_field_versions_is_active", "typeform_field_versions", ["is_active"]
    )

    # Choice versions
    op.create_table(
        "typeform_choice_versions",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("field_version_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("choice_id", sa.String(150), nullable=False),
        sa.Column("choice_label", sa.Text(), nullable=False),
        sa.Column("choice_ref", sa.String(255), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["field_version_id"],
            ["typeform_field_versions.id"],
            name="fk_typeform_choice_versions_field_version_id_typeform_field_versions",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_typeform_choice_versions"),
    )
    op.create_index(
        "ix_typeform_choice_versions_field_version_id",
        "typeform_choice_versions",
        ["field_version_id"],
    )
    op.create_index(
        "ix_typeform_choice_versions_is_active", "typeform_choice_versions", ["is_active"]
    )

    # Scoring rules (target is a field version or a choice version)
    op.create_table(
        "scoring_rules",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("target_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("score_value", sa.String(10), nullable=False),
        sa.Column("criteria", postgresql.JSON(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_scoring_rules"),
    )
    op.create_index("ix_scoring_rules_target_id", "scoring_rules", ["target_id"])
    op.create_index("ix_scoring_rules_is_active", "scoring_rules", ["is_active"])

    # Participants
    op.create_table(
        "participants",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("hubspot_contact_id", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_participants"),
    )
    op.create_index("ix_participants_email", "participants", ["email"], unique=True)
    op.create_index("ix_participants_is_active", "participants", ["is_active"])

    # Applications (one per submission token)
    op.create_table(
        "applications",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("participant_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("form_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("typeform_response_id", sa.String(255), nullable=False),
        sa.Column("submission_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("raw_data", postgresql.JSON(), nullable=True),
        sa.Column("application_data", postgresql.JSON(), nullable=True),
        sa.Column("answers_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("red_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("yellow_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("green_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("calculated_score", sa.Integer(), nullable=True),
        sa.Column("hubspot_deal_id", sa.String(100), nullable=True),
        sa.Column("screener_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["participant_id"],
            ["participants.id"],
            name="fk_applications_participant_id_participants",
        ),
        sa.ForeignKeyConstraint(
            ["form_id"],
            ["typeform_forms.id"],
            name="fk_applications_form_id_typeform_forms",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_applications"),
        sa.UniqueConstraint(
            "typeform_response_id", name="uq_applications_typeform_response_id"
        ),
    )
    op.create_index("ix_applications_participant_id", "applications", ["participant_id"])
    op.create_index("ix_applications_form_id", "applications", ["form_id"])
    op.create_index("ix_applications_status", "applications", ["status"])

    # Per-answer responses (one row per selected choice for multi-select)
    op.create_table(
        "application_field_responses",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("application_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("field_version_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("choice_version_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("response_value", sa.Text(), nullable=True),
        sa.Column("score", sa.String(10), nullable=True),
        sa.Column("response_metadata", postgresql.JSON(), nullable=True),
        sa.Column("is_raw", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_application_field_responses_application_id_applications",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["field_version_id"],
            ["typeform_field_versions.id"],
            name="fk_application_field_responses_field_version_id_typeform_field_versions",
        ),
        sa.ForeignKeyConstraint(
            ["choice_version_id"],
            ["typeform_choice_versions.id"],
            name="fk_application_field_responses_choice_version_id_typeform_choice_versions",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_application_field_responses"),
    )
    op.create_index(
        "ix_application_field_responses_application_id",
        "application_field_responses",
        ["application_id"],
    )
    op.create_index(
        "ix_application_field_responses_field_version_id",
        "application_field_responses",
        ["field_version_id"],
    )

    # Processing locks (primary key arbitrates concurrent deliveries)
    op.create_table(
        "processing_locks",
        sa.Column("lock_id", sa.String(255), nullable=False),
        sa.Column("tracking_id", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_id", name="pk_processing_locks"),
    )
    op.create_index("ix_processing_locks_created_at", "processing_locks", ["created_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("processing_locks")
    op.drop_table("application_field_responses")
    op.drop_table("applications")
    op.drop_table("participants")
    op.drop_table("scoring_rules")
    op.drop_table("typeform_choice_versions")
    op.drop_table("typeform_field_versions")
    op.drop_table("typeform_forms")
