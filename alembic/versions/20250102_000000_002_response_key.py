"""Unique response key per application.

Revision ID: 002
Revises: 001
Create Date: 2025-01-02 00:00:00.000000

Adds:
- application_field_responses.response_key: sha256 of
  (field_version_id, choice_version_id, response_value)
- UNIQUE (application_id, response_key), so re-ingestion cannot duplicate rows
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add and backfill response_key, then enforce uniqueness."""
    op.add_column(
        "application_field_responses",
        sa.Column("response_key", sa.String(64), nullable=True),
    )

    # Same digest as app.models.application.response_key (0x1f separated)
    op.execute(
        """
        UPDATE application_field_responses
        SET response_key = encode(
            sha256(convert_to(
                field_version_id::text || chr(31)
                || coalesce(choice_version_id::text, '') || chr(31)
                || coalesce(response_value, ''),
                'UTF8'
            )),
            'hex'
        )
        """
    )

    # Keep the earliest row of any duplicate group
    op.execute(
        """
        DELETE FROM application_field_responses r
        USING application_field_responses keep
        WHERE r.application_id = keep.application_id
          AND r.response_key = keep.response_key
          AND (r.created_at, r.id) > (keep.created_at, keep.id)
        """
    )

    op.alter_column("application_field_responses", "response_key", nullable=False)
    op.create_unique_constraint(
        "uq_application_field_responses_application_id_response_key",
        "application_field_responses",
        ["application_id", "response_key"],
    )


def downgrade() -> None:
    """Drop the response key."""
    op.drop_constraint(
        "uq_application_field_responses_application_id_response_key",
        "application_field_responses",
        type_="unique",
    )
    op.drop_column("application_field_responses", "response_key")
