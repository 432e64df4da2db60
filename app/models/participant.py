"""Participant model."""

from datetime import date

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import ActiveFlagMixin, Base, TimestampMixin


class Participant(Base, TimestampMixin, ActiveFlagMixin):
    """Person who submitted one or more applications, identified by email."""

    __tablename__ = "participants"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    phone: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    date_of_birth: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
    )
    # CRM contact id once matched
    hubspot_contact_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    @property
    def full_name(self) -> str:
        """Get participant's full name."""
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<Participant {self.email}>"
