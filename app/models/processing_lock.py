"""Processing lock model for per-submission mutual exclusion."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseNoId, utc_now


class ProcessingLock(BaseNoId):
    """Short-lived exclusivity record keyed by submission token.

    The primary key on ``lock_id`` is what arbitrates concurrent deliveries
    across worker processes.
    """

    __tablename__ = "processing_locks"

    # "typeform_" + submission token
    lock_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    # Tracking id of the delivery currently holding the lock
    tracking_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ProcessingLock {self.lock_id} tracking={self.tracking_id}>"
