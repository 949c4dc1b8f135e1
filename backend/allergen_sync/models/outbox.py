"""
Outbox model for declaration-change events.

Events are inserted in the same transaction as the declaration row, so a
downstream reader (menus, labels, the engines of dependent recipes) never
sees a change without its event or an event without its change.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SQLEnum, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import AutoIncrementBigInteger, Base


class OutboxStatus(str, Enum):
    """Status of an outbox event."""
    PENDING = "PENDING"      # Ready to be processed
    PUBLISHED = "PUBLISHED"  # Successfully published
    FAILED = "FAILED"        # Failed after max retries


class OutboxEvent(Base):
    """
    Outbox event for guaranteed delivery.

    Event types written by the allergen store:
    - ALLERGEN_DECLARATION_UPDATED: declaration row changed
    - ALLERGEN_OVERRIDES_CLEANED: orphaned promotions removed
    """
    __tablename__ = "allergen_outbox_event"

    id: Mapped[int] = mapped_column(AutoIncrementBigInteger, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    aggregate_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "recipe"
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Event payload (JSON serialized)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[OutboxStatus] = mapped_column(
        SQLEnum(OutboxStatus, name="allergen_outbox_status"),
        default=OutboxStatus.PENDING,
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Composite index for efficient polling by the processor
    __table_args__ = (
        Index("ix_allergen_outbox_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<OutboxEvent(id={self.id}, type={self.event_type}, status={self.status.value})>"
