from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from signdesk.db.base import Base
from signdesk.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class ProcessedEvent(Base):
    """Idempotency ledger row: one per distinct provider event."""

    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("event_key", name="uq_processed_event_key"),)

    id: Mapped[Identifier]
    event_key: Mapped[str] = mapped_column(String(128), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(80), nullable=False)
    signing_request_id: Mapped[str | None] = mapped_column(
        ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=True, index=True
    )
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class NotificationDispatch(TimestampMixin, Base):
    __tablename__ = "notification_dispatches"
    __table_args__ = (
        UniqueConstraint("signing_request_id", "recipient_email", "event", name="uq_notification_dispatch_key"),
    )

    id: Mapped[Identifier]
    signing_request_id: Mapped[str] = mapped_column(
        ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event: Mapped[str] = mapped_column(String(80), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[NotificationStatus] = mapped_column(
        SAEnum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
