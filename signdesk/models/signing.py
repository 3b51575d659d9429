from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signdesk.db.base import Base
from signdesk.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class SigningRequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({SigningRequestStatus.PENDING, SigningRequestStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset(
    {SigningRequestStatus.COMPLETED, SigningRequestStatus.EXPIRED, SigningRequestStatus.CANCELLED}
)


class OrderingMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class RegistrationStatus(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    FAILED = "failed"


class SignatoryStatus(str, Enum):
    WAITING = "waiting"
    READY_TO_SIGN = "ready_to_sign"
    SIGNED = "signed"


# Enum columns persist member names, so the partial index predicate uses them too.
_ACTIVE_PREDICATE = "status IN ('PENDING', 'IN_PROGRESS')"


class SigningRequest(TimestampMixin, Base):
    __tablename__ = "signing_requests"
    __table_args__ = (
        Index(
            "uq_signing_requests_active_document",
            "document_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
    )

    id: Mapped[Identifier]
    document_id: Mapped[str] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    initiator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    provider_document_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[SigningRequestStatus] = mapped_column(
        SAEnum(SigningRequestStatus), default=SigningRequestStatus.PENDING, nullable=False
    )
    ordering_mode: Mapped[OrderingMode] = mapped_column(
        SAEnum(OrderingMode), default=OrderingMode.SEQUENTIAL, nullable=False
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    registration_status: Mapped[RegistrationStatus] = mapped_column(
        SAEnum(RegistrationStatus), default=RegistrationStatus.UNREGISTERED, nullable=False
    )
    completion_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    artifact_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    signatories: Mapped[list["Signatory"]] = relationship(
        back_populates="signing_request",
        cascade="all, delete-orphan",
        order_by="Signatory.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Signatory(Base):
    __tablename__ = "signatories"
    __table_args__ = (UniqueConstraint("signing_request_id", "position", name="uq_signatory_position"),)

    id: Mapped[Identifier]
    signing_request_id: Mapped[str] = mapped_column(
        ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_signer_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    signing_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    signing_token: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[SignatoryStatus] = mapped_column(
        SAEnum(SignatoryStatus), default=SignatoryStatus.WAITING, nullable=False
    )
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminders_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    signing_request: Mapped["SigningRequest"] = relationship(back_populates="signatories")
