from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated

from sqlalchemy import Enum as SAEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signdesk.db.base import Base
from signdesk.models.mixins import TimestampMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    SIGNED = "signed"


class Document(TimestampMixin, Base):
    __tablename__ = "documents"

    id: Mapped[Identifier]
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(SAEnum(DocumentStatus), default=DocumentStatus.DRAFT, nullable=False)

    owner: Mapped["User"] = relationship(back_populates="documents")
