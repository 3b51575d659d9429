from __future__ import annotations

import uuid
from typing import Annotated

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signdesk.db.base import Base
from signdesk.models.mixins import TimestampMixin


Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[Identifier]
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    documents: Mapped[list["Document"]] = relationship(back_populates="owner", cascade="all,delete")
