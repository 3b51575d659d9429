from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.models.document import Document, DocumentStatus
from signdesk.models.user import User


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(func.lower(User.email) == email.lower()))
    return result.scalars().first()


async def create_user(session: AsyncSession, *, email: str, full_name: str) -> User:
    user = User(email=email.lower(), full_name=full_name, is_active=True)
    session.add(user)
    await session.flush()
    return user


async def register_document(session: AsyncSession, *, owner: User, name: str, storage_path: str) -> Document:
    document = Document(owner_id=owner.id, name=name, storage_path=storage_path, status=DocumentStatus.DRAFT)
    session.add(document)
    await session.flush()
    return document
