"""
Post-completion work for signing requests.

Runs once a request enters completed: fetch and store the signed artifact,
mark the document signed, then notify every party. Each step is skipped when
its effect is already recorded, so re-running after a partial failure is safe.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from signdesk.core.clock import utcnow
from signdesk.core.errors import ProviderError
from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import SigningProvider
from signdesk.integrations.notifications import NotificationSender
from signdesk.integrations.storage import DocumentStore
from signdesk.models.document import Document, DocumentStatus
from signdesk.models.signing import SigningRequest, SigningRequestStatus
from signdesk.models.user import User
from signdesk.services.notification_service import (
    SIGNING_COMPLETED,
    dispatch_pending_notifications,
    enqueue_notification,
)

logger = get_logger(__name__)


class CompletionPipeline:
    def __init__(
        self,
        provider: SigningProvider,
        document_store: DocumentStore,
        notifier: NotificationSender,
        *,
        clock: Callable = utcnow,
    ):
        self.provider = provider
        self.document_store = document_store
        self.notifier = notifier
        self.clock = clock

    async def run(self, session: AsyncSession, signing_request_id: str) -> bool:
        """Run outstanding completion steps. Returns True when nothing is left pending."""
        try:
            return await self._run(session, signing_request_id)
        except StaleDataError:
            await session.rollback()
            logger.info("completion.concurrent_run", signing_request_id=signing_request_id)
            return False

    async def retry_pending(self, session: AsyncSession) -> int:
        """Re-run every completed request whose artifact step has not finished."""
        result = await session.execute(
            select(SigningRequest.id).where(
                SigningRequest.status == SigningRequestStatus.COMPLETED,
                SigningRequest.completion_pending.is_(True),
            )
        )
        finished = 0
        for signing_request_id in result.scalars().all():
            if await self.run(session, signing_request_id):
                finished += 1
        return finished

    async def _run(self, session: AsyncSession, signing_request_id: str) -> bool:
        result = await session.execute(
            select(SigningRequest)
            .where(SigningRequest.id == signing_request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalars().first()
        if request is None or request.status is not SigningRequestStatus.COMPLETED or not request.completion_pending:
            return False

        document = await session.get(Document, request.document_id)
        if document is None:
            logger.error("completion.document_missing", signing_request_id=request.id)
            return False

        artifact_stored = await self._store_artifact(session, request, document)
        await self._mark_document_signed(session, document)
        await self._notify_parties(session, request, document)

        if artifact_stored:
            request.completion_pending = False
            request.updated_at = self.clock()
            await session.commit()
            logger.info("completion.finished", signing_request_id=request.id)
        return artifact_stored

    async def _store_artifact(self, session: AsyncSession, request: SigningRequest, document: Document) -> bool:
        if request.signed_artifact_path is not None:
            return True

        now = self.clock()
        request.artifact_attempts += 1
        request.updated_at = now
        try:
            if request.provider_document_id is None:
                raise ProviderError("request has no provider document reference", error_code="not_registered")
            content = await self.provider.fetch_signed_artifact(request.provider_document_id)
            path = await self.document_store.save_signed_artifact(request.id, document, content)
        except (ProviderError, OSError) as exc:
            request.last_error = f"artifact retrieval failed: {exc}"
            await session.commit()
            logger.warning(
                "completion.artifact_failed",
                signing_request_id=request.id,
                attempts=request.artifact_attempts,
                error=str(exc),
            )
            return False

        request.signed_artifact_path = path
        request.last_error = None
        await session.commit()
        logger.info("completion.artifact_stored", signing_request_id=request.id, path=path)
        return True

    async def _mark_document_signed(self, session: AsyncSession, document: Document) -> None:
        if document.status is DocumentStatus.SIGNED:
            return
        document.status = DocumentStatus.SIGNED
        document.updated_at = self.clock()
        await session.commit()

    async def _notify_parties(self, session: AsyncSession, request: SigningRequest, document: Document) -> None:
        now = self.clock()
        payload = {"signing_request_id": request.id, "document_name": document.name}
        initiator = await session.get(User, request.initiator_id)
        recipients: list[tuple[str, str | None]] = []
        if initiator is not None:
            recipients.append((initiator.email.lower(), initiator.full_name))
        recipients.extend((s.email, s.name) for s in request.signatories)

        seen: set[str] = set()
        for email, name in recipients:
            if email in seen:
                continue
            seen.add(email)
            await enqueue_notification(
                session,
                signing_request_id=request.id,
                recipient_email=email,
                recipient_name=name,
                event=SIGNING_COMPLETED,
                payload=payload,
                now=now,
            )
        await session.commit()
        await dispatch_pending_notifications(session, self.notifier, signing_request_id=request.id, now=now)
        await session.commit()
