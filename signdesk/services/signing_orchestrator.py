"""
Signing request orchestration.

Every mutation of a signing request runs as one transition unit: read the
request, decide, write, commit. Units on the same request are serialized by
the row version (and a row lock where the backend supports one); a unit that
loses the race is retried from the read.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from signdesk.core.clock import as_utc, utcnow
from signdesk.core.errors import (
    ConcurrencyError,
    ConflictError,
    DuplicateEventError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ProviderRegistrationError,
    ValidationError,
)
from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import SignerSlotRequest, SigningProvider
from signdesk.integrations.notifications import NotificationSender
from signdesk.integrations.storage import DocumentStore
from signdesk.models.document import Document
from signdesk.models.event import ProcessedEvent
from signdesk.models.signing import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    OrderingMode,
    RegistrationStatus,
    Signatory,
    SignatoryStatus,
    SigningRequest,
    SigningRequestStatus,
)
from signdesk.models.user import User
from signdesk.schemas.webhook import EventOutcome
from signdesk.services.completion_pipeline import CompletionPipeline
from signdesk.services.notification_service import (
    SIGNATURE_REQUESTED,
    dispatch_pending_notifications,
    enqueue_notification,
    reminder_event,
)
from signdesk.services.provider_events import (
    DocumentCompleted,
    NextSignerReady,
    ProviderEvent,
    SignerSigned,
    UnknownEvent,
)
from signdesk.services.reminder_policy import AllowAllReminders, ReminderPolicy
from signdesk.services.state_machine import (
    advance_status,
    all_signed,
    effective_status,
    initial_signatory_status,
    sync_readiness,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

T = TypeVar("T")


@dataclass(slots=True)
class SignerInput:
    name: str
    email: str


@dataclass(slots=True)
class _UnitResult:
    outcome: EventOutcome
    signing_request_id: Optional[str] = None
    completed: bool = False


class SigningOrchestrator:
    def __init__(
        self,
        provider: SigningProvider,
        document_store: DocumentStore,
        notifier: NotificationSender,
        *,
        pipeline: CompletionPipeline | None = None,
        reminder_policy: ReminderPolicy | None = None,
        max_signatories: int = 10,
        transition_max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.document_store = document_store
        self.notifier = notifier
        self.clock = clock
        self.pipeline = pipeline or CompletionPipeline(provider, document_store, notifier, clock=clock)
        self.reminder_policy = reminder_policy or AllowAllReminders()
        self.max_signatories = max_signatories
        self.transition_max_attempts = transition_max_attempts

    def status_of(self, request: SigningRequest) -> SigningRequestStatus:
        return effective_status(request, self.clock())

    # ------------------------------------------------------------------
    # Creation and provider registration
    # ------------------------------------------------------------------

    async def create_request(
        self,
        session: AsyncSession,
        *,
        actor: User,
        document_id: str,
        signers: Sequence[SignerInput],
        ordering_mode: OrderingMode = OrderingMode.SEQUENTIAL,
        message: str | None = None,
        expires_at: datetime | None = None,
    ) -> SigningRequest:
        """
        Create a signing request and register it with the provider.

        Validation, authorization and conflict checks run before anything is
        persisted. The request is committed before the provider is called, so
        a provider failure leaves it pending with its registration marked
        failed.

        Raises:
            ValidationError: If the signer list or expiry is invalid
            NotFoundError: If the document does not exist
            ForbiddenError: If the actor does not own the document
            ConflictError: If the document already has an active request
            ProviderRegistrationError: If provider registration fails
        """
        now = self.clock()
        normalized = self._validate_signers(signers)
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("expires_at must be in the future")

        document = await session.get(Document, document_id)
        if document is None:
            raise NotFoundError(f"document {document_id} not found")
        if document.owner_id != actor.id:
            raise ForbiddenError("only the document owner may request signatures")

        await self._ensure_no_active_request(session, document_id, now)
        accounts = await self._accounts_by_email(session, [signer.email for signer in normalized])

        request = SigningRequest(
            document_id=document_id,
            initiator_id=actor.id,
            status=SigningRequestStatus.PENDING,
            ordering_mode=ordering_mode,
            message=message,
            expires_at=expires_at,
            registration_status=RegistrationStatus.UNREGISTERED,
            completion_pending=False,
            artifact_attempts=0,
            created_at=now,
            updated_at=now,
        )
        for position, signer in enumerate(normalized, start=1):
            request.signatories.append(
                Signatory(
                    email=signer.email,
                    name=signer.name,
                    user_id=accounts.get(signer.email),
                    position=position,
                    status=initial_signatory_status(ordering_mode, position),
                    reminders_sent=0,
                    created_at=now,
                )
            )
        session.add(request)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(f"document {document_id} already has an active signing request") from exc

        logger.info(
            "signing.request.created",
            signing_request_id=request.id,
            document_id=document_id,
            signatories=len(normalized),
            ordering_mode=ordering_mode.value,
        )
        await self._register_with_provider(session, request, document)
        return await self._reload(session, request.id)

    async def retry_registration(self, session: AsyncSession, signing_request_id: str, *, actor: User) -> SigningRequest:
        """Re-attempt provider registration for a pending request whose registration failed."""
        request = await self._load_request(session, signing_request_id)
        self._ensure_initiator(actor.id, request)
        if effective_status(request, self.clock()) in TERMINAL_STATUSES:
            raise ConflictError(f"signing request is {self.status_of(request).value}")
        if request.registration_status is RegistrationStatus.REGISTERED:
            raise ConflictError("signing request is already registered with the provider")

        document = await session.get(Document, request.document_id)
        if document is None:
            raise NotFoundError(f"document {request.document_id} not found")
        await self._register_with_provider(session, request, document)
        return await self._reload(session, request.id)

    async def _register_with_provider(self, session: AsyncSession, request: SigningRequest, document: Document) -> None:
        signatories = sorted(request.signatories, key=lambda s: s.position)
        slot_requests = [
            SignerSlotRequest(
                name=s.name,
                email=s.email,
                order=s.position if request.ordering_mode is OrderingMode.SEQUENTIAL else 1,
            )
            for s in signatories
        ]
        try:
            if request.provider_document_id is None:
                content = await self.document_store.load_document(document)
                request.provider_document_id = await self.provider.upload_document(content, f"{document.name}.pdf")
                request.updated_at = self.clock()
                await session.commit()
            slots = await self.provider.create_signer_slots(
                request.provider_document_id, slot_requests, expires_at=as_utc(request.expires_at)
            )
            if len(slots) != len(signatories):
                raise ProviderError(
                    f"provider returned {len(slots)} signer slots for {len(signatories)} signatories",
                    error_code="incomplete_registration",
                )
        except (ProviderError, OSError) as exc:
            await self._record_registration_failure(session, request, signatories, exc)
            cause = exc if isinstance(exc, ProviderError) else None
            raise ProviderRegistrationError(
                f"provider registration failed: {exc}", signing_request_id=request.id, cause=cause
            ) from exc

        now = self.clock()
        slots_by_email = {slot.email.lower(): slot for slot in slots}
        for signatory, slot in zip(signatories, slots):
            slot = slots_by_email.get(signatory.email, slot)
            signatory.provider_signer_id = slot.provider_signer_id
            signatory.signing_url = slot.signing_url
            signatory.signing_token = slot.signing_token
        request.registration_status = RegistrationStatus.REGISTERED
        request.last_error = None
        request.updated_at = now

        for signatory in signatories:
            if signatory.status is SignatoryStatus.READY_TO_SIGN:
                await self._enqueue_signature_request(session, request, signatory, document.name, now)
        try:
            await session.commit()
        except StaleDataError as exc:
            await session.rollback()
            raise ConflictError("signing request changed during provider registration") from exc

        logger.info(
            "signing.request.registered",
            signing_request_id=request.id,
            provider_document_id=request.provider_document_id,
        )
        await self._dispatch_notifications(session, request.id)

    async def _record_registration_failure(
        self,
        session: AsyncSession,
        request: SigningRequest,
        signatories: Sequence[Signatory],
        exc: Exception,
    ) -> None:
        for signatory in signatories:
            signatory.provider_signer_id = None
            signatory.signing_url = None
            signatory.signing_token = None
        request.registration_status = RegistrationStatus.FAILED
        request.last_error = str(exc)
        request.updated_at = self.clock()
        await session.commit()
        logger.warning(
            "signing.request.registration_failed",
            signing_request_id=request.id,
            error=str(exc),
            transient=getattr(exc, "transient", None),
        )

    def _validate_signers(self, signers: Sequence[SignerInput]) -> list[SignerInput]:
        if not signers:
            raise ValidationError("at least one signatory is required")
        if len(signers) > self.max_signatories:
            raise ValidationError(f"at most {self.max_signatories} signatories are allowed")

        normalized: list[SignerInput] = []
        seen: set[str] = set()
        for signer in signers:
            name = (signer.name or "").strip()
            email = (signer.email or "").strip().lower()
            if not name:
                raise ValidationError("signatory name must not be empty")
            if not EMAIL_PATTERN.match(email):
                raise ValidationError(f"invalid signatory email: {signer.email}")
            if email in seen:
                raise ValidationError(f"duplicate signatory email: {email}")
            seen.add(email)
            normalized.append(SignerInput(name=name, email=email))
        return normalized

    async def _ensure_no_active_request(self, session: AsyncSession, document_id: str, now: datetime) -> None:
        result = await session.execute(
            select(SigningRequest).where(
                SigningRequest.document_id == document_id,
                SigningRequest.status.in_(ACTIVE_STATUSES),
            )
        )
        for existing in result.scalars().all():
            if effective_status(existing, now) is not SigningRequestStatus.EXPIRED:
                raise ConflictError(f"document {document_id} already has an active signing request")
            # Lapsed but not yet swept; persist the expiry so the slot frees up.
            advance_status(existing, SigningRequestStatus.EXPIRED, now=now)
            await session.commit()
            logger.info("signing.request.expired", signing_request_id=existing.id, lazily=True)

    async def _accounts_by_email(self, session: AsyncSession, emails: Sequence[str]) -> dict[str, str]:
        result = await session.execute(select(User.id, User.email).where(func.lower(User.email).in_(emails)))
        return {email.lower(): user_id for user_id, email in result.all()}

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    async def apply_provider_event(self, session: AsyncSession, event: ProviderEvent) -> EventOutcome:
        """
        Apply one decoded provider event exactly once.

        The ledger row is written in the same transaction as the state change,
        so a redelivered event is reported as a duplicate and changes nothing.

        Raises:
            ConcurrencyError: If the unit kept losing the race on its request
        """
        for attempt in range(1, self.transition_max_attempts + 1):
            try:
                result = await self._apply_once(session, event)
                await session.commit()
            except DuplicateEventError:
                await session.rollback()
                logger.info("webhook.duplicate", event_key=event.event_key, kind=event.kind)
                return EventOutcome.DUPLICATE
            except IntegrityError:
                await session.rollback()
                if await self._ledger_contains(session, event.event_key):
                    logger.info("webhook.duplicate", event_key=event.event_key, kind=event.kind, raced=True)
                    return EventOutcome.DUPLICATE
                logger.warning("webhook.transition.integrity_conflict", event_key=event.event_key, attempt=attempt)
            except StaleDataError:
                await session.rollback()
                logger.info("webhook.transition.retry", event_key=event.event_key, attempt=attempt)
            except Exception:
                await session.rollback()
                raise
            else:
                break
        else:
            raise ConcurrencyError(f"event {event.event_key} could not be applied after {self.transition_max_attempts} attempts")

        logger.info(
            "webhook.event.processed",
            event_key=event.event_key,
            kind=event.kind,
            outcome=result.outcome.value,
            signing_request_id=result.signing_request_id,
        )
        if result.outcome is EventOutcome.APPLIED and result.signing_request_id is not None:
            await self._dispatch_notifications(session, result.signing_request_id)
        if result.completed and result.signing_request_id is not None:
            await self.pipeline.run(session, result.signing_request_id)
        return result.outcome

    async def _apply_once(self, session: AsyncSession, event: ProviderEvent) -> _UnitResult:
        if await self._already_processed(session, event):
            raise DuplicateEventError(event.event_key)

        now = self.clock()
        if isinstance(event, UnknownEvent):
            await self._record_event(session, event, None, now)
            logger.info("webhook.event.unrecognised", kind=event.kind, event_key=event.event_key)
            return _UnitResult(EventOutcome.IGNORED)

        request = await self._lock_by_provider_document(session, event.provider_document_id)
        await self._record_event(session, event, request.id if request else None, now)
        if request is None:
            logger.warning("webhook.unknown_document", provider_document_id=event.provider_document_id)
            return _UnitResult(EventOutcome.IGNORED)

        if request.is_terminal:
            logger.info("webhook.terminal_request", signing_request_id=request.id, status=request.status.value)
            return _UnitResult(EventOutcome.IGNORED, request.id)
        if effective_status(request, now) is SigningRequestStatus.EXPIRED:
            advance_status(request, SigningRequestStatus.EXPIRED, now=now)
            logger.info("signing.request.expired", signing_request_id=request.id, lazily=True)
            return _UnitResult(EventOutcome.IGNORED, request.id)

        if isinstance(event, SignerSigned):
            return await self._apply_signer_signed(session, request, event, now)
        if isinstance(event, NextSignerReady):
            return await self._apply_next_signer_ready(session, request, event, now)
        if isinstance(event, DocumentCompleted):
            return await self._apply_document_completed(session, request, now)
        raise TypeError(f"unhandled provider event {event!r}")

    async def _apply_signer_signed(
        self, session: AsyncSession, request: SigningRequest, event: SignerSigned, now: datetime
    ) -> _UnitResult:
        signatory = self._find_provider_signer(request, event.provider_signer_id)
        if signatory is None:
            logger.warning(
                "webhook.unknown_signer", signing_request_id=request.id, provider_signer_id=event.provider_signer_id
            )
            return _UnitResult(EventOutcome.IGNORED, request.id)
        if signatory.status is SignatoryStatus.SIGNED:
            return _UnitResult(EventOutcome.IGNORED, request.id)
        if signatory.status is SignatoryStatus.WAITING:
            # Provider attests the signature; accept it even though it arrived ahead of its turn.
            logger.warning("signatory.signed_out_of_order", signing_request_id=request.id, position=signatory.position)

        signatory.status = SignatoryStatus.SIGNED
        signatory.signed_at = event.signed_at or event.occurred_at
        logger.info("signatory.signed", signing_request_id=request.id, position=signatory.position)
        return await self._progress(session, request, now)

    async def _apply_next_signer_ready(
        self, session: AsyncSession, request: SigningRequest, event: NextSignerReady, now: datetime
    ) -> _UnitResult:
        signatory = self._find_provider_signer(request, event.provider_signer_id)
        if signatory is None:
            logger.warning(
                "webhook.unknown_signer", signing_request_id=request.id, provider_signer_id=event.provider_signer_id
            )
            return _UnitResult(EventOutcome.IGNORED, request.id)

        changed = False
        if event.signing_url and signatory.status is not SignatoryStatus.SIGNED and signatory.signing_url != event.signing_url:
            signatory.signing_url = event.signing_url
            changed = True

        # Readiness always follows persisted position order, not the provider's claim.
        newly_ready = sync_readiness(request.ordering_mode, request.signatories)
        await self._announce_ready(session, request, newly_ready, now)
        if not changed and not newly_ready:
            return _UnitResult(EventOutcome.IGNORED, request.id)
        self._touch(request, now)
        return _UnitResult(EventOutcome.APPLIED, request.id)

    async def _apply_document_completed(self, session: AsyncSession, request: SigningRequest, now: datetime) -> _UnitResult:
        if not all_signed(request.signatories):
            logger.info("webhook.completion_before_signatures", signing_request_id=request.id)
            return _UnitResult(EventOutcome.IGNORED, request.id)
        return await self._progress(session, request, now)

    async def _progress(self, session: AsyncSession, request: SigningRequest, now: datetime) -> _UnitResult:
        self._touch(request, now)
        if all_signed(request.signatories):
            transition = advance_status(request, SigningRequestStatus.COMPLETED, now=now)
            if transition.entered is SigningRequestStatus.COMPLETED:
                logger.info("signing.request.completed", signing_request_id=request.id)
            return _UnitResult(
                EventOutcome.APPLIED, request.id, completed=transition.entered is SigningRequestStatus.COMPLETED
            )

        if request.status is SigningRequestStatus.PENDING:
            advance_status(request, SigningRequestStatus.IN_PROGRESS, now=now)
        newly_ready = sync_readiness(request.ordering_mode, request.signatories)
        await self._announce_ready(session, request, newly_ready, now)
        return _UnitResult(EventOutcome.APPLIED, request.id)

    async def _announce_ready(
        self, session: AsyncSession, request: SigningRequest, signatories: Sequence[Signatory], now: datetime
    ) -> None:
        if not signatories:
            return
        document = await session.get(Document, request.document_id)
        document_name = document.name if document else ""
        for signatory in signatories:
            await self._enqueue_signature_request(session, request, signatory, document_name, now)

    async def _record_event(
        self, session: AsyncSession, event: ProviderEvent, signing_request_id: str | None, now: datetime
    ) -> None:
        session.add(
            ProcessedEvent(
                event_key=event.event_key,
                event_kind=event.kind,
                signing_request_id=signing_request_id,
                applied_at=now,
            )
        )
        await session.flush()

    async def _already_processed(self, session: AsyncSession, event: ProviderEvent) -> bool:
        """Fast path; the unique ledger key still decides when deliveries race."""
        return await self._ledger_contains(session, event.event_key)

    async def _ledger_contains(self, session: AsyncSession, event_key: str) -> bool:
        result = await session.execute(select(ProcessedEvent.id).where(ProcessedEvent.event_key == event_key))
        return result.first() is not None

    async def _lock_by_provider_document(self, session: AsyncSession, provider_document_id: str) -> SigningRequest | None:
        result = await session.execute(
            select(SigningRequest)
            .where(SigningRequest.provider_document_id == provider_document_id)
            .order_by(SigningRequest.created_at.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    def _find_provider_signer(request: SigningRequest, provider_signer_id: str) -> Signatory | None:
        return next((s for s in request.signatories if s.provider_signer_id == provider_signer_id), None)

    # ------------------------------------------------------------------
    # Initiator actions
    # ------------------------------------------------------------------

    async def cancel(self, session: AsyncSession, signing_request_id: str, *, actor: User) -> SigningRequest:
        """
        Cancel an active request. No provider call is made; events that
        arrive afterwards are recorded and ignored.
        """
        actor_id = actor.id

        async def unit() -> SigningRequest:
            request = await self._load_request(session, signing_request_id, lock=True)
            self._ensure_initiator(actor_id, request)
            now = self.clock()
            status = effective_status(request, now)
            if status in TERMINAL_STATUSES:
                raise ConflictError(f"signing request is already {status.value}")
            advance_status(request, SigningRequestStatus.CANCELLED, now=now)
            return request

        request = await self._run_unit(session, "cancel", unit)
        logger.info("signing.request.cancelled", signing_request_id=request.id, actor=actor_id)
        return await self._reload(session, request.id)

    async def remind(
        self, session: AsyncSession, signing_request_id: str, signatory_id: str, *, actor: User
    ) -> Signatory:
        """
        Queue a reminder for a signatory who is currently able to sign.

        Raises:
            ConflictError: If the request is terminal or the signatory is not ready
            RateLimitError: If the reminder policy refuses
        """
        actor_id = actor.id
        policy_checked = False

        async def unit() -> Signatory:
            nonlocal policy_checked
            request = await self._load_request(session, signing_request_id, lock=True)
            self._ensure_initiator(actor_id, request)
            now = self.clock()
            status = effective_status(request, now)
            if status in TERMINAL_STATUSES:
                raise ConflictError(f"signing request is {status.value}")
            signatory = next((s for s in request.signatories if s.id == signatory_id), None)
            if signatory is None:
                raise NotFoundError(f"signatory {signatory_id} not found on this request")
            if signatory.status is not SignatoryStatus.READY_TO_SIGN:
                raise ConflictError("signing request is not currently awaiting this signer")
            if not policy_checked:
                await self.reminder_policy.check(request, signatory)
                policy_checked = True

            signatory.reminders_sent += 1
            self._touch(request, now)
            document = await session.get(Document, request.document_id)
            await enqueue_notification(
                session,
                signing_request_id=request.id,
                recipient_email=signatory.email,
                recipient_name=signatory.name,
                event=reminder_event(signatory.reminders_sent),
                payload=self._signature_payload(request, signatory, document.name if document else ""),
                now=now,
            )
            return signatory

        signatory = await self._run_unit(session, "remind", unit)
        logger.info(
            "signatory.reminded",
            signing_request_id=signing_request_id,
            signatory_id=signatory.id,
            reminders_sent=signatory.reminders_sent,
        )
        await self._dispatch_notifications(session, signing_request_id)
        return signatory

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_request(self, session: AsyncSession, signing_request_id: str, *, actor: User) -> SigningRequest:
        """Visible to the initiator and to any signatory on the request."""
        request = await self._load_request(session, signing_request_id)
        if request.initiator_id == actor.id:
            return request
        actor_email = actor.email.lower()
        if any(s.user_id == actor.id or s.email == actor_email for s in request.signatories):
            return request
        raise ForbiddenError("not a party to this signing request")

    async def list_awaiting(self, session: AsyncSession, *, actor: User) -> list[Signatory]:
        """Signatory slots where the actor may sign right now."""
        now = self.clock()
        result = await session.execute(
            select(Signatory)
            .join(SigningRequest, Signatory.signing_request_id == SigningRequest.id)
            .where(
                or_(Signatory.user_id == actor.id, Signatory.email == actor.email.lower()),
                Signatory.status == SignatoryStatus.READY_TO_SIGN,
                SigningRequest.status.in_(ACTIVE_STATUSES),
            )
            .options(selectinload(Signatory.signing_request))
            .order_by(SigningRequest.created_at)
        )
        return [
            signatory
            for signatory in result.scalars().all()
            if effective_status(signatory.signing_request, now) in ACTIVE_STATUSES
        ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def expire_overdue_requests(self, session: AsyncSession) -> int:
        """Persist expiry for active requests past their deadline. Safe to run repeatedly."""
        now = self.clock()
        result = await session.execute(
            select(SigningRequest.id).where(
                SigningRequest.status.in_(ACTIVE_STATUSES),
                SigningRequest.expires_at.is_not(None),
                SigningRequest.expires_at <= now,
            )
        )
        expired = 0
        for signing_request_id in result.scalars().all():

            async def unit(request_id: str = signing_request_id) -> bool:
                request = await self._load_request(session, request_id, lock=True)
                if effective_status(request, now) is not SigningRequestStatus.EXPIRED:
                    return False
                return advance_status(request, SigningRequestStatus.EXPIRED, now=now).entered is not None

            try:
                if await self._run_unit(session, "expire", unit):
                    expired += 1
                    logger.info("signing.request.expired", signing_request_id=signing_request_id, lazily=False)
            except ConcurrencyError:
                logger.warning("signing.request.expire_skipped", signing_request_id=signing_request_id)
        return expired

    async def prune_processed_events(self, session: AsyncSession, *, retention_days: int) -> int:
        """Drop ledger rows past retention whose request can no longer change."""
        cutoff = self.clock() - timedelta(days=retention_days)
        settled = select(SigningRequest.id).where(SigningRequest.status.in_(TERMINAL_STATUSES))
        result = await session.execute(
            delete(ProcessedEvent).where(
                ProcessedEvent.applied_at < cutoff,
                or_(
                    ProcessedEvent.signing_request_id.is_(None),
                    ProcessedEvent.signing_request_id.in_(settled),
                ),
            )
        )
        await session.commit()
        pruned = result.rowcount or 0
        logger.info("ledger.pruned", rows=pruned, retention_days=retention_days)
        return pruned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_unit(self, session: AsyncSession, name: str, unit: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.transition_max_attempts + 1):
            try:
                value = await unit()
                await session.commit()
                return value
            except StaleDataError:
                await session.rollback()
                logger.info("signing.transition.retry", unit=name, attempt=attempt)
            except Exception:
                await session.rollback()
                raise
        raise ConcurrencyError(f"{name} could not be applied after {self.transition_max_attempts} attempts")

    async def _load_request(self, session: AsyncSession, signing_request_id: str, *, lock: bool = False) -> SigningRequest:
        query = select(SigningRequest).where(SigningRequest.id == signing_request_id)
        if lock:
            query = query.with_for_update()
        result = await session.execute(query.execution_options(populate_existing=True))
        request = result.scalars().first()
        if request is None:
            raise NotFoundError(f"signing request {signing_request_id} not found")
        return request

    async def _reload(self, session: AsyncSession, signing_request_id: str) -> SigningRequest:
        return await self._load_request(session, signing_request_id)

    @staticmethod
    def _touch(request: SigningRequest, now: datetime) -> None:
        """Mark the request row dirty so the version check runs even for child-only changes."""
        request.updated_at = now
        flag_modified(request, "updated_at")

    @staticmethod
    def _ensure_initiator(actor_id: str, request: SigningRequest) -> None:
        if request.initiator_id != actor_id:
            raise ForbiddenError("only the initiator may perform this action")

    def _signature_payload(self, request: SigningRequest, signatory: Signatory, document_name: str) -> dict:
        return {
            "signing_request_id": request.id,
            "document_name": document_name,
            "signing_url": signatory.signing_url,
            "message": request.message,
            "expires_at": request.expires_at.isoformat() if request.expires_at else None,
        }

    async def _enqueue_signature_request(
        self, session: AsyncSession, request: SigningRequest, signatory: Signatory, document_name: str, now: datetime
    ) -> None:
        await enqueue_notification(
            session,
            signing_request_id=request.id,
            recipient_email=signatory.email,
            recipient_name=signatory.name,
            event=SIGNATURE_REQUESTED,
            payload=self._signature_payload(request, signatory, document_name),
            now=now,
        )

    async def _dispatch_notifications(self, session: AsyncSession, signing_request_id: str) -> None:
        await dispatch_pending_notifications(
            session, self.notifier, signing_request_id=signing_request_id, now=self.clock()
        )
        await session.commit()
