from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.core.clock import utcnow
from signdesk.core.errors import NotificationDeliveryError
from signdesk.core.logging import get_logger
from signdesk.integrations.notifications import NotificationMessage, NotificationSender
from signdesk.models.event import NotificationDispatch, NotificationStatus

logger = get_logger(__name__)

SIGNATURE_REQUESTED = "signature.requested"
SIGNING_COMPLETED = "signing.completed"
RETRY_BACKOFF_SECONDS = 30
CLAIM_TIMEOUT_SECONDS = 300


def reminder_event(sequence: int) -> str:
    return f"signature.reminder.{sequence}"


async def enqueue_notification(
    session: AsyncSession,
    *,
    signing_request_id: str,
    recipient_email: str,
    event: str,
    recipient_name: str | None = None,
    payload: dict | None = None,
    now: datetime | None = None,
) -> NotificationDispatch:
    """Record a notification intent once per (request, recipient, event)."""
    result = await session.execute(
        select(NotificationDispatch).where(
            NotificationDispatch.signing_request_id == signing_request_id,
            NotificationDispatch.recipient_email == recipient_email,
            NotificationDispatch.event == event,
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        logger.debug("notification.outbox.exists", notification_event=event, recipient=recipient_email)
        return existing

    now = now or utcnow()
    dispatch = NotificationDispatch(
        signing_request_id=signing_request_id,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        event=event,
        payload=payload or {},
        status=NotificationStatus.PENDING,
        attempts=0,
        next_run_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(dispatch)
    await session.flush()
    logger.info("notification.outbox.enqueued", notification_event=event, signing_request_id=signing_request_id)
    return dispatch


async def _claim(session: AsyncSession, dispatch: NotificationDispatch, now: datetime) -> bool:
    """Take ``dispatch`` for this worker. False when another worker claimed it first."""
    result = await session.execute(
        update(NotificationDispatch)
        .where(
            NotificationDispatch.id == dispatch.id,
            NotificationDispatch.status == dispatch.status,
            NotificationDispatch.attempts == dispatch.attempts,
        )
        .values(
            status=NotificationStatus.SENDING,
            attempts=NotificationDispatch.attempts + 1,
            next_run_at=now + timedelta(seconds=CLAIM_TIMEOUT_SECONDS),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        return False
    await session.refresh(dispatch)
    return True


async def dispatch_pending_notifications(
    session: AsyncSession,
    sender: NotificationSender,
    *,
    signing_request_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """
    Hand pending notifications to ``sender``.

    Each row is claimed and committed before it is sent, so concurrent
    dispatchers never send the same row twice. Failed rows are retried once
    their back-off has elapsed; claims abandoned mid-send are retried after
    ``CLAIM_TIMEOUT_SECONDS``. Delivery failures are recorded on the row and
    never propagate.
    """
    now = now or utcnow()
    query = select(NotificationDispatch).where(
        or_(
            NotificationDispatch.status == NotificationStatus.PENDING,
            and_(
                NotificationDispatch.status.in_((NotificationStatus.FAILED, NotificationStatus.SENDING)),
                NotificationDispatch.next_run_at <= now,
            ),
        )
    )
    if signing_request_id is not None:
        query = query.where(NotificationDispatch.signing_request_id == signing_request_id)
    result = await session.execute(
        query.order_by(NotificationDispatch.created_at).execution_options(populate_existing=True)
    )
    dispatches = result.scalars().all()

    dispatched = 0
    for dispatch in dispatches:
        if not await _claim(session, dispatch, now):
            logger.debug("notification.outbox.claimed_elsewhere", dispatch_id=dispatch.id)
            continue
        message = NotificationMessage(
            recipient_email=dispatch.recipient_email,
            recipient_name=dispatch.recipient_name,
            template=dispatch.event,
            context=dict(dispatch.payload or {}),
        )
        try:
            await sender.send(message)
        except NotificationDeliveryError as exc:
            dispatch.status = NotificationStatus.FAILED
            dispatch.last_error = exc.message
            dispatch.next_run_at = now + timedelta(seconds=RETRY_BACKOFF_SECONDS * dispatch.attempts)
            await session.commit()
            logger.warning("notification.outbox.failed", dispatch_id=dispatch.id, error=exc.message)
            continue
        dispatch.status = NotificationStatus.DISPATCHED
        dispatch.dispatched_at = now
        dispatch.last_error = None
        await session.commit()
        dispatched += 1
        logger.info("notification.outbox.dispatched", notification_event=dispatch.event, recipient=dispatch.recipient_email)

    return dispatched
