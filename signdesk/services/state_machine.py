from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from signdesk.core.clock import as_utc
from signdesk.models.signing import (
    ACTIVE_STATUSES,
    OrderingMode,
    Signatory,
    SignatoryStatus,
    SigningRequest,
    SigningRequestStatus,
)


ALLOWED_TRANSITIONS: dict[SigningRequestStatus, tuple[SigningRequestStatus, ...]] = {
    SigningRequestStatus.PENDING: (
        SigningRequestStatus.IN_PROGRESS,
        SigningRequestStatus.COMPLETED,
        SigningRequestStatus.CANCELLED,
        SigningRequestStatus.EXPIRED,
    ),
    SigningRequestStatus.IN_PROGRESS: (
        SigningRequestStatus.COMPLETED,
        SigningRequestStatus.CANCELLED,
        SigningRequestStatus.EXPIRED,
    ),
    SigningRequestStatus.COMPLETED: (),
    SigningRequestStatus.EXPIRED: (),
    SigningRequestStatus.CANCELLED: (),
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None
    entered: SigningRequestStatus | None = None


def _can_transition(current: SigningRequestStatus, target: SigningRequestStatus) -> bool:
    allowed: Iterable[SigningRequestStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def advance_status(request: SigningRequest, target: SigningRequestStatus, *, now: datetime) -> TransitionResult:
    """Move ``request`` to ``target``. ``entered`` is only set when the status actually changed."""
    if request.status == target:
        return TransitionResult(succeeded=True)

    if not _can_transition(request.status, target):
        return TransitionResult(False, f"status transition {request.status.value} → {target.value} not permitted")

    if target == SigningRequestStatus.COMPLETED and request.completed_at is None:
        request.completed_at = now
        request.completion_pending = True

    request.status = target
    request.updated_at = now
    return TransitionResult(succeeded=True, entered=target)


def effective_status(request: SigningRequest, now: datetime) -> SigningRequestStatus:
    """Active requests past their expiry read as expired even before the sweep persists it."""
    expires_at = as_utc(request.expires_at)
    if request.status in ACTIVE_STATUSES and expires_at is not None and expires_at <= now:
        return SigningRequestStatus.EXPIRED
    return request.status


def initial_signatory_status(ordering_mode: OrderingMode, position: int) -> SignatoryStatus:
    if ordering_mode is OrderingMode.PARALLEL or position == 1:
        return SignatoryStatus.READY_TO_SIGN
    return SignatoryStatus.WAITING


def sync_readiness(ordering_mode: OrderingMode, signatories: Sequence[Signatory]) -> list[Signatory]:
    """
    Recompute readiness from persisted position order.

    Sequential requests have exactly the lowest-position unsigned signatory
    ready; parallel requests have every unsigned signatory ready. Returns the
    signatories that became ready in this call.
    """
    unsigned = [s for s in sorted(signatories, key=lambda s: s.position) if s.status is not SignatoryStatus.SIGNED]
    ready = unsigned if ordering_mode is OrderingMode.PARALLEL else unsigned[:1]
    ready_ids = {s.id for s in ready}

    newly_ready: list[Signatory] = []
    for signatory in unsigned:
        if signatory.id in ready_ids:
            if signatory.status is not SignatoryStatus.READY_TO_SIGN:
                signatory.status = SignatoryStatus.READY_TO_SIGN
                newly_ready.append(signatory)
        elif signatory.status is SignatoryStatus.READY_TO_SIGN:
            signatory.status = SignatoryStatus.WAITING
    return newly_ready


def all_signed(signatories: Sequence[Signatory]) -> bool:
    return bool(signatories) and all(s.status is SignatoryStatus.SIGNED for s in signatories)
