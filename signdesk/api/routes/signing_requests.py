from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.auth import get_current_user
from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.orchestrator import get_orchestrator
from signdesk.models.user import User
from signdesk.schemas.signing import (
    AwaitingSignatureCollection,
    AwaitingSignatureRead,
    ReminderRead,
    RemindRequest,
    SigningRequestCreate,
    SigningRequestRead,
)
from signdesk.services.signing_orchestrator import SignerInput, SigningOrchestrator


router = APIRouter(prefix="/signing-requests", tags=["signing-requests"])


@router.post("", response_model=SigningRequestRead, status_code=status.HTTP_201_CREATED)
async def create_signing_request_endpoint(
    payload: SigningRequestCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningRequestRead:
    request = await orchestrator.create_request(
        session,
        actor=current_user,
        document_id=payload.document_id,
        signers=[SignerInput(name=s.name, email=s.email) for s in payload.signatories],
        ordering_mode=payload.ordering_mode,
        message=payload.message,
        expires_at=payload.expires_at,
    )
    return SigningRequestRead.from_request(request, orchestrator.status_of(request))


@router.get("/awaiting-me", response_model=AwaitingSignatureCollection)
async def list_awaiting_endpoint(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> AwaitingSignatureCollection:
    signatories = await orchestrator.list_awaiting(session, actor=current_user)
    items = [
        AwaitingSignatureRead(
            signing_request_id=s.signing_request_id,
            signatory_id=s.id,
            document_id=s.signing_request.document_id,
            position=s.position,
            signing_url=s.signing_url,
            message=s.signing_request.message,
            expires_at=s.signing_request.expires_at,
        )
        for s in signatories
    ]
    return AwaitingSignatureCollection(items=items, total=len(items))


@router.get("/{request_id}", response_model=SigningRequestRead)
async def get_signing_request_endpoint(
    request_id: str,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningRequestRead:
    request = await orchestrator.get_request(session, request_id, actor=current_user)
    return SigningRequestRead.from_request(request, orchestrator.status_of(request))


@router.post("/{request_id}/cancel", response_model=SigningRequestRead)
async def cancel_signing_request_endpoint(
    request_id: str,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningRequestRead:
    request = await orchestrator.cancel(session, request_id, actor=current_user)
    return SigningRequestRead.from_request(request, orchestrator.status_of(request))


@router.post("/{request_id}/remind", response_model=ReminderRead, status_code=status.HTTP_202_ACCEPTED)
async def remind_signatory_endpoint(
    request_id: str,
    payload: RemindRequest,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> ReminderRead:
    signatory = await orchestrator.remind(session, request_id, payload.signatory_id, actor=current_user)
    return ReminderRead(
        signing_request_id=request_id,
        signatory_id=signatory.id,
        reminders_sent=signatory.reminders_sent,
    )


@router.post("/{request_id}/retry-registration", response_model=SigningRequestRead)
async def retry_registration_endpoint(
    request_id: str,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningRequestRead:
    request = await orchestrator.retry_registration(session, request_id, actor=current_user)
    return SigningRequestRead.from_request(request, orchestrator.status_of(request))
