from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.api.dependencies.database import get_db
from signdesk.api.dependencies.orchestrator import get_webhook_ingestor
from signdesk.core.errors import ValidationError
from signdesk.schemas.webhook import WebhookAck
from signdesk.services.webhook_ingestor import WebhookIngestor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-DocuSeal-Signature"


@router.post("/signing-provider", response_model=WebhookAck)
async def signing_provider_webhook_endpoint(
    request: Request,
    session: AsyncSession = Depends(get_db),
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookAck:
    payload = await request.body()
    try:
        outcome = await ingestor.ingest(session, payload, request.headers.get(SIGNATURE_HEADER))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    return WebhookAck(outcome=outcome)
