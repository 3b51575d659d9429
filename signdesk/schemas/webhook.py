from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EventOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class ProviderEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    document_id: Optional[str] = Field(default=None, alias="documentId")
    signature_request_id: Optional[str] = Field(default=None, alias="signatureRequestId")
    signer_email: Optional[str] = Field(default=None, alias="signerEmail")
    signing_url: Optional[str] = Field(default=None, alias="signingUrl")
    signed_at: Optional[datetime] = Field(default=None, alias="signedAt")


class ProviderWebhookPayload(BaseModel):
    """Envelope posted by the signing provider for every event."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = None
    event: str = Field(min_length=1, max_length=80)
    timestamp: datetime
    data: ProviderEventData = Field(default_factory=ProviderEventData)


class WebhookAck(BaseModel):
    outcome: EventOutcome
