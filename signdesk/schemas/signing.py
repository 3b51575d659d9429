from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

from signdesk.models.signing import (
    OrderingMode,
    RegistrationStatus,
    SignatoryStatus,
    SigningRequest,
    SigningRequestStatus,
)
from signdesk.schemas.common import ORMModel, Timestamped


class SignatoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr


class SigningRequestCreate(BaseModel):
    document_id: str
    signatories: List[SignatoryCreate]
    ordering_mode: OrderingMode = OrderingMode.SEQUENTIAL
    message: Optional[str] = Field(default=None, max_length=2000)
    expires_at: Optional[datetime] = None


class SignatoryRead(ORMModel):
    id: str
    position: int
    name: str
    email: str
    status: SignatoryStatus
    signed_at: Optional[datetime] = None
    signing_url: Optional[str] = None
    reminders_sent: int
    user_id: Optional[str] = None


class SigningRequestRead(Timestamped):
    id: str
    document_id: str
    initiator_id: str
    provider_document_id: Optional[str] = None
    status: SigningRequestStatus
    ordering_mode: OrderingMode
    message: Optional[str] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signed_artifact_path: Optional[str] = None
    registration_status: RegistrationStatus
    completion_pending: bool
    last_error: Optional[str] = None
    signatories: List[SignatoryRead] = Field(default_factory=list)

    @classmethod
    def from_request(cls, request: SigningRequest, status: SigningRequestStatus) -> "SigningRequestRead":
        """Serialize with the effective status, which may read expired before the sweep runs."""
        return cls.model_validate(request).model_copy(update={"status": status})


class RemindRequest(BaseModel):
    signatory_id: str


class ReminderRead(BaseModel):
    signing_request_id: str
    signatory_id: str
    reminders_sent: int


class AwaitingSignatureRead(BaseModel):
    signing_request_id: str
    signatory_id: str
    document_id: str
    position: int
    signing_url: Optional[str] = None
    message: Optional[str] = None
    expires_at: Optional[datetime] = None


class AwaitingSignatureCollection(BaseModel):
    items: List[AwaitingSignatureRead]
    total: int
