from signdesk.models.document import Document, DocumentStatus
from signdesk.models.event import NotificationDispatch, NotificationStatus, ProcessedEvent
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

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Document",
    "DocumentStatus",
    "NotificationDispatch",
    "NotificationStatus",
    "OrderingMode",
    "ProcessedEvent",
    "RegistrationStatus",
    "Signatory",
    "SignatoryStatus",
    "SigningRequest",
    "SigningRequestStatus",
    "User",
]
