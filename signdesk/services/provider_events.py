"""
Typed provider events.

Webhook payloads are decoded once into one of the variants below and the
orchestrator dispatches on the variant type.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from signdesk.core.clock import as_utc
from signdesk.core.errors import ValidationError
from signdesk.core.logging import get_logger
from signdesk.schemas.webhook import ProviderWebhookPayload

logger = get_logger(__name__)

SIGNER_SIGNED = "signature.completed"
NEXT_SIGNER_READY = "signature.next_signer_ready"
DOCUMENT_COMPLETED = "document.completed"


@dataclass(frozen=True, slots=True)
class SignerSigned:
    kind: ClassVar[str] = SIGNER_SIGNED

    event_key: str
    provider_document_id: str
    provider_signer_id: str
    occurred_at: datetime
    signed_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class NextSignerReady:
    kind: ClassVar[str] = NEXT_SIGNER_READY

    event_key: str
    provider_document_id: str
    provider_signer_id: str
    occurred_at: datetime
    signing_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DocumentCompleted:
    kind: ClassVar[str] = DOCUMENT_COMPLETED

    event_key: str
    provider_document_id: str
    occurred_at: datetime


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    """Recognised envelope with an unrecognised or incomplete body. Recorded and ignored."""

    event_key: str
    kind: str
    occurred_at: datetime
    provider_document_id: Optional[str] = None


ProviderEvent = Union[SignerSigned, NextSignerReady, DocumentCompleted, UnknownEvent]


def ledger_key(payload: ProviderWebhookPayload) -> str:
    """
    Idempotency key for a payload.

    The provider event id when present, otherwise a digest of the document
    reference, signer reference, kind and timestamp truncated to the second.
    """
    if payload.id and payload.id.strip():
        return payload.id.strip()[:128]
    occurred = as_utc(payload.timestamp).replace(microsecond=0).isoformat()
    material = "|".join(
        (
            payload.data.document_id or "",
            payload.data.signature_request_id or "",
            payload.event,
            occurred,
        )
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def decode_event(raw: bytes) -> ProviderEvent:
    """
    Decode a raw webhook body into a provider event.

    Raises:
        ValidationError: If the body is not a well-formed event envelope
    """
    try:
        payload = ProviderWebhookPayload.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"malformed webhook payload: {exc.error_count()} error(s)") from exc

    key = ledger_key(payload)
    occurred_at = as_utc(payload.timestamp)
    data = payload.data

    if payload.event == SIGNER_SIGNED and data.document_id and data.signature_request_id:
        return SignerSigned(
            event_key=key,
            provider_document_id=data.document_id,
            provider_signer_id=data.signature_request_id,
            occurred_at=occurred_at,
            signed_at=as_utc(data.signed_at),
        )
    if payload.event == NEXT_SIGNER_READY and data.document_id and data.signature_request_id:
        return NextSignerReady(
            event_key=key,
            provider_document_id=data.document_id,
            provider_signer_id=data.signature_request_id,
            occurred_at=occurred_at,
            signing_url=data.signing_url,
        )
    if payload.event == DOCUMENT_COMPLETED and data.document_id:
        return DocumentCompleted(event_key=key, provider_document_id=data.document_id, occurred_at=occurred_at)

    if payload.event in (SIGNER_SIGNED, NEXT_SIGNER_READY, DOCUMENT_COMPLETED):
        logger.warning("webhook.event.incomplete", kind=payload.event, event_key=key)
    return UnknownEvent(event_key=key, kind=payload.event, occurred_at=occurred_at, provider_document_id=data.document_id)
