from __future__ import annotations

import hashlib
import hmac

from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.core.errors import AuthenticationError
from signdesk.core.logging import get_logger
from signdesk.schemas.webhook import EventOutcome
from signdesk.services.provider_events import decode_event
from signdesk.services.signing_orchestrator import SigningOrchestrator

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> None:
    """
    Check the provider's HMAC-SHA256 signature over the raw body.

    Raises:
        AuthenticationError: If no secret is configured or the signature is missing or wrong
    """
    if not secret:
        raise AuthenticationError("webhook secret is not configured")
    normalized = (signature or "").strip().lower()
    if not normalized.startswith(SIGNATURE_PREFIX):
        raise AuthenticationError("missing or malformed webhook signature")
    if not hmac.compare_digest(compute_signature(payload, secret), normalized):
        raise AuthenticationError("webhook signature mismatch")


class WebhookIngestor:
    def __init__(self, orchestrator: SigningOrchestrator, secret: str | None):
        self.orchestrator = orchestrator
        self.secret = secret

    async def ingest(self, session: AsyncSession, payload: bytes, signature: str | None) -> EventOutcome:
        """Authenticate, decode and apply one webhook delivery."""
        try:
            verify_signature(payload, signature, self.secret)
        except AuthenticationError as exc:
            logger.warning("security.webhook.rejected", reason=exc.message, payload_bytes=len(payload))
            raise

        event = decode_event(payload)
        logger.info("webhook.received", kind=event.kind, event_key=event.event_key)
        return await self.orchestrator.apply_provider_event(session, event)
