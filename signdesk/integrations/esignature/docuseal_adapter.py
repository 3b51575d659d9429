"""
DocuSeal Signing Adapter

Provides integration with a DocuSeal signing host: document upload,
batch signer registration, status lookups and signed artifact download.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from aiohttp import ClientTimeout

from signdesk.core.errors import ProviderError

from .base import (
    ProviderDocumentStatus,
    SignerSlot,
    SignerSlotRequest,
    SigningProvider,
    SigningProviderFactory,
    SigningProviderType,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0


class DocuSealAdapter(SigningProvider):
    """DocuSeal signing adapter."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        **config
    ):
        """
        Initialize DocuSeal adapter.

        Args:
            base_url: DocuSeal API base URL
            api_key: API key sent as X-API-Key
            timeout_seconds: Total request timeout
            max_retries: Retries for 5xx responses and network errors
            retry_delay_seconds: Linear back-off unit between retries
            **config: Additional configuration
        """
        if not api_key:
            raise ValueError("DocuSeal API key is required")
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            **config
        )
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

        # Session will be created lazily to avoid event loop issues during initialization
        self._session = None
        self._timeout = ClientTimeout(total=timeout_seconds)

    def _get_provider_type(self) -> SigningProviderType:
        """Return the provider type identifier."""
        return SigningProviderType.DOCUSEAL

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "X-API-Key": self.api_key,
                    "Accept": "application/json",
                }
            )
        return self._session

    async def upload_document(self, content: bytes, filename: str) -> str:
        """Upload a PDF document and return the DocuSeal document id."""

        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field("file", content, filename=filename, content_type="application/pdf")
            return form

        response_data = await self._request(
            "POST", "/documents", operation="upload_document", form_factory=build_form, retry=False
        )
        document_id = response_data.get("id")
        if not document_id:
            raise ProviderError(
                "No document id returned from upload",
                error_code="no_document_id",
                provider="docuseal",
                provider_response=response_data,
            )
        return str(document_id)

    async def create_signer_slots(
        self,
        provider_document_id: str,
        signers: List[SignerSlotRequest],
        expires_at: Optional[datetime] = None,
    ) -> List[SignerSlot]:
        """
        Create batch signature requests (multi-signer with order).

        Raises:
            ProviderError: If the provider rejects the batch or returns fewer
                slots than requested
        """
        payload: Dict[str, Any] = {
            "documentId": provider_document_id,
            "signers": [
                {
                    "signerName": signer.name,
                    "signerEmail": signer.email,
                    "signingOrder": signer.order,
                }
                for signer in signers
            ],
        }
        if expires_at is not None:
            payload["expiresAt"] = expires_at.isoformat()

        response_data = await self._request(
            "POST", "/signature-requests/batch", operation="create_signer_slots", json_body=payload
        )
        slots = [self._parse_signer_slot(item) for item in response_data.get("signatureRequests", [])]
        if len(slots) != len(signers):
            raise ProviderError(
                f"Provider registered {len(slots)} of {len(signers)} signers",
                error_code="incomplete_registration",
                provider="docuseal",
                provider_response=response_data,
            )
        return slots

    async def fetch_status(self, provider_document_id: str) -> ProviderDocumentStatus:
        """Get document details with its signature requests."""
        response_data = await self._request(
            "GET", f"/documents/{provider_document_id}", operation="fetch_status"
        )
        return ProviderDocumentStatus(
            provider_document_id=str(response_data.get("id", provider_document_id)),
            status=response_data.get("status", "unknown"),
            signers=[self._parse_signer_slot(item) for item in response_data.get("signatureRequests", [])],
            download_url=(
                response_data.get("downloadUrl")
                or response_data.get("download_url")
                or response_data.get("resultUrl")
                or response_data.get("result_url")
            ),
            provider_response=response_data,
        )

    async def fetch_signed_artifact(self, provider_document_id: str) -> bytes:
        """Download the signed document as bytes."""
        return await self._request(
            "GET",
            f"/documents/{provider_document_id}/download",
            operation="fetch_signed_artifact",
            raw=True,
        )

    async def health_check(self) -> bool:
        """Check if DocuSeal is responding."""
        try:
            response_data = await self._request("GET", "/health", operation="health_check", retry=False)
        except ProviderError as e:
            logger.warning(f"DocuSeal health check failed: {e}")
            return False
        return response_data.get("status") in ("ok", "healthy")

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        operation: str,
        json_body: Optional[Dict[str, Any]] = None,
        form_factory: Optional[Callable[[], aiohttp.FormData]] = None,
        raw: bool = False,
        retry: bool = True,
    ) -> Any:
        """Make an API request, retrying 5xx responses and network errors."""
        url = f"{self.base_url}{endpoint}"
        max_retries = self.max_retries if retry else 0
        attempt = 0

        while True:
            try:
                data = form_factory() if form_factory else None
                async with self.session.request(method, url, json=json_body, data=data) as response:
                    if response.status >= 500 and attempt < max_retries:
                        logger.warning(
                            f"DocuSeal {operation} returned {response.status}, retrying ({attempt + 1}/{max_retries})"
                        )
                    else:
                        await self._handle_api_error(response, operation)
                        if raw:
                            return await response.read()
                        text = await response.text()
                        return json.loads(text) if text else {}
            except asyncio.TimeoutError:
                logger.error(f"DocuSeal request timeout in {operation}")
                raise ProviderError(
                    f"Request timeout in {operation}",
                    error_code="timeout",
                    status_code=408,
                    provider="docuseal",
                )
            except aiohttp.ClientError as e:
                if attempt >= max_retries:
                    logger.error(f"DocuSeal network error in {operation}: {e}")
                    raise ProviderError(
                        f"Network error: {str(e)}",
                        error_code="network_error",
                        status_code=0,
                        provider="docuseal",
                    ) from e
                logger.warning(f"DocuSeal network error in {operation}, retrying: {e}")
            except json.JSONDecodeError as e:
                raise ProviderError(
                    f"Invalid JSON from DocuSeal in {operation}",
                    error_code="invalid_response",
                    provider="docuseal",
                ) from e

            attempt += 1
            await asyncio.sleep(self.retry_delay_seconds * attempt)

    def _parse_signer_slot(self, data: Dict[str, Any]) -> SignerSlot:
        """Map a DocuSeal signature request to a SignerSlot."""
        try:
            return SignerSlot(
                provider_signer_id=str(data["id"]),
                email=data.get("signerEmail", ""),
                order=int(data.get("signingOrder", 1)),
                signing_url=data.get("signingUrl"),
                signing_token=data.get("signingToken"),
                status=data.get("status"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Malformed signature request from DocuSeal: {e}",
                error_code="invalid_response",
                provider="docuseal",
                provider_response=data if isinstance(data, dict) else None,
            ) from e

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str):
        """Handle DocuSeal API response with proper error handling."""
        if response.status in [200, 201, 204]:
            return

        error_message = f"DocuSeal API error in {operation}"
        error_code = "api_error"
        error_data: Optional[Dict[str, Any]] = None

        body = await response.text()
        try:
            error_data = json.loads(body) if body else None
        except json.JSONDecodeError:
            error_message = body or error_message
        if isinstance(error_data, dict):
            error_message = error_data.get("message", error_message)
            error_code = error_data.get("code", error_code)

        if response.status == 401:
            raise ProviderError("Authentication failed - check API key", "AUTH_ERROR", 401, "docuseal", error_data)
        elif response.status == 404:
            raise ProviderError("Resource not found", "NOT_FOUND", 404, "docuseal", error_data)
        elif response.status == 429:
            retry_after = response.headers.get('Retry-After', '60')
            raise ProviderError(f"Rate limit exceeded, retry after {retry_after}s", "RATE_LIMIT", 429, "docuseal")
        elif response.status >= 500:
            raise ProviderError("DocuSeal server error", "SERVER_ERROR", response.status, "docuseal", error_data)
        else:
            raise ProviderError(error_message, error_code, response.status, "docuseal", error_data)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


SigningProviderFactory.register_provider(SigningProviderType.DOCUSEAL, DocuSealAdapter)
