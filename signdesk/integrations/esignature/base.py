"""
Signing Provider Base Classes and Interfaces

Defines the contract every signing provider adapter implements. The engine
treats the provider as authoritative only for artifact bytes and signer URLs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SigningProviderType(str, Enum):
    """Supported signing provider types."""
    DOCUSEAL = "docuseal"


@dataclass
class SignerSlotRequest:
    """Signer to register with the provider."""
    name: str
    email: str
    order: int


@dataclass
class SignerSlot:
    """Provider-side signer registration result."""
    provider_signer_id: str
    email: str
    order: int
    signing_url: Optional[str] = None
    signing_token: Optional[str] = None
    status: Optional[str] = None


@dataclass
class ProviderDocumentStatus:
    """Provider view of a document and its signer slots."""
    provider_document_id: str
    status: str
    signers: List[SignerSlot] = field(default_factory=list)
    download_url: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


class SigningProvider(ABC):
    """Abstract base class for signing providers."""

    def __init__(self, **config):
        """Initialize the signing provider with configuration."""
        self.config = config
        self.provider_type = self._get_provider_type()

    @abstractmethod
    def _get_provider_type(self) -> SigningProviderType:
        """Return the provider type identifier."""

    @abstractmethod
    async def upload_document(self, content: bytes, filename: str) -> str:
        """
        Upload a document for signing.

        Args:
            content: Raw document bytes
            filename: File name presented to signers

        Returns:
            Provider document id

        Raises:
            ProviderError: If the upload fails
        """

    @abstractmethod
    async def create_signer_slots(
        self,
        provider_document_id: str,
        signers: List[SignerSlotRequest],
        expires_at: Optional[datetime] = None,
    ) -> List[SignerSlot]:
        """
        Register signers against an uploaded document.

        Args:
            provider_document_id: Document id returned by upload_document
            signers: Signers in signing order
            expires_at: Optional expiration instant

        Returns:
            One SignerSlot per requested signer

        Raises:
            ProviderError: If registration fails
        """

    @abstractmethod
    async def fetch_status(self, provider_document_id: str) -> ProviderDocumentStatus:
        """
        Fetch the provider-side status of a document.

        Raises:
            ProviderError: If the status query fails
        """

    @abstractmethod
    async def fetch_signed_artifact(self, provider_document_id: str) -> bytes:
        """
        Download the final signed artifact.

        Raises:
            ProviderError: If the download fails
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the provider is responding."""

    async def close(self) -> None:
        """Release any held connections."""


class SigningProviderFactory:
    """Factory for creating signing provider instances."""

    _providers: Dict[SigningProviderType, type] = {}

    @classmethod
    def register_provider(
        cls,
        provider_type: SigningProviderType,
        provider_class: type[SigningProvider]
    ):
        """Register a signing provider implementation."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create_provider(
        cls,
        provider_type: SigningProviderType | str,
        **config
    ) -> SigningProvider:
        """Create a signing provider instance."""
        try:
            provider_type = SigningProviderType(provider_type)
        except ValueError:
            raise ValueError(f"Unsupported provider type: {provider_type}") from None
        if provider_type not in cls._providers:
            raise ValueError(f"Unsupported provider type: {provider_type}")

        provider_class = cls._providers[provider_type]
        return provider_class(**config)

    @classmethod
    def get_supported_providers(cls) -> List[SigningProviderType]:
        """Get list of registered provider types."""
        return list(cls._providers.keys())
