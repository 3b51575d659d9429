"""
Signing provider integration modules

Provides adapters for external signing hosts behind one contract.
"""

from .base import (
    ProviderDocumentStatus,
    SignerSlot,
    SignerSlotRequest,
    SigningProvider,
    SigningProviderFactory,
    SigningProviderType,
)
from .docuseal_adapter import DocuSealAdapter

__all__ = [
    "DocuSealAdapter",
    "ProviderDocumentStatus",
    "SignerSlot",
    "SignerSlotRequest",
    "SigningProvider",
    "SigningProviderFactory",
    "SigningProviderType",
]
