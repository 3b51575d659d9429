import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from signdesk.core.logging import get_logger
from signdesk.models.document import Document

logger = get_logger(__name__)


class DocumentStore(ABC):
    @abstractmethod
    async def load_document(self, document: Document) -> bytes:
        """Return the bytes of the document to be signed."""

    @abstractmethod
    async def save_signed_artifact(self, signing_request_id: str, document: Document, content: bytes) -> str:
        """Persist the signed artifact and return its storage path."""


class LocalDocumentStore(DocumentStore):
    """Filesystem-backed store rooted at a single directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"storage path escapes root: {relative}")
        return path

    async def load_document(self, document: Document) -> bytes:
        path = self._resolve(document.storage_path)
        return await asyncio.to_thread(path.read_bytes)

    async def save_signed_artifact(self, signing_request_id: str, document: Document, content: bytes) -> str:
        relative = f"signed/{document.id}/{signing_request_id}.pdf"
        path = self._resolve(relative)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        await asyncio.to_thread(_write)
        logger.info("storage.artifact.saved", signing_request_id=signing_request_id, path=relative)
        return relative
