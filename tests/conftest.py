"""
Shared test configuration and fixtures for the Sign Desk test suite.

Tests run against a file-backed SQLite database so that separate sessions see
each other's commits. The signing provider and notification channel are
in-memory fakes.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signdesk.core.errors import NotificationDeliveryError, ProviderError
from signdesk.core.logging import configure_logging
from signdesk.db.base import Base
from signdesk.integrations.esignature.base import (
    ProviderDocumentStatus,
    SignerSlot,
    SigningProvider,
    SigningProviderType,
)
from signdesk.integrations.notifications import NotificationMessage, NotificationSender
from signdesk.integrations.storage import LocalDocumentStore
from signdesk.models import Document, DocumentStatus, User
from signdesk.services.signing_orchestrator import SignerInput, SigningOrchestrator
from signdesk.services.provider_events import SignerSigned


class FakeSigningProvider(SigningProvider):
    """In-memory provider that records calls and can be told to fail."""

    def __init__(self):
        super().__init__()
        self.uploads: List[str] = []
        self.slot_calls: List[tuple] = []
        self.artifact_calls = 0
        self.registration_error: Optional[ProviderError] = None
        self.artifact_error: Optional[ProviderError] = None
        self.slot_limit: Optional[int] = None
        self.artifact = b"%PDF-1.7 signed"

    def _get_provider_type(self) -> SigningProviderType:
        return SigningProviderType.DOCUSEAL

    async def upload_document(self, content: bytes, filename: str) -> str:
        self.uploads.append(filename)
        return f"pdoc-{len(self.uploads)}"

    async def create_signer_slots(self, provider_document_id, signers, expires_at=None):
        self.slot_calls.append((provider_document_id, list(signers), expires_at))
        if self.registration_error is not None:
            raise self.registration_error
        slots = [
            SignerSlot(
                provider_signer_id=f"{provider_document_id}-s{index}",
                email=signer.email,
                order=signer.order,
                signing_url=f"https://sign.example.com/{provider_document_id}/{index}",
                signing_token=f"token-{index}",
                status="pending",
            )
            for index, signer in enumerate(signers, start=1)
        ]
        return slots if self.slot_limit is None else slots[: self.slot_limit]

    async def fetch_status(self, provider_document_id: str) -> ProviderDocumentStatus:
        return ProviderDocumentStatus(provider_document_id=provider_document_id, status="pending")

    async def fetch_signed_artifact(self, provider_document_id: str) -> bytes:
        self.artifact_calls += 1
        if self.artifact_error is not None:
            raise self.artifact_error
        return self.artifact

    async def health_check(self) -> bool:
        return True


class RecordingNotifier(NotificationSender):
    def __init__(self):
        self.messages: List[NotificationMessage] = []
        self.fail = False

    async def send(self, message: NotificationMessage) -> None:
        if self.fail:
            raise NotificationDeliveryError("channel unavailable")
        self.messages.append(message)

    def templates_for(self, email: str) -> List[str]:
        return [m.template for m in self.messages if m.recipient_email == email]


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True, scope="session")
def structured_logging():
    configure_logging()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'signdesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider() -> FakeSigningProvider:
    return FakeSigningProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def document_store(tmp_path) -> LocalDocumentStore:
    root = tmp_path / "storage"
    (root / "contracts").mkdir(parents=True)
    (root / "contracts" / "msa.pdf").write_bytes(b"%PDF-1.7 unsigned")
    return LocalDocumentStore(root)


@pytest.fixture
def orchestrator(provider, document_store, notifier, clock) -> SigningOrchestrator:
    return SigningOrchestrator(
        provider,
        document_store,
        notifier,
        max_signatories=10,
        transition_max_attempts=3,
        clock=clock,
    )


@pytest_asyncio.fixture
async def seeded(session, clock) -> SimpleNamespace:
    """An owner, two registered signers and one draft document."""
    owner = User(email="owner@example.com", full_name="Olive Owner", is_active=True)
    bob = User(email="bob@example.com", full_name="Bob Signer", is_active=True)
    carol = User(email="carol@example.com", full_name="Carol Signer", is_active=True)
    outsider = User(email="outsider@example.com", full_name="Oscar Outsider", is_active=True)
    session.add_all([owner, bob, carol, outsider])
    await session.flush()

    document = Document(
        owner_id=owner.id,
        name="Master Services Agreement",
        storage_path="contracts/msa.pdf",
        status=DocumentStatus.DRAFT,
    )
    session.add(document)
    await session.commit()
    return SimpleNamespace(owner=owner, bob=bob, carol=carol, outsider=outsider, document=document)


@pytest.fixture
def three_signers() -> List[SignerInput]:
    return [
        SignerInput(name="Bob Signer", email="bob@example.com"),
        SignerInput(name="Carol Signer", email="carol@example.com"),
        SignerInput(name="Dave Guest", email="dave@example.com"),
    ]


def signer_signed(request, position: int, key: str, clock: FrozenClock) -> SignerSigned:
    """Build the provider's signature event for the signatory at ``position``."""
    signatory = next(s for s in request.signatories if s.position == position)
    return SignerSigned(
        event_key=key,
        provider_document_id=request.provider_document_id,
        provider_signer_id=signatory.provider_signer_id,
        occurred_at=clock(),
    )
