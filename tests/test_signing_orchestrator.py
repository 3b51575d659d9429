"""
Signing orchestrator tests: creation, provider events, initiator actions and
maintenance sweeps.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from signdesk.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ProviderRegistrationError,
    RateLimitError,
    ValidationError,
)
from signdesk.models import (
    Document,
    DocumentStatus,
    NotificationDispatch,
    OrderingMode,
    ProcessedEvent,
    RegistrationStatus,
    SignatoryStatus,
    SigningRequest,
    SigningRequestStatus,
)
from signdesk.schemas.webhook import EventOutcome
from signdesk.services.provider_events import DocumentCompleted, NextSignerReady, UnknownEvent
from signdesk.services.reminder_policy import ReminderPolicy
from signdesk.services.signing_orchestrator import SignerInput
from tests.conftest import signer_signed


async def _create(orchestrator, session, seeded, signers, **kwargs):
    return await orchestrator.create_request(
        session, actor=seeded.owner, document_id=seeded.document.id, signers=signers, **kwargs
    )


async def _count(session, model, *criteria) -> int:
    result = await session.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


def _statuses(request):
    return [s.status for s in request.signatories]


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_sequential_request_readies_only_first_signer(
        self, orchestrator, session, seeded, three_signers, provider, notifier
    ):
        request = await _create(orchestrator, session, seeded, three_signers)

        assert request.status is SigningRequestStatus.PENDING
        assert request.registration_status is RegistrationStatus.REGISTERED
        assert request.provider_document_id == "pdoc-1"
        assert _statuses(request) == [
            SignatoryStatus.READY_TO_SIGN,
            SignatoryStatus.WAITING,
            SignatoryStatus.WAITING,
        ]
        assert [s.position for s in request.signatories] == [1, 2, 3]
        assert all(s.provider_signer_id for s in request.signatories)

        _, slot_requests, _ = provider.slot_calls[0]
        assert [slot.order for slot in slot_requests] == [1, 2, 3]
        assert notifier.templates_for("bob@example.com") == ["signature.requested"]
        assert notifier.templates_for("carol@example.com") == []

    @pytest.mark.asyncio
    async def test_signatories_are_linked_to_existing_accounts(self, orchestrator, session, seeded, three_signers):
        request = await _create(orchestrator, session, seeded, three_signers)

        linked = {s.email: s.user_id for s in request.signatories}
        assert linked["bob@example.com"] == seeded.bob.id
        assert linked["carol@example.com"] == seeded.carol.id
        assert linked["dave@example.com"] is None

    @pytest.mark.asyncio
    async def test_parallel_request_readies_everyone(
        self, orchestrator, session, seeded, three_signers, provider, notifier
    ):
        request = await _create(orchestrator, session, seeded, three_signers, ordering_mode=OrderingMode.PARALLEL)

        assert _statuses(request) == [SignatoryStatus.READY_TO_SIGN] * 3
        _, slot_requests, _ = provider.slot_calls[0]
        assert [slot.order for slot in slot_requests] == [1, 1, 1]
        assert len(notifier.messages) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "signers",
        [
            [],
            [SignerInput("Bob", "bob@example.com"), SignerInput("Bobby", "BOB@example.com")],
            [SignerInput("Bob", "not-an-email")],
            [SignerInput("   ", "bob@example.com")],
            [SignerInput(f"Signer {i}", f"signer{i}@example.com") for i in range(11)],
        ],
        ids=["empty", "duplicate-email", "invalid-email", "blank-name", "too-many"],
    )
    async def test_invalid_signer_lists_are_rejected_before_persisting(
        self, orchestrator, session, seeded, provider, signers
    ):
        with pytest.raises(ValidationError):
            await _create(orchestrator, session, seeded, signers)

        assert await _count(session, SigningRequest) == 0
        assert provider.uploads == []

    @pytest.mark.asyncio
    async def test_expiry_in_the_past_is_rejected(self, orchestrator, session, seeded, three_signers, clock):
        with pytest.raises(ValidationError):
            await _create(orchestrator, session, seeded, three_signers, expires_at=clock() - timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_only_document_owner_may_request_signatures(self, orchestrator, session, seeded, three_signers):
        with pytest.raises(ForbiddenError):
            await orchestrator.create_request(
                session, actor=seeded.outsider, document_id=seeded.document.id, signers=three_signers
            )
        with pytest.raises(NotFoundError):
            await orchestrator.create_request(
                session, actor=seeded.owner, document_id="missing", signers=three_signers
            )

    @pytest.mark.asyncio
    async def test_second_active_request_on_document_conflicts(self, orchestrator, session, seeded, three_signers):
        first = await _create(orchestrator, session, seeded, three_signers)

        with pytest.raises(ConflictError):
            await _create(orchestrator, session, seeded, three_signers)

        await orchestrator.cancel(session, first.id, actor=seeded.owner)
        second = await _create(orchestrator, session, seeded, three_signers)
        assert second.status is SigningRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_lapsed_request_does_not_block_a_new_one(self, orchestrator, session, seeded, three_signers, clock):
        first = await _create(orchestrator, session, seeded, three_signers, expires_at=clock() + timedelta(days=1))
        clock.advance(days=2)

        second = await _create(orchestrator, session, seeded, three_signers)

        stale = await session.get(SigningRequest, first.id)
        assert stale.status is SigningRequestStatus.EXPIRED
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_request_pending_and_retryable(
        self, orchestrator, session, seeded, three_signers, provider, notifier
    ):
        provider.registration_error = ProviderError("upstream unavailable", status_code=503, provider="docuseal")

        with pytest.raises(ProviderRegistrationError) as excinfo:
            await _create(orchestrator, session, seeded, three_signers)

        request = await session.get(SigningRequest, excinfo.value.signing_request_id)
        assert request.status is SigningRequestStatus.PENDING
        assert request.registration_status is RegistrationStatus.FAILED
        assert "upstream unavailable" in request.last_error
        assert all(s.provider_signer_id is None for s in request.signatories)
        assert notifier.messages == []

        provider.registration_error = None
        retried = await orchestrator.retry_registration(session, request.id, actor=seeded.owner)

        assert retried.registration_status is RegistrationStatus.REGISTERED
        assert retried.last_error is None
        assert len(provider.uploads) == 1
        assert notifier.templates_for("bob@example.com") == ["signature.requested"]

        with pytest.raises(ConflictError):
            await orchestrator.retry_registration(session, request.id, actor=seeded.owner)

    @pytest.mark.asyncio
    async def test_short_slot_list_is_a_registration_failure(
        self, orchestrator, session, seeded, three_signers, provider, notifier
    ):
        provider.slot_limit = 2

        with pytest.raises(ProviderRegistrationError) as excinfo:
            await _create(orchestrator, session, seeded, three_signers)

        assert excinfo.value.error_code == "incomplete_registration"
        request = await session.get(SigningRequest, excinfo.value.signing_request_id)
        assert request.registration_status is RegistrationStatus.FAILED
        assert "2 signer slots for 3 signatories" in request.last_error
        assert all(s.provider_signer_id is None for s in request.signatories)
        assert notifier.messages == []


class TestProviderEvents:
    @pytest.mark.asyncio
    async def test_sequential_signing_runs_through_to_completion(
        self, orchestrator, session, seeded, three_signers, notifier, clock, document_store
    ):
        request = await _create(orchestrator, session, seeded, three_signers)

        assert await orchestrator.apply_provider_event(session, signer_signed(request, 1, "evt-1", clock)) is EventOutcome.APPLIED
        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert request.status is SigningRequestStatus.IN_PROGRESS
        assert _statuses(request) == [SignatoryStatus.SIGNED, SignatoryStatus.READY_TO_SIGN, SignatoryStatus.WAITING]
        assert notifier.templates_for("carol@example.com") == ["signature.requested"]

        await orchestrator.apply_provider_event(session, signer_signed(request, 2, "evt-2", clock))
        await orchestrator.apply_provider_event(session, signer_signed(request, 3, "evt-3", clock))

        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert request.status is SigningRequestStatus.COMPLETED
        assert request.completed_at is not None
        assert request.completion_pending is False
        assert (document_store.root / request.signed_artifact_path).read_bytes() == b"%PDF-1.7 signed"

        document = await session.get(Document, seeded.document.id)
        assert document.status is DocumentStatus.SIGNED
        for email in ("owner@example.com", "bob@example.com", "carol@example.com", "dave@example.com"):
            assert notifier.templates_for(email).count("signing.completed") == 1

    @pytest.mark.asyncio
    async def test_parallel_request_completes_in_any_order(self, orchestrator, session, seeded, three_signers, clock):
        request = await _create(orchestrator, session, seeded, three_signers, ordering_mode=OrderingMode.PARALLEL)

        for position, key in ((3, "p-3"), (1, "p-1"), (2, "p-2")):
            await orchestrator.apply_provider_event(session, signer_signed(request, position, key, clock))

        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert request.status is SigningRequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_out_of_order_signature_is_accepted_without_skipping_turns(
        self, orchestrator, session, seeded, three_signers, clock
    ):
        request = await _create(orchestrator, session, seeded, three_signers)

        outcome = await orchestrator.apply_provider_event(session, signer_signed(request, 3, "ooo-3", clock))

        assert outcome is EventOutcome.APPLIED
        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert _statuses(request) == [SignatoryStatus.READY_TO_SIGN, SignatoryStatus.WAITING, SignatoryStatus.SIGNED]

        await orchestrator.apply_provider_event(session, signer_signed(request, 1, "ooo-1", clock))
        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert _statuses(request) == [SignatoryStatus.SIGNED, SignatoryStatus.READY_TO_SIGN, SignatoryStatus.SIGNED]

        await orchestrator.apply_provider_event(session, signer_signed(request, 2, "ooo-2", clock))
        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert request.status is SigningRequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_redelivered_event_is_a_duplicate(self, orchestrator, session, seeded, three_signers, clock, notifier):
        request = await _create(orchestrator, session, seeded, three_signers)
        event = signer_signed(request, 1, "evt-dup", clock)

        assert await orchestrator.apply_provider_event(session, event) is EventOutcome.APPLIED
        assert await orchestrator.apply_provider_event(session, event) is EventOutcome.DUPLICATE

        assert await _count(session, ProcessedEvent) == 1
        assert notifier.templates_for("carol@example.com") == ["signature.requested"]

    @pytest.mark.asyncio
    async def test_events_after_cancellation_are_recorded_and_ignored(
        self, orchestrator, session, seeded, three_signers, clock
    ):
        request = await _create(orchestrator, session, seeded, three_signers)
        await orchestrator.cancel(session, request.id, actor=seeded.owner)

        outcome = await orchestrator.apply_provider_event(session, signer_signed(request, 1, "late-1", clock))

        assert outcome is EventOutcome.IGNORED
        request = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert request.status is SigningRequestStatus.CANCELLED
        assert request.signatories[0].status is SignatoryStatus.READY_TO_SIGN
        assert await _count(session, ProcessedEvent, ProcessedEvent.signing_request_id == request.id) == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_and_unknown_document_are_ignored(self, orchestrator, session, seeded, clock):
        unknown_kind = UnknownEvent(event_key="u-1", kind="form.viewed", occurred_at=clock())
        unknown_document = DocumentCompleted(event_key="u-2", provider_document_id="nope", occurred_at=clock())

        assert await orchestrator.apply_provider_event(session, unknown_kind) is EventOutcome.IGNORED
        assert await orchestrator.apply_provider_event(session, unknown_document) is EventOutcome.IGNORED
        assert await _count(session, ProcessedEvent, ProcessedEvent.signing_request_id.is_(None)) == 2

    @pytest.mark.asyncio
    async def test_event_after_deadline_persists_expiry(self, orchestrator, session, seeded, three_signers, clock):
        request = await _create(orchestrator, session, seeded, three_signers, expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        outcome = await orchestrator.apply_provider_event(session, signer_signed(request, 1, "exp-1", clock))

        assert outcome is EventOutcome.IGNORED
        stored = await session.get(SigningRequest, request.id)
        assert stored.status is SigningRequestStatus.EXPIRED
        assert stored.signatories[0].status is SignatoryStatus.READY_TO_SIGN

    @pytest.mark.asyncio
    async def test_early_document_completed_converges_once_signatures_arrive(
        self, orchestrator, session, seeded, three_signers, clock, provider, notifier
    ):
        request = await _create(orchestrator, session, seeded, three_signers)
        early = DocumentCompleted(event_key="dc-1", provider_document_id=request.provider_document_id, occurred_at=clock())

        assert await orchestrator.apply_provider_event(session, early) is EventOutcome.IGNORED
        stored = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert stored.status is SigningRequestStatus.PENDING

        for position in (1, 2, 3):
            event = signer_signed(request, position, f"dc-sig-{position}", clock)
            assert await orchestrator.apply_provider_event(session, event) is EventOutcome.APPLIED
        late = DocumentCompleted(event_key="dc-2", provider_document_id=request.provider_document_id, occurred_at=clock())
        assert await orchestrator.apply_provider_event(session, late) is EventOutcome.IGNORED

        stored = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert stored.status is SigningRequestStatus.COMPLETED
        assert stored.completion_pending is False
        assert provider.artifact_calls == 1
        for email in ("owner@example.com", "bob@example.com", "carol@example.com", "dave@example.com"):
            assert notifier.templates_for(email).count("signing.completed") == 1

    @pytest.mark.asyncio
    async def test_next_signer_ready_refreshes_url_without_changing_turns(
        self, orchestrator, session, seeded, three_signers, clock
    ):
        request = await _create(orchestrator, session, seeded, three_signers)
        version_before = request.version
        third = request.signatories[2]
        event = NextSignerReady(
            event_key="nsr-1",
            provider_document_id=request.provider_document_id,
            provider_signer_id=third.provider_signer_id,
            occurred_at=clock(),
            signing_url="https://sign.example.com/refreshed",
        )

        assert await orchestrator.apply_provider_event(session, event) is EventOutcome.APPLIED
        stored = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert stored.signatories[2].signing_url == "https://sign.example.com/refreshed"
        assert _statuses(stored) == [SignatoryStatus.READY_TO_SIGN, SignatoryStatus.WAITING, SignatoryStatus.WAITING]
        # The frozen clock leaves updated_at unchanged; the row version must still move.
        assert stored.version == version_before + 1


class DenyingPolicy(ReminderPolicy):
    async def check(self, request, signatory):
        raise RateLimitError("slow down")


class CountingPolicy(ReminderPolicy):
    def __init__(self):
        self.checks = 0

    async def check(self, request, signatory):
        self.checks += 1


def _commit_losing_first_race(session):
    real_commit = session.commit
    calls = {"count": 0}

    async def commit():
        calls["count"] += 1
        if calls["count"] == 1:
            raise StaleDataError("signing_requests row version changed")
        await real_commit()

    return commit


class TestInitiatorActions:
    @pytest.mark.asyncio
    async def test_cancel_is_initiator_only_and_not_repeatable(self, orchestrator, session, seeded, three_signers):
        request = await _create(orchestrator, session, seeded, three_signers)
        request_id = request.id

        with pytest.raises(ForbiddenError):
            await orchestrator.cancel(session, request_id, actor=seeded.bob)
        await session.refresh(seeded.owner)

        cancelled = await orchestrator.cancel(session, request_id, actor=seeded.owner)
        assert cancelled.status is SigningRequestStatus.CANCELLED

        with pytest.raises(ConflictError):
            await orchestrator.cancel(session, request_id, actor=seeded.owner)

    @pytest.mark.asyncio
    async def test_cancel_retries_after_losing_the_race(self, orchestrator, session, seeded, three_signers):
        request = await _create(orchestrator, session, seeded, three_signers)

        with patch.object(session, "commit", _commit_losing_first_race(session)):
            cancelled = await orchestrator.cancel(session, request.id, actor=seeded.owner)

        assert cancelled.status is SigningRequestStatus.CANCELLED
        stored = await session.get(SigningRequest, cancelled.id)
        assert stored.status is SigningRequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_completed_request_cannot_be_cancelled(self, orchestrator, session, seeded, clock):
        request = await _create(orchestrator, session, seeded, [SignerInput("Bob Signer", "bob@example.com")])
        await orchestrator.apply_provider_event(session, signer_signed(request, 1, "solo", clock))

        with pytest.raises(ConflictError):
            await orchestrator.cancel(session, request.id, actor=seeded.owner)

    @pytest.mark.asyncio
    async def test_remind_ready_signer(self, orchestrator, session, seeded, three_signers, notifier):
        request = await _create(orchestrator, session, seeded, three_signers)
        first = request.signatories[0]

        reminded = await orchestrator.remind(session, request.id, first.id, actor=seeded.owner)
        assert reminded.reminders_sent == 1

        again = await orchestrator.remind(session, request.id, first.id, actor=seeded.owner)
        assert again.reminders_sent == 2
        assert notifier.templates_for("bob@example.com") == [
            "signature.requested",
            "signature.reminder.1",
            "signature.reminder.2",
        ]

    @pytest.mark.asyncio
    async def test_remind_retry_consults_policy_once(self, orchestrator, session, seeded, three_signers, notifier):
        policy = CountingPolicy()
        orchestrator.reminder_policy = policy
        request = await _create(orchestrator, session, seeded, three_signers)
        request_id, first_id = request.id, request.signatories[0].id

        with patch.object(session, "commit", _commit_losing_first_race(session)):
            reminded = await orchestrator.remind(session, request_id, first_id, actor=seeded.owner)

        assert reminded.reminders_sent == 1
        assert policy.checks == 1
        assert notifier.templates_for("bob@example.com") == ["signature.requested", "signature.reminder.1"]

    @pytest.mark.asyncio
    async def test_remind_waiting_signer_conflicts(self, orchestrator, session, seeded, three_signers):
        request = await _create(orchestrator, session, seeded, three_signers)
        request_id, second_id = request.id, request.signatories[1].id

        with pytest.raises(ConflictError):
            await orchestrator.remind(session, request_id, second_id, actor=seeded.owner)
        await session.refresh(seeded.owner)
        with pytest.raises(NotFoundError):
            await orchestrator.remind(session, request_id, "unknown", actor=seeded.owner)

    @pytest.mark.asyncio
    async def test_reminder_policy_can_refuse(self, orchestrator, session, seeded, three_signers, notifier):
        orchestrator.reminder_policy = DenyingPolicy()
        request = await _create(orchestrator, session, seeded, three_signers)
        request_id, first_id = request.id, request.signatories[0].id

        with pytest.raises(RateLimitError):
            await orchestrator.remind(session, request_id, first_id, actor=seeded.owner)
        await session.refresh(seeded.owner)

        stored = await orchestrator.get_request(session, request_id, actor=seeded.owner)
        assert stored.signatories[0].reminders_sent == 0
        assert "signature.reminder.1" not in notifier.templates_for("bob@example.com")


class TestQueries:
    @pytest.mark.asyncio
    async def test_request_visible_to_parties_only(self, orchestrator, session, seeded, three_signers):
        request = await _create(orchestrator, session, seeded, three_signers)

        assert (await orchestrator.get_request(session, request.id, actor=seeded.carol)).id == request.id
        with pytest.raises(ForbiddenError):
            await orchestrator.get_request(session, request.id, actor=seeded.outsider)
        with pytest.raises(NotFoundError):
            await orchestrator.get_request(session, "missing", actor=seeded.owner)

    @pytest.mark.asyncio
    async def test_effective_status_reports_lapsed_request_as_expired(
        self, orchestrator, session, seeded, three_signers, clock
    ):
        request = await _create(orchestrator, session, seeded, three_signers, expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        fetched = await orchestrator.get_request(session, request.id, actor=seeded.owner)
        assert fetched.status is SigningRequestStatus.PENDING
        assert orchestrator.status_of(fetched) is SigningRequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_awaiting_follows_turn_order(self, orchestrator, session, seeded, three_signers, clock):
        request = await _create(orchestrator, session, seeded, three_signers)

        assert [s.signing_request_id for s in await orchestrator.list_awaiting(session, actor=seeded.bob)] == [request.id]
        assert await orchestrator.list_awaiting(session, actor=seeded.carol) == []

        await orchestrator.apply_provider_event(session, signer_signed(request, 1, "aw-1", clock))

        assert await orchestrator.list_awaiting(session, actor=seeded.bob) == []
        assert len(await orchestrator.list_awaiting(session, actor=seeded.carol)) == 1


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_expiry_sweep_is_idempotent(self, orchestrator, session, seeded, three_signers, clock):
        request = await _create(orchestrator, session, seeded, three_signers, expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        assert await orchestrator.expire_overdue_requests(session) == 1
        assert await orchestrator.expire_overdue_requests(session) == 0
        stored = await session.get(SigningRequest, request.id)
        assert stored.status is SigningRequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_prune_keeps_ledger_rows_of_active_requests(
        self, orchestrator, session, seeded, three_signers, clock
    ):
        settled = await _create(orchestrator, session, seeded, three_signers)
        await orchestrator.apply_provider_event(session, signer_signed(settled, 1, "settled-1", clock))
        await orchestrator.cancel(session, settled.id, actor=seeded.owner)
        await orchestrator.apply_provider_event(
            session, UnknownEvent(event_key="orphan", kind="form.viewed", occurred_at=clock())
        )

        other = Document(
            owner_id=seeded.owner.id, name="NDA", storage_path="contracts/msa.pdf", status=DocumentStatus.DRAFT
        )
        session.add(other)
        await session.commit()
        active = await orchestrator.create_request(
            session, actor=seeded.owner, document_id=other.id, signers=three_signers
        )
        await orchestrator.apply_provider_event(session, signer_signed(active, 1, "active-1", clock))

        clock.advance(days=31)
        pruned = await orchestrator.prune_processed_events(session, retention_days=30)

        assert pruned == 2
        remaining = (await session.execute(select(ProcessedEvent.event_key))).scalars().all()
        assert remaining == ["active-1"]
        assert await _count(session, NotificationDispatch) > 0
