from datetime import datetime, timedelta, timezone

import pytest

from chatguard.moderation.domain.classifier import Verdict
from chatguard.moderation.domain.errors import StoreUnavailableError, ViolationNotFoundError
from chatguard.moderation.domain.lexicon import LexiconCategory
from chatguard.moderation.domain.retry import RetryPolicy
from chatguard.moderation.domain.violations import (
    InMemoryViolationRepository,
    MessageViolation,
    ViolationService,
    ViolationStatus,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FAST_RETRY = RetryPolicy(timeout_seconds=0.2, retries=0, backoff_seconds=0)

BULLY_VERDICT = Verdict.from_matches({LexiconCategory.BULLY: ("s7upid",)})


class UnavailableViolationRepository(InMemoryViolationRepository):
    async def save(self, violation):
        raise StoreUnavailableError()


@pytest.mark.asyncio
async def test_record_stores_pending_violation() -> None:
    service = ViolationService(InMemoryViolationRepository(), retry=FAST_RETRY)

    violation = await service.record(
        message_id="m1",
        sender_id="alice",
        receiver_id="bob",
        text="you're s7upid",
        verdict=BULLY_VERDICT,
        now=T0,
    )

    assert violation.status is ViolationStatus.PENDING
    assert violation.has_bully_words and not violation.has_bad_words
    assert violation.found_words == {"bully": ["s7upid"]}
    assert (await service.get("m1")).message == "you're s7upid"


@pytest.mark.asyncio
async def test_listing_is_newest_first() -> None:
    service = ViolationService(InMemoryViolationRepository(), retry=FAST_RETRY)
    for idx, sender in enumerate(["alice", "carol", "alice"]):
        await service.record(
            message_id=f"m{idx}",
            sender_id=sender,
            receiver_id="bob",
            text="dumb",
            verdict=BULLY_VERDICT,
            now=T0 + timedelta(minutes=idx),
        )

    recent = await service.list_recent(limit=2)
    by_alice = await service.list_for_sender("alice")

    assert [v.violation_id for v in recent] == ["m2", "m1"]
    assert [v.violation_id for v in by_alice] == ["m2", "m0"]


@pytest.mark.asyncio
async def test_review_sets_status_and_reviewer() -> None:
    service = ViolationService(InMemoryViolationRepository(), retry=FAST_RETRY)
    await service.record(
        message_id="m1",
        sender_id="alice",
        receiver_id="bob",
        text="dumb",
        verdict=BULLY_VERDICT,
        now=T0,
    )

    reviewed = await service.review("m1", status="actioned", action="warned_user", reviewer_id="staff-1", now=T0)

    assert reviewed.status is ViolationStatus.ACTIONED
    assert reviewed.reviewed_by == "staff-1"
    assert reviewed.reviewed_at == T0
    assert (await service.get("m1")).action == "warned_user"


@pytest.mark.asyncio
async def test_review_of_unknown_violation_raises() -> None:
    service = ViolationService(InMemoryViolationRepository(), retry=FAST_RETRY)

    with pytest.raises(ViolationNotFoundError):
        await service.review("missing", status=ViolationStatus.DISMISSED, action=None, reviewer_id="staff-1")


@pytest.mark.asyncio
async def test_review_rejects_unknown_status() -> None:
    service = ViolationService(InMemoryViolationRepository(), retry=FAST_RETRY)

    with pytest.raises(ValueError):
        await service.review("m1", status="escalated", action=None, reviewer_id="staff-1")


@pytest.mark.asyncio
async def test_record_returns_none_when_ledger_unreachable() -> None:
    service = ViolationService(UnavailableViolationRepository(), retry=FAST_RETRY)

    violation = await service.record(
        message_id="m1",
        sender_id="alice",
        receiver_id="bob",
        text="dumb",
        verdict=BULLY_VERDICT,
        now=T0,
    )

    assert violation is None


def test_document_uses_ledger_field_names() -> None:
    violation = MessageViolation(
        violation_id="m1",
        sender_id="alice",
        receiver_id="bob",
        message="dumb",
        timestamp=T0,
        has_bully_words=True,
        found_words={"bully": ["dumb"]},
    )

    document = violation.to_document()

    assert document["messageId"] == "m1"
    assert document["hasBullyWords"] is True
    assert document["status"] == "pending"
    assert document["reviewedAt"] is None
    assert MessageViolation.from_document(document) == violation
