import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatguard.moderation.domain.errors import StoreUnavailableError
from chatguard.moderation.domain.retry import RetryPolicy
from chatguard.moderation.domain.sanctions import (
    InMemorySanctionRepository,
    SanctionRecord,
    SanctionsService,
    SanctionState,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FAST_RETRY = RetryPolicy(timeout_seconds=0.2, retries=1, backoff_seconds=0)


def _service(repo=None, **kwargs) -> SanctionsService:
    kwargs.setdefault("max_warnings", 3)
    kwargs.setdefault("retry", FAST_RETRY)
    return SanctionsService(repo or InMemorySanctionRepository(), **kwargs)


class UnavailableSanctionRepository(InMemorySanctionRepository):
    async def get(self, user_id):
        raise StoreUnavailableError()


class SlowSanctionRepository(InMemorySanctionRepository):
    async def get(self, user_id):
        await asyncio.sleep(1)
        return await super().get(user_id)


class ConflictingSanctionRepository(InMemorySanctionRepository):
    """Rejects the first ``failures`` writes as if another process got there first."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.put_calls = 0

    async def put(self, record, *, expected_version):
        self.put_calls += 1
        if self.failures > 0:
            self.failures -= 1
            return False
        return await super().put(record, expected_version=expected_version)


class LostReplySanctionRepository(InMemorySanctionRepository):
    """Commits the first write, then fails it as if the reply never arrived."""

    def __init__(self) -> None:
        super().__init__()
        self.lost = False

    async def put(self, record, *, expected_version):
        stored = await super().put(record, expected_version=expected_version)
        if stored and not self.lost:
            self.lost = True
            raise StoreUnavailableError()
        return stored


@pytest.mark.asyncio
async def test_warnings_escalate_to_block() -> None:
    service = _service()

    first = await service.handle_violation("u1", "m1", now=T0)
    second = await service.handle_violation("u1", "m2", now=T0)
    third = await service.handle_violation("u1", "m3", now=T0)

    assert (first.allowed, first.warning_count, first.state) == (True, 1, SanctionState.WARNED)
    assert (second.allowed, second.warning_count) == (True, 2)
    assert (third.allowed, third.warning_count, third.state) == (False, 3, SanctionState.BLOCKED)
    assert third.counted
    assert third.record.block_expiry_date == T0 + timedelta(hours=24)
    assert third.record.violation_history == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_violation_while_blocked_is_suppressed_without_counting() -> None:
    service = _service()
    for idx in range(3):
        await service.handle_violation("u1", f"m{idx}", now=T0)

    decision = await service.handle_violation("u1", "m4", now=T0 + timedelta(hours=1))

    assert not decision.allowed
    assert not decision.counted
    assert decision.warning_count == 3
    assert await service.violation_count("u1") == 3


@pytest.mark.asyncio
async def test_block_lapses_by_the_supplied_clock() -> None:
    repo = InMemorySanctionRepository()
    service = _service(repo)
    for idx in range(3):
        await service.handle_violation("u1", f"m{idx}", now=T0)

    assert await service.is_blocked("u1", now=T0 + timedelta(hours=23))
    assert not await service.is_blocked("u1", now=T0 + timedelta(hours=25))

    status = await service.status("u1", now=T0 + timedelta(hours=25))
    assert status.state is SanctionState.CLEAR
    assert status.warning_count == 3
    # Reads never write back the lapse
    stored = await repo.get("u1")
    assert stored.is_blocked


@pytest.mark.asyncio
async def test_counter_is_not_reset_after_lapse() -> None:
    service = _service()
    for idx in range(3):
        await service.handle_violation("u1", f"m{idx}", now=T0)

    later = T0 + timedelta(hours=25)
    decision = await service.handle_violation("u1", "m4", now=later)

    assert decision.counted
    assert decision.warning_count == 4
    assert not decision.allowed
    assert decision.record.block_expiry_date == later + timedelta(hours=24)


@pytest.mark.asyncio
async def test_indefinite_block_never_lapses() -> None:
    service = _service(max_warnings=1, block_duration=None)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert not decision.allowed
    assert decision.record.block_expiry_date is None
    assert await service.is_blocked("u1", now=T0 + timedelta(days=365))


@pytest.mark.asyncio
async def test_unknown_user_reads_as_clear() -> None:
    service = _service()

    status = await service.status("nobody", now=T0)

    assert status.state is SanctionState.CLEAR
    assert status.warning_count == 0
    assert not await service.is_blocked("nobody", now=T0)


@pytest.mark.asyncio
async def test_concurrent_violations_are_all_counted() -> None:
    service = _service(max_warnings=1000)

    decisions = await asyncio.gather(*(service.handle_violation("u1", f"m{idx}", now=T0) for idx in range(50)))

    assert await service.violation_count("u1") == 50
    assert sorted(d.warning_count for d in decisions) == list(range(1, 51))
    status = await service.status("u1", now=T0)
    assert len(status.record.violation_history) == 50
    assert len(service.locks) == 0


@pytest.mark.asyncio
async def test_distinct_users_do_not_wait_on_each_other() -> None:
    gate = asyncio.Event()

    class GatedRepository(InMemorySanctionRepository):
        async def get(self, user_id):
            if user_id == "slow":
                await gate.wait()
            return await super().get(user_id)

    service = _service(GatedRepository(), retry=RetryPolicy(timeout_seconds=5, retries=0))
    slow = asyncio.create_task(service.handle_violation("slow", "m1", now=T0))
    await asyncio.sleep(0)

    fast = await asyncio.wait_for(service.handle_violation("fast", "m2", now=T0), timeout=1)

    assert fast.warning_count == 1
    assert not slow.done()
    gate.set()
    assert (await slow).warning_count == 1


@pytest.mark.asyncio
async def test_stale_write_is_retried_with_fresh_read() -> None:
    repo = ConflictingSanctionRepository(failures=2)
    service = _service(repo, conflict_retries=3)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.counted and decision.warning_count == 1
    assert repo.put_calls == 3


@pytest.mark.asyncio
async def test_committed_write_with_lost_reply_counts_once() -> None:
    repo = LostReplySanctionRepository()
    service = _service(repo, max_warnings=1000)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.counted
    assert decision.error is None
    assert decision.warning_count == 1
    stored = await repo.get("u1")
    assert stored.warning_count == 1
    assert stored.violation_history == ["m1"]


@pytest.mark.asyncio
async def test_lost_reply_on_blocking_write_reports_the_block() -> None:
    repo = LostReplySanctionRepository()
    service = _service(repo, max_warnings=1)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.counted
    assert not decision.allowed
    assert decision.state is SanctionState.BLOCKED
    assert (await repo.get("u1")).warning_count == 1


@pytest.mark.asyncio
async def test_persistent_conflict_fails_open() -> None:
    repo = ConflictingSanctionRepository(failures=10)
    service = _service(repo, conflict_retries=2)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.allowed
    assert decision.error == "sanction_conflict"
    assert decision.failed_open
    assert repo.put_calls == 3


@pytest.mark.asyncio
async def test_unreachable_store_fails_open_by_default() -> None:
    service = _service(UnavailableSanctionRepository())

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.allowed
    assert decision.failed_open
    assert decision.error == "store_unavailable"
    assert not decision.counted
    assert not await service.is_blocked("u1")
    assert await service.violation_count("u1") == 0


@pytest.mark.asyncio
async def test_unreachable_store_fails_closed_when_configured() -> None:
    service = _service(UnavailableSanctionRepository(), fail_open=False)

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert not decision.allowed
    assert not decision.failed_open
    assert await service.is_blocked("u1")


@pytest.mark.asyncio
async def test_slow_store_times_out() -> None:
    service = _service(SlowSanctionRepository())

    decision = await service.handle_violation("u1", "m1", now=T0)

    assert decision.allowed
    assert decision.error == "store_timeout"


@pytest.mark.asyncio
async def test_release_lapsed_clears_flag_only_after_expiry() -> None:
    repo = InMemorySanctionRepository()
    service = _service(repo)
    for idx in range(3):
        await service.handle_violation("u1", f"m{idx}", now=T0)

    assert not await service.release_lapsed("u1", now=T0 + timedelta(hours=1))
    assert await service.release_lapsed("u1", now=T0 + timedelta(hours=24))

    stored = await repo.get("u1")
    assert not stored.is_blocked
    assert stored.warning_count == 3
    assert stored.block_expiry_date == T0 + timedelta(hours=24)
    assert await service.list_blocked() == []


@pytest.mark.asyncio
async def test_list_records_for_admin_overview() -> None:
    service = _service()
    await service.handle_violation("b", "m1", now=T0)
    await service.handle_violation("a", "m2", now=T0)

    records = await service.list_records()

    assert [record.user_id for record in records] == ["a", "b"]


def test_record_document_uses_stored_field_names() -> None:
    record = SanctionRecord(
        user_id="u1",
        warning_count=2,
        last_warning_date=T0,
        violation_history=["m1", "m2"],
        version=2,
    )

    document = record.to_document()

    assert document == {
        "userId": "u1",
        "warningCount": 2,
        "isBlocked": False,
        "lastWarningDate": T0.isoformat(),
        "violationHistory": ["m1", "m2"],
        "blockExpiryDate": None,
        "version": 2,
    }
    assert SanctionRecord.from_document(document) == record


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValueError):
        SanctionsService(InMemorySanctionRepository(), max_warnings=0)
