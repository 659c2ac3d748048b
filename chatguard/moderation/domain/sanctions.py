"""Progressive sanctions: per-user warning counters escalating to temporary blocks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from chatguard.moderation.domain.errors import (
    ModerationError,
    SanctionConflictError,
    SanctionDataError,
    StoreUnavailableError,
)
from chatguard.moderation.domain.locks import KeyedLocks
from chatguard.moderation.domain.retry import RetryPolicy, call_store
from chatguard.obs import metrics

logger = logging.getLogger(__name__)

MAX_WARNINGS = 1000
BLOCK_DURATION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SanctionState(str, Enum):
    CLEAR = "clear"
    WARNED = "warned"
    BLOCKED = "blocked"


@dataclass(slots=True)
class SanctionRecord:
    """Moderation state of one user.

    ``warning_count`` never decreases. A block with ``block_expiry_date`` of
    None is indefinite.
    """

    user_id: str
    warning_count: int = 0
    is_blocked: bool = False
    last_warning_date: datetime | None = None
    block_expiry_date: datetime | None = None
    violation_history: list[str] = field(default_factory=list)
    version: int = 0

    def block_active(self, now: datetime) -> bool:
        if not self.is_blocked:
            return False
        return self.block_expiry_date is None or now < self.block_expiry_date

    def block_lapsed(self, now: datetime) -> bool:
        return self.block_expiry_date is not None and now >= self.block_expiry_date

    def state(self, now: datetime) -> SanctionState:
        if self.block_active(now):
            return SanctionState.BLOCKED
        if self.warning_count == 0 or self.block_lapsed(now):
            return SanctionState.CLEAR
        return SanctionState.WARNED

    def with_warning(
        self,
        violation_id: str,
        *,
        now: datetime,
        max_warnings: int,
        block_duration: timedelta | None,
    ) -> "SanctionRecord":
        count = self.warning_count + 1
        blocked = count >= max_warnings
        expiry = None
        if blocked and block_duration is not None:
            expiry = now + block_duration
        return SanctionRecord(
            user_id=self.user_id,
            warning_count=count,
            is_blocked=blocked,
            last_warning_date=now,
            block_expiry_date=expiry,
            violation_history=[*self.violation_history, violation_id],
            version=self.version + 1,
        )

    def released(self) -> "SanctionRecord":
        """Clear the blocked flag of a lapsed block; the expiry stays as history."""
        return replace(self, is_blocked=False, violation_history=list(self.violation_history), version=self.version + 1)

    def copy(self) -> "SanctionRecord":
        return replace(self, violation_history=list(self.violation_history))

    def to_document(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "warningCount": self.warning_count,
            "isBlocked": self.is_blocked,
            "lastWarningDate": _iso(self.last_warning_date),
            "violationHistory": list(self.violation_history),
            "blockExpiryDate": _iso(self.block_expiry_date),
            "version": self.version,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SanctionRecord":
        return cls(
            user_id=str(document["userId"]),
            warning_count=max(0, int(document.get("warningCount", 0))),
            is_blocked=bool(document.get("isBlocked", False)),
            last_warning_date=_parse_dt(document.get("lastWarningDate")),
            block_expiry_date=_parse_dt(document.get("blockExpiryDate")),
            violation_history=[str(item) for item in document.get("violationHistory") or []],
            version=int(document.get("version", 0)),
        )


def _lands(stored: SanctionRecord, attempted: SanctionRecord) -> bool:
    """Whether ``stored`` is the record a previous attempt tried to write."""
    return (
        stored.version == attempted.version
        and stored.warning_count == attempted.warning_count
        and stored.violation_history[-1:] == attempted.violation_history[-1:]
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class SanctionDecision:
    """What the send path should do with a message that carried a violation."""

    allowed: bool
    state: SanctionState | None
    warning_count: int
    max_warnings: int
    counted: bool = False
    record: SanctionRecord | None = None
    error: str | None = None
    failed_open: bool = False


@dataclass(frozen=True, slots=True)
class SanctionStatus:
    user_id: str
    state: SanctionState | None
    blocked: bool
    warning_count: int
    record: SanctionRecord | None = None
    error: str | None = None


class SanctionRepository(Protocol):
    """Storage layer contract for sanction records."""

    async def get(self, user_id: str) -> SanctionRecord | None:
        ...

    async def put(self, record: SanctionRecord, *, expected_version: int) -> bool:
        """Store ``record`` only if the stored version equals ``expected_version``
        (0 when absent). Returns False on a version mismatch."""
        ...

    async def list_records(self) -> Sequence[SanctionRecord]:
        ...

    async def list_blocked(self) -> Sequence[SanctionRecord]:
        ...


class InMemorySanctionRepository(SanctionRepository):
    """Simple repository implementation for development and tests."""

    def __init__(self) -> None:
        self._items: dict[str, SanctionRecord] = {}

    async def get(self, user_id: str) -> SanctionRecord | None:
        record = self._items.get(user_id)
        return record.copy() if record is not None else None

    async def put(self, record: SanctionRecord, *, expected_version: int) -> bool:
        current = self._items.get(record.user_id)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            return False
        self._items[record.user_id] = record.copy()
        return True

    async def list_records(self) -> Sequence[SanctionRecord]:
        return [self._items[key].copy() for key in sorted(self._items)]

    async def list_blocked(self) -> Sequence[SanctionRecord]:
        return [record for record in await self.list_records() if record.is_blocked]


class SanctionsService:
    """Applies violations to sanction records, one writer per user at a time.

    Within a process a keyed lock serializes each user's read-modify-write; the
    repository's version check covers writers in other processes. Store
    failures fail open by default: the message is allowed and the decision
    carries the error.
    """

    def __init__(
        self,
        repository: SanctionRepository,
        *,
        max_warnings: int = MAX_WARNINGS,
        block_duration: timedelta | None = BLOCK_DURATION,
        retry: RetryPolicy | None = None,
        conflict_retries: int = 3,
        fail_open: bool = True,
        locks: KeyedLocks | None = None,
    ) -> None:
        if max_warnings < 1:
            raise ValueError("max_warnings must be at least 1")
        self._repo = repository
        self._max_warnings = max_warnings
        self._block_duration = block_duration
        self._retry = retry or RetryPolicy()
        self._conflict_retries = max(0, conflict_retries)
        self._fail_open = fail_open
        self._locks = locks or KeyedLocks()

    @property
    def max_warnings(self) -> int:
        return self._max_warnings

    @property
    def block_duration(self) -> timedelta | None:
        return self._block_duration

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    async def handle_violation(
        self,
        user_id: str,
        violation_id: str,
        *,
        now: datetime | None = None,
    ) -> SanctionDecision:
        try:
            async with self._locks.hold(user_id):
                decision = await self._apply_violation(user_id, violation_id, now)
        except (StoreUnavailableError, SanctionConflictError, SanctionDataError) as exc:
            decision = self._failure_decision(user_id, exc)
        if decision.error:
            outcome = "error"
        elif not decision.allowed:
            outcome = "blocked" if decision.counted else "suppressed"
        else:
            outcome = "warned"
        metrics.SANCTION_DECISIONS.labels(outcome=outcome).inc()
        return decision

    async def status(self, user_id: str, *, now: datetime | None = None) -> SanctionStatus:
        try:
            record = await self._load(user_id)
        except (StoreUnavailableError, SanctionDataError) as exc:
            return SanctionStatus(
                user_id=user_id,
                state=None,
                blocked=not self._fail_open,
                warning_count=0,
                error=exc.detail,
            )
        moment = now or _utcnow()
        return SanctionStatus(
            user_id=user_id,
            state=record.state(moment),
            blocked=record.block_active(moment),
            warning_count=record.warning_count,
            record=record,
        )

    async def is_blocked(self, user_id: str, *, now: datetime | None = None) -> bool:
        """Whether the user is blocked right now; a lapsed block reads as not blocked."""
        return (await self.status(user_id, now=now)).blocked

    async def violation_count(self, user_id: str) -> int:
        return (await self.status(user_id)).warning_count

    async def list_records(self) -> list[SanctionRecord]:
        """Every known record, for the admin overview. Store errors propagate."""
        return list(await call_store("sanctions", "list", self._repo.list_records, self._retry))

    async def list_blocked(self) -> list[SanctionRecord]:
        return list(await call_store("sanctions", "list_blocked", self._repo.list_blocked, self._retry))

    async def release_lapsed(self, user_id: str, *, now: datetime | None = None) -> bool:
        """Clear the blocked flag if the user's block has lapsed. Returns True if cleared."""
        try:
            async with self._locks.hold(user_id):
                for _ in range(self._conflict_retries + 1):
                    record = await self._load(user_id)
                    moment = now or _utcnow()
                    if not record.is_blocked or not record.block_lapsed(moment):
                        return False
                    if await self._write(record.released(), expected_version=record.version):
                        logger.info("block lapsed", extra={"user_id": user_id, "warning_count": record.warning_count})
                        return True
                    metrics.SANCTION_CONFLICTS.inc()
                raise SanctionConflictError()
        except ModerationError as exc:
            logger.warning("could not release lapsed block", extra={"user_id": user_id, "error": exc.detail})
            return False

    # --- Internals -------------------------------------------------------

    async def _apply_violation(self, user_id: str, violation_id: str, now: datetime | None) -> SanctionDecision:
        attempted: SanctionRecord | None = None
        for attempt in range(self._conflict_retries + 1):
            current = await self._load(user_id)
            moment = now or _utcnow()
            if attempted is not None and _lands(current, attempted):
                # An earlier put committed but its reply was lost.
                logger.info("sanction write already applied", extra={"user_id": user_id, "attempt": attempt + 1})
                return self._counted(current, moment)
            if current.block_active(moment):
                return SanctionDecision(
                    allowed=False,
                    state=SanctionState.BLOCKED,
                    warning_count=current.warning_count,
                    max_warnings=self._max_warnings,
                    counted=False,
                    record=current,
                )
            updated = current.with_warning(
                violation_id,
                now=moment,
                max_warnings=self._max_warnings,
                block_duration=self._block_duration,
            )
            attempted = updated
            if await self._write(updated, expected_version=current.version):
                return self._counted(updated, moment)
            metrics.SANCTION_CONFLICTS.inc()
            logger.info("sanction record conflict", extra={"user_id": user_id, "attempt": attempt + 1})
        raise SanctionConflictError()

    def _counted(self, record: SanctionRecord, moment: datetime) -> SanctionDecision:
        if record.is_blocked:
            metrics.BLOCKS_ISSUED.inc()
            logger.info(
                "user blocked",
                extra={
                    "user_id": record.user_id,
                    "warning_count": record.warning_count,
                    "block_expiry": record.block_expiry_date,
                },
            )
        return SanctionDecision(
            allowed=not record.is_blocked,
            state=record.state(moment),
            warning_count=record.warning_count,
            max_warnings=self._max_warnings,
            counted=True,
            record=record,
        )

    async def _load(self, user_id: str) -> SanctionRecord:
        record = await call_store("sanctions", "get", lambda: self._repo.get(user_id), self._retry)
        return record if record is not None else SanctionRecord(user_id=user_id)

    async def _write(self, record: SanctionRecord, *, expected_version: int) -> bool:
        return await call_store(
            "sanctions",
            "put",
            lambda: self._repo.put(record, expected_version=expected_version),
            self._retry,
        )

    def _failure_decision(self, user_id: str, exc: ModerationError) -> SanctionDecision:
        logger.warning(
            "sanction update failed",
            extra={"user_id": user_id, "error": exc.detail, "fail_open": self._fail_open},
        )
        return SanctionDecision(
            allowed=self._fail_open,
            state=None,
            warning_count=0,
            max_warnings=self._max_warnings,
            counted=False,
            error=exc.detail,
            failed_open=self._fail_open,
        )
