"""Ledger of flagged messages awaiting staff review."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from chatguard.moderation.domain.classifier import Verdict
from chatguard.moderation.domain.errors import StoreUnavailableError, ViolationNotFoundError
from chatguard.moderation.domain.retry import RetryPolicy, call_store

logger = logging.getLogger(__name__)


class ViolationStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    ACTIONED = "actioned"


@dataclass(slots=True)
class MessageViolation:
    """A message that tripped at least one lexicon category.

    ``violation_id`` is the message id.
    """

    violation_id: str
    sender_id: str
    receiver_id: str
    message: str
    timestamp: datetime
    has_bully_words: bool = False
    has_sexual_harassment_words: bool = False
    has_bad_words: bool = False
    found_words: dict[str, list[str]] = field(default_factory=dict)
    status: ViolationStatus = ViolationStatus.PENDING
    action: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None

    @property
    def message_id(self) -> str:
        return self.violation_id

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.violation_id,
            "messageId": self.violation_id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "hasBullyWords": self.has_bully_words,
            "hasSexualHarassmentWords": self.has_sexual_harassment_words,
            "hasBadWords": self.has_bad_words,
            "foundWords": {label: list(words) for label, words in self.found_words.items()},
            "status": self.status.value,
            "action": self.action,
            "reviewedAt": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewedBy": self.reviewed_by,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "MessageViolation":
        reviewed_at = document.get("reviewedAt")
        found = document.get("foundWords") or {}
        return cls(
            violation_id=str(document.get("id") or document["messageId"]),
            sender_id=str(document.get("senderId", "")),
            receiver_id=str(document.get("receiverId", "")),
            message=str(document.get("message", "")),
            timestamp=_aware(datetime.fromisoformat(document["timestamp"])),
            has_bully_words=bool(document.get("hasBullyWords", False)),
            has_sexual_harassment_words=bool(document.get("hasSexualHarassmentWords", False)),
            has_bad_words=bool(document.get("hasBadWords", False)),
            found_words={str(label): [str(w) for w in words] for label, words in found.items()},
            status=ViolationStatus(document.get("status") or ViolationStatus.PENDING.value),
            action=document.get("action"),
            reviewed_at=_aware(datetime.fromisoformat(reviewed_at)) if reviewed_at else None,
            reviewed_by=document.get("reviewedBy"),
        )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ViolationRepository(Protocol):
    async def save(self, violation: MessageViolation) -> None:
        ...

    async def get(self, violation_id: str) -> MessageViolation | None:
        ...

    async def list_recent(self, limit: int) -> Sequence[MessageViolation]:
        """Newest first."""
        ...

    async def list_for_sender(self, sender_id: str) -> Sequence[MessageViolation]:
        """Newest first."""
        ...


class InMemoryViolationRepository(ViolationRepository):
    """Simple repository implementation for development and tests."""

    def __init__(self) -> None:
        self._items: dict[str, MessageViolation] = {}

    async def save(self, violation: MessageViolation) -> None:
        self._items[violation.violation_id] = replace(violation)

    async def get(self, violation_id: str) -> MessageViolation | None:
        item = self._items.get(violation_id)
        return replace(item) if item else None

    async def list_recent(self, limit: int) -> Sequence[MessageViolation]:
        ordered = sorted(self._items.values(), key=lambda v: v.timestamp, reverse=True)
        return [replace(item) for item in ordered[: max(0, limit)]]

    async def list_for_sender(self, sender_id: str) -> Sequence[MessageViolation]:
        ordered = sorted(self._items.values(), key=lambda v: v.timestamp, reverse=True)
        return [replace(item) for item in ordered if item.sender_id == sender_id]


class ViolationService:
    def __init__(self, repository: ViolationRepository, *, retry: RetryPolicy | None = None) -> None:
        self._repo = repository
        self._retry = retry or RetryPolicy()

    async def record(
        self,
        *,
        message_id: str,
        sender_id: str,
        receiver_id: str,
        text: str,
        verdict: Verdict,
        now: datetime | None = None,
    ) -> MessageViolation | None:
        """Store a pending violation. Returns None when the ledger is unreachable."""
        violation = MessageViolation(
            violation_id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            message=text,
            timestamp=now or datetime.now(timezone.utc),
            has_bully_words=verdict.has_bully_words,
            has_sexual_harassment_words=verdict.has_sexual_harassment_words,
            has_bad_words=verdict.has_bad_words,
            found_words={label: words for label, words in verdict.labelled_words().items() if words},
        )
        try:
            await call_store("violations", "save", lambda: self._repo.save(violation), self._retry)
        except StoreUnavailableError as exc:
            logger.warning(
                "violation not recorded",
                extra={"message_id": message_id, "user_id": sender_id, "error": exc.detail},
            )
            return None
        return violation

    async def get(self, violation_id: str) -> MessageViolation:
        item = await call_store("violations", "get", lambda: self._repo.get(violation_id), self._retry)
        if item is None:
            raise ViolationNotFoundError(violation_id)
        return item

    async def list_recent(self, limit: int = 50) -> list[MessageViolation]:
        return list(await call_store("violations", "list", lambda: self._repo.list_recent(limit), self._retry))

    async def list_for_sender(self, sender_id: str) -> list[MessageViolation]:
        return list(
            await call_store("violations", "list_sender", lambda: self._repo.list_for_sender(sender_id), self._retry)
        )

    async def review(
        self,
        violation_id: str,
        *,
        status: ViolationStatus | str,
        action: str | None,
        reviewer_id: str,
        now: datetime | None = None,
    ) -> MessageViolation:
        status = ViolationStatus(status)
        current = await self.get(violation_id)
        updated = replace(
            current,
            status=status,
            action=action,
            reviewed_at=now or datetime.now(timezone.utc),
            reviewed_by=reviewer_id,
        )
        await call_store("violations", "save", lambda: self._repo.save(updated), self._retry)
        logger.info(
            "violation reviewed",
            extra={"violation_id": violation_id, "status": status.value, "reviewer": reviewer_id},
        )
        return updated
