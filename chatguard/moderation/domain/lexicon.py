"""Categorized word lists with atomic snapshot swaps and live updates."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Mapping, Protocol, Sequence

from chatguard.moderation.domain.errors import StoreUnavailableError
from chatguard.moderation.domain.matcher import EMPTY_INDEX, VariantIndex
from chatguard.moderation.domain.retry import RetryPolicy, call_store
from chatguard.obs import metrics

logger = logging.getLogger(__name__)


class LexiconCategory(str, Enum):
    """Storage identifiers of the three word lists."""

    BULLY = "bully_words"
    SEXUAL_HARASSMENT = "sexual_harassment_words"
    BAD = "bad_words"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    LexiconCategory.BULLY: "bully",
    LexiconCategory.SEXUAL_HARASSMENT: "sexual_harassment",
    LexiconCategory.BAD: "bad",
}

DEFAULT_WORDS: Mapping[LexiconCategory, frozenset[str]] = {
    LexiconCategory.BULLY: frozenset(
        {
            "loser",
            "stupid",
            "dumb",
            "idiot",
            "worthless",
            "ugly",
            "fat",
            "wimp",
            "failure",
            "pathetic",
            "weak",
            "coward",
        }
    ),
    LexiconCategory.SEXUAL_HARASSMENT: frozenset({"inappropriate"}),
    LexiconCategory.BAD: frozenset({"inappropriate"}),
}


@dataclass(frozen=True, slots=True)
class LexiconSnapshot:
    category: LexiconCategory
    words: frozenset[str]
    index: VariantIndex

    @classmethod
    def build(cls, category: LexiconCategory, words: Iterable[str]) -> "LexiconSnapshot":
        frozen = frozenset(words)
        index = VariantIndex.build(frozen) if frozen else EMPTY_INDEX
        return cls(category=category, words=frozen, index=index)


@dataclass(frozen=True, slots=True)
class LexiconChange:
    """One event from a repository change feed."""

    category: LexiconCategory
    document: Mapping[str, Any] | None


@dataclass(frozen=True, slots=True)
class LexiconLoadResult:
    degraded: bool = False
    errors: Mapping[LexiconCategory, str] = field(default_factory=dict)
    seeded: tuple[LexiconCategory, ...] = ()


@dataclass(frozen=True, slots=True)
class LexiconUpdate:
    category: LexiconCategory
    words: frozenset[str]
    persisted: bool
    error: str | None = None


class LexiconRepository(Protocol):
    """Storage layer contract for word lists (documents shaped ``{"words": [...]}``)."""

    async def get(self, category: LexiconCategory) -> Mapping[str, Any] | None:
        ...

    async def put(self, category: LexiconCategory, document: Mapping[str, Any]) -> None:
        ...

    def changes(self, categories: Sequence[LexiconCategory]) -> AsyncIterator[LexiconChange]:
        """Stream of change events; closing the iterator releases the subscription."""
        ...


def clean_words(category: LexiconCategory, entries: Iterable[Any]) -> frozenset[str]:
    """Lowercase and strip entries, skipping anything that is not a non-blank string."""

    words: set[str] = set()
    skipped = 0
    for entry in entries:
        if not isinstance(entry, str):
            skipped += 1
            continue
        word = entry.strip().lower()
        if not word:
            skipped += 1
            continue
        words.add(word)
    if skipped:
        metrics.LEXICON_MALFORMED_ENTRIES.labels(category=category.value).inc(skipped)
        logger.warning("skipped malformed lexicon entries", extra={"category": category.value, "skipped": skipped})
    return frozenset(words)


def words_from_document(category: LexiconCategory, document: Any) -> frozenset[str]:
    """Extract the word set from a stored document; malformed documents read as empty."""

    if document is None:
        return frozenset()
    if not isinstance(document, Mapping):
        logger.warning("malformed lexicon document", extra={"category": category.value, "shape": type(document).__name__})
        return frozenset()
    raw = document.get("words")
    if raw is None:
        return frozenset()
    if not isinstance(raw, (list, tuple)):
        logger.warning("malformed lexicon words", extra={"category": category.value, "shape": type(raw).__name__})
        return frozenset()
    return clean_words(category, raw)


class InMemoryLexiconRepository(LexiconRepository):
    """Process-local repository with an in-process change feed."""

    def __init__(self, documents: Mapping[LexiconCategory, Mapping[str, Any]] | None = None) -> None:
        self._documents: dict[LexiconCategory, Mapping[str, Any]] = dict(documents or {})
        self._subscribers: list[asyncio.Queue[LexiconChange]] = []

    async def get(self, category: LexiconCategory) -> Mapping[str, Any] | None:
        return self._documents.get(category)

    async def put(self, category: LexiconCategory, document: Mapping[str, Any]) -> None:
        self._documents[category] = dict(document)
        change = LexiconChange(category=category, document=dict(document))
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    async def changes(self, categories: Sequence[LexiconCategory]) -> AsyncIterator[LexiconChange]:
        wanted = set(categories)
        queue: asyncio.Queue[LexiconChange] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                change = await queue.get()
                if change.category in wanted:
                    yield change
        finally:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class LexiconStore:
    """Holds the current word lists and keeps them in sync with the repository.

    Readers take the snapshot mapping once and never see a half-applied update:
    writers build a new mapping and swap the reference.
    """

    def __init__(
        self,
        repository: LexiconRepository,
        *,
        retry: RetryPolicy | None = None,
        live_updates: bool = True,
        defaults: Mapping[LexiconCategory, frozenset[str]] = DEFAULT_WORDS,
    ) -> None:
        self._repo = repository
        self._retry = retry or RetryPolicy()
        self._live_updates = live_updates
        self._defaults = defaults
        self._snapshots: Mapping[LexiconCategory, LexiconSnapshot] = {
            category: LexiconSnapshot.build(category, ()) for category in LexiconCategory
        }
        self._generations: dict[LexiconCategory, int] = {category: 0 for category in LexiconCategory}
        self._task: asyncio.Task[None] | None = None
        self._started = False

    # --- Reads -----------------------------------------------------------

    def snapshot(self, category: LexiconCategory) -> LexiconSnapshot:
        return self._snapshots[category]

    def snapshots(self) -> Mapping[LexiconCategory, LexiconSnapshot]:
        return self._snapshots

    def current_words(self, category: LexiconCategory) -> frozenset[str]:
        return self._snapshots[category].words

    def words_by_category(self) -> dict[LexiconCategory, frozenset[str]]:
        current = self._snapshots
        return {category: snap.words for category, snap in current.items()}

    @property
    def started(self) -> bool:
        return self._started

    @property
    def subscribed(self) -> bool:
        return self._task is not None and not self._task.done()

    # --- Lifecycle -------------------------------------------------------

    async def start(self) -> LexiconLoadResult:
        """Subscribe to changes, load every category and seed empty ones."""

        if self._live_updates and self._task is None:
            self._task = asyncio.create_task(self._consume(), name="lexicon-changes")
        result = await self._load(fallback_to_defaults=True)
        seeded = await self.ensure_defaults()
        self._started = True
        logger.info(
            "lexicon loaded",
            extra={
                "degraded": result.degraded,
                "sizes": {c.value: len(s.words) for c, s in self._snapshots.items()},
                "live_updates": self._live_updates,
            },
        )
        return LexiconLoadResult(degraded=result.degraded, errors=result.errors, seeded=tuple(seeded))

    async def refresh(self) -> LexiconLoadResult:
        """Re-fetch every category; categories that fail keep their current words."""

        return await self._load(fallback_to_defaults=False)

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> "LexiconStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # --- Writes ----------------------------------------------------------

    async def set_words(self, category: LexiconCategory, words: Iterable[Any]) -> LexiconUpdate:
        """Replace a category's list: persist first, then swap in."""

        cleaned = clean_words(category, words)
        document = {"words": sorted(cleaned)}
        try:
            await call_store("lexicon", "put", lambda: self._repo.put(category, document), self._retry)
        except StoreUnavailableError as exc:
            logger.warning("lexicon update not persisted", extra={"category": category.value, "error": exc.detail})
            return LexiconUpdate(category=category, words=self.current_words(category), persisted=False, error=exc.detail)
        self._swap(category, cleaned, source="admin")
        return LexiconUpdate(category=category, words=cleaned, persisted=True)

    async def ensure_defaults(self) -> list[LexiconCategory]:
        seeded: list[LexiconCategory] = []
        for category in LexiconCategory:
            if self.current_words(category):
                continue
            defaults = self._defaults.get(category, frozenset())
            if not defaults:
                continue
            update = await self.set_words(category, defaults)
            if not update.persisted:
                # Serve the defaults anyway; moderation is degraded, not disabled.
                self._swap(category, defaults, source="default")
            seeded.append(category)
        return seeded

    # --- Internals -------------------------------------------------------

    def _swap(self, category: LexiconCategory, words: Iterable[str], *, source: str) -> None:
        snapshot = LexiconSnapshot.build(category, words)
        updated = dict(self._snapshots)
        updated[category] = snapshot
        self._snapshots = updated
        self._generations[category] += 1
        metrics.LEXICON_SIZE.labels(category=category.value).set(len(snapshot.words))
        metrics.LEXICON_UPDATES.labels(category=category.value, source=source).inc()
        logger.debug("lexicon swapped", extra={"category": category.value, "source": source, "size": len(snapshot.words)})

    async def _load(self, *, fallback_to_defaults: bool) -> LexiconLoadResult:
        errors: dict[LexiconCategory, str] = {}
        for category in LexiconCategory:
            generation = self._generations[category]
            try:
                document = await call_store("lexicon", "get", lambda c=category: self._repo.get(c), self._retry)
            except StoreUnavailableError as exc:
                errors[category] = exc.detail
                if fallback_to_defaults and not self.current_words(category):
                    self._swap(category, self._defaults.get(category, frozenset()), source="default")
                continue
            if self._generations[category] != generation:
                # A push or admin write landed during the fetch and is newer.
                logger.debug("stale lexicon fetch skipped", extra={"category": category.value})
                continue
            self._swap(category, words_from_document(category, document), source="fetch")
        if errors:
            logger.warning("lexicon load degraded", extra={"errors": {c.value: e for c, e in errors.items()}})
        return LexiconLoadResult(degraded=bool(errors), errors=errors)

    async def _consume(self) -> None:
        try:
            async with aclosing(self._repo.changes(list(LexiconCategory))) as stream:
                async for change in stream:
                    self._swap(change.category, words_from_document(change.category, change.document), source="push")
        except asyncio.CancelledError:
            raise
        except NotImplementedError:
            logger.info("lexicon repository has no change feed; relying on refresh()")
        except Exception:
            logger.exception("lexicon change feed stopped")
