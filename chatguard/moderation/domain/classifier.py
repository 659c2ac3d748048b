"""Per-message verdicts across the three lexicon categories."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Mapping

from chatguard.moderation.domain.lexicon import LexiconCategory, LexiconStore
from chatguard.moderation.domain.matcher import FuzzyMatcher
from chatguard.moderation.domain.normalizer import normalize, normalize_preserving_symbols
from chatguard.obs import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of classifying one message."""

    has_bully_words: bool = False
    has_sexual_harassment_words: bool = False
    has_bad_words: bool = False
    found_words: Mapping[LexiconCategory, tuple[str, ...]] = field(default_factory=dict)

    def has_violation(self) -> bool:
        return self.has_bully_words or self.has_sexual_harassment_words or self.has_bad_words

    def categories(self) -> tuple[LexiconCategory, ...]:
        return tuple(category for category in LexiconCategory if self.found_words.get(category))

    def words_for(self, category: LexiconCategory) -> tuple[str, ...]:
        return self.found_words.get(category, ())

    def labelled_words(self) -> dict[str, list[str]]:
        return {category.label: list(self.words_for(category)) for category in LexiconCategory}

    @classmethod
    def from_matches(cls, matches: Mapping[LexiconCategory, tuple[str, ...]]) -> "Verdict":
        return cls(
            has_bully_words=bool(matches.get(LexiconCategory.BULLY)),
            has_sexual_harassment_words=bool(matches.get(LexiconCategory.SEXUAL_HARASSMENT)),
            has_bad_words=bool(matches.get(LexiconCategory.BAD)),
            found_words={category: tuple(matches.get(category, ())) for category in LexiconCategory},
        )


CLEAN_VERDICT = Verdict(found_words={category: () for category in LexiconCategory})


class MessageClassifier:
    """Normalizes a message and matches it against every category snapshot.

    ``classify`` only reads the lexicon and never raises; an unexpected error is
    logged and the message is treated as clean.
    """

    def __init__(self, lexicon: LexiconStore, matcher: FuzzyMatcher | None = None) -> None:
        self._lexicon = lexicon
        self._matcher = matcher or FuzzyMatcher()

    @property
    def matcher(self) -> FuzzyMatcher:
        return self._matcher

    def classify(self, message: str | None) -> Verdict:
        start = time.perf_counter()
        try:
            verdict = self._classify(message or "")
        except Exception:
            logger.exception("classification failed; treating message as clean")
            metrics.CLASSIFICATIONS_TOTAL.labels(result="error").inc()
            return CLEAN_VERDICT
        finally:
            metrics.CLASSIFY_LATENCY.observe(time.perf_counter() - start)
        metrics.CLASSIFICATIONS_TOTAL.labels(result="flagged" if verdict.has_violation() else "clean").inc()
        return verdict

    def _classify(self, message: str) -> Verdict:
        renderings = [normalize(message)]
        with_symbols = normalize_preserving_symbols(message)
        if with_symbols != renderings[0]:
            renderings.append(with_symbols)

        snapshots = self._lexicon.snapshots()
        matches: dict[LexiconCategory, tuple[str, ...]] = {}
        for category in LexiconCategory:
            snapshot = snapshots.get(category)
            if snapshot is None or not snapshot.words:
                matches[category] = ()
                continue
            found: dict[str, None] = {}
            for text in renderings:
                for token in self._matcher.find_matches(text, snapshot.index):
                    found.setdefault(token, None)
            matches[category] = tuple(found)
            if found:
                metrics.CATEGORY_HITS_TOTAL.labels(category=category.value).inc()
                logger.debug("lexicon hit", extra={"category": category.value, "found_words": list(found)})
        return Verdict.from_matches(matches)
