"""Fuzzy token matching of normalized text against lexicon variants."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Mapping

from chatguard.moderation.domain.variants import variants_of

STRICT = "strict"
LOOSE = "loose"


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        curr = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            curr.append(min(curr[j - 1] + 1, prev[j] + 1, prev[j - 1] + cost))
        prev = curr
    return prev[-1]


def similarity(a: str, b: str) -> float:
    """Share of the longer string left unchanged by the cheapest edit script."""

    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    return (len(longer) - levenshtein(longer, shorter)) / len(longer)


@dataclass(frozen=True, slots=True)
class MatchPolicy:
    """How aggressively tokens are matched against lexicon variants.

    ``strict`` accepts exact variants and containment only when the token is
    longer than the variant. ``loose`` also accepts a token contained in a
    variant and near-misses above ``similarity_threshold``.
    """

    name: str = STRICT
    min_containment_length: int = 3
    symmetric_containment: bool = False
    similarity_threshold: float | None = None

    @classmethod
    def strict(cls, *, min_containment_length: int = 3) -> "MatchPolicy":
        return cls(name=STRICT, min_containment_length=min_containment_length)

    @classmethod
    def loose(cls, *, min_containment_length: int = 3, similarity_threshold: float = 0.8) -> "MatchPolicy":
        return cls(
            name=LOOSE,
            min_containment_length=min_containment_length,
            symmetric_containment=True,
            similarity_threshold=similarity_threshold,
        )

    @classmethod
    def named(cls, name: str, *, min_containment_length: int = 3, similarity_threshold: float = 0.8) -> "MatchPolicy":
        if name == LOOSE:
            return cls.loose(min_containment_length=min_containment_length, similarity_threshold=similarity_threshold)
        if name == STRICT:
            return cls.strict(min_containment_length=min_containment_length)
        raise ValueError(f"unknown match policy: {name!r}")


@dataclass(frozen=True, slots=True)
class VariantIndex:
    """Precomputed variants for one lexicon category."""

    words: frozenset[str]
    exact: Mapping[str, str]
    variants: tuple[str, ...]

    @classmethod
    def build(cls, words: Iterable[str]) -> "VariantIndex":
        return _index_for(frozenset(words))

    def source_word(self, variant: str) -> str | None:
        return self.exact.get(variant)

    def __len__(self) -> int:
        return len(self.words)


@lru_cache(maxsize=64)
def _index_for(words: frozenset[str]) -> VariantIndex:
    exact: dict[str, str] = {}
    for word in sorted(words):
        for variant in variants_of(word):
            exact.setdefault(variant, word)
    # Longest first so containment hits the most specific variant early.
    ordered = tuple(sorted(exact, key=lambda value: (-len(value), value)))
    return VariantIndex(words=words, exact=exact, variants=ordered)


EMPTY_INDEX = VariantIndex(words=frozenset(), exact={}, variants=())


def tokenize(normalized_text: str) -> list[str]:
    """Whitespace tokens plus each run of 2+ single-character tokens joined up.

    The joined runs catch spaced-out words such as ``"s t u p i d"``.
    """

    tokens = normalized_text.split()
    result = list(tokens)
    run: list[str] = []
    for token in [*tokens, ""]:
        if len(token) == 1:
            run.append(token)
            continue
        if len(run) >= 2:
            result.append("".join(run))
        run = []
    return result


class FuzzyMatcher:
    """Finds tokens of a normalized message that hit a lexicon."""

    def __init__(self, policy: MatchPolicy | None = None) -> None:
        self.policy = policy or MatchPolicy.strict()

    def find_matches(self, normalized_text: str, lexicon: VariantIndex | Iterable[str]) -> list[str]:
        index = lexicon if isinstance(lexicon, VariantIndex) else VariantIndex.build(lexicon)
        if not index.words or not normalized_text:
            return []
        found: dict[str, None] = {}
        for token in tokenize(normalized_text):
            if token in found:
                continue
            if self.matches_token(token, index):
                found[token] = None
        return list(found)

    def matches_token(self, token: str, index: VariantIndex) -> bool:
        if token in index.words or token in index.exact:
            return True
        policy = self.policy
        threshold = policy.similarity_threshold
        for variant in index.variants:
            if len(variant) >= policy.min_containment_length and len(token) > len(variant) and variant in token:
                return True
            if (
                policy.symmetric_containment
                and len(token) >= policy.min_containment_length
                and len(variant) > len(token)
                and token in variant
            ):
                return True
            if threshold is not None and _within_similarity(token, variant, threshold):
                return True
        return False


def _within_similarity(token: str, variant: str, threshold: float) -> bool:
    shorter, longer = sorted((len(token), len(variant)))
    # Edit distance is at least the length gap, so skip hopeless pairs cheaply.
    if longer == 0 or shorter / longer < threshold:
        return False
    return similarity(token, variant) >= threshold
