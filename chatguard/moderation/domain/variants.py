"""Obfuscated surface forms of lexicon words."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Mapping

# One substitution per generated variant; positions are never combined.
CHAR_SUBSTITUTIONS: Mapping[str, tuple[str, ...]] = {
    "a": ("4", "@"),
    "e": ("3",),
    "i": ("1", "!"),
    "o": ("0",),
    "s": ("5", "$"),
    "t": ("7",),
    "l": ("1",),
    "b": ("8",),
    "g": ("9",),
    "z": ("2",),
}

WORD_ABBREVIATIONS: Mapping[str, tuple[str, ...]] = {
    "you": ("u", "yu"),
    "are": ("r", "ur"),
    "why": ("y",),
    "your": ("ur", "yr"),
    "please": ("plz", "pls"),
    "because": ("cuz", "bcuz", "bc"),
}

_REPEAT_RE = re.compile(r"(.)\1+")


def substitution_variants(word: str) -> set[str]:
    variants: set[str] = set()
    for idx, char in enumerate(word):
        for substitute in CHAR_SUBSTITUTIONS.get(char, ()):
            variants.add(word[:idx] + substitute + word[idx + 1 :])
    return variants


def collapse_repeats(word: str) -> str:
    return _REPEAT_RE.sub(r"\1", word)


@lru_cache(maxsize=8192)
def variants_of(word: str) -> frozenset[str]:
    """Return ``word`` together with its abbreviation, leetspeak, de-duplicated,
    dotted and spaced renderings."""

    variants = {word}
    variants.update(WORD_ABBREVIATIONS.get(word, ()))
    variants.update(substitution_variants(word))
    variants.add(collapse_repeats(word))
    if word:
        variants.add(".".join(word))
        variants.add(" ".join(word))
    return frozenset(variants)
