"""Text canonicalisation applied before lexicon matching."""

from __future__ import annotations

import re

LEET_SYMBOLS = "@$!"

_STRIP_RE = re.compile(r"[^a-z0-9\s]")
_STRIP_KEEP_LEET_RE = re.compile(r"[^a-z0-9\s@$!]")
_WHITESPACE_RE = re.compile(r"\s+")


def _canonicalise(value: str | None, pattern: re.Pattern[str]) -> str:
    if not value:
        return ""
    stripped = pattern.sub("", value.lower())
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def normalize(text: str | None) -> str:
    """Lowercase, drop everything outside ``[a-z0-9\\s]`` and collapse whitespace.

    Total and idempotent: ``normalize(normalize(x)) == normalize(x)``.
    """

    return _canonicalise(text, _STRIP_RE)


def normalize_preserving_symbols(text: str | None) -> str:
    """Like :func:`normalize` but keeps the leetspeak symbols ``@``, ``$`` and ``!``."""

    return _canonicalise(text, _STRIP_KEEP_LEET_RE)
