"""Exceptions raised inside the moderation engine.

Services catch these at their public boundary and report them as result values;
callers of ``classify``/``handle_violation`` never see them raised. Admin
operations (listing, review) let them propagate.
"""

from __future__ import annotations


class ModerationError(Exception):
    """Base class for moderation engine errors."""

    detail: str = "moderation_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class StoreUnavailableError(ModerationError):
    """A backing store call failed in a way that may succeed on retry."""

    detail = "store_unavailable"


class StoreTimeoutError(StoreUnavailableError):
    """A backing store call exceeded its deadline."""

    detail = "store_timeout"


class SanctionConflictError(ModerationError):
    """Optimistic write on a sanction record kept colliding with other writers."""

    detail = "sanction_conflict"


class SanctionDataError(ModerationError):
    """A stored sanction record exists but could not be decoded."""

    detail = "sanction_malformed"


class ViolationNotFoundError(ModerationError):
    """No violation with the requested id exists in the ledger."""

    detail = "violation_not_found"
