"""Translation of Redis client failures into moderation store errors."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from redis.exceptions import RedisError

from chatguard.moderation.domain.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(store: str, op: str) -> Iterator[None]:
    """Re-raise connection and protocol failures as :class:`StoreUnavailableError`."""
    try:
        yield
    except (RedisError, OSError) as exc:
        logger.debug("redis call failed", extra={"store": store, "op": op, "error": str(exc)})
        raise StoreUnavailableError() from exc
