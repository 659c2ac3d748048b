"""Clear the blocked flag on records whose block has lapsed."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from chatguard.moderation.domain.sanctions import SanctionsService
from chatguard.obs import metrics

logger = logging.getLogger(__name__)

_JOB_NAME = "sanction-sweep"


async def run(service: SanctionsService, *, now: datetime | None = None) -> int:
    """Release every lapsed block known to the repository; returns how many were released."""

    now = now or datetime.now(timezone.utc)
    started = time.perf_counter()
    result = "success"
    released = 0
    try:
        for record in await service.list_blocked():
            if record.block_lapsed(now) and await service.release_lapsed(record.user_id, now=now):
                released += 1
    except Exception:
        result = "error"
        raise
    finally:
        metrics.record_job(_JOB_NAME, result=result, duration_seconds=time.perf_counter() - started)
    if released:
        logger.info("lapsed blocks released", extra={"released": released})
    return released
