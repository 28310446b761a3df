"""
Recompute Scheduler

Coalesces bursts of submissions/deletions in one cell into a single
aggregate recompute:
- Debounce: first event per cell sets a Redis key (NX, TTL = window) and
  enqueues the Celery task with countdown = window. Later events inside
  the window are absorbed; the task fetches after they have committed.
- Pending set: cells whose enqueue failed (broker or Redis down) are
  parked and drained by the flush_pending_recomputes beat task.

A failure here never fails the user request: the caller's commit already
happened and the entry will be picked up by the next recompute.
"""

import logging
from typing import List

from core.cache import get_redis_client
from core.config import settings

logger = logging.getLogger(__name__)

PENDING_SET_KEY = "emotion_recompute:pending"
DRAIN_BATCH_SIZE = 500


def _debounce_key(cell_id: str) -> str:
    return f"emotion_recompute:debounce:{cell_id}"


def _window_ms() -> int:
    return max(1, int(settings.RECOMPUTE_DEBOUNCE_SECONDS * 1000))


def _enqueue(cell_id: str, countdown: float) -> None:
    from tasks.aggregation_tasks import recompute_cell_aggregate_task

    recompute_cell_aggregate_task.apply_async(args=[cell_id], countdown=countdown)


def schedule_cell_recompute(cell_id: str) -> bool:
    """
    Request an eventual recompute of cell_id.

    Returns True when a task was enqueued, False when the request was
    coalesced into an in-flight window or parked in the pending set.
    """
    window = settings.RECOMPUTE_DEBOUNCE_SECONDS
    r = get_redis_client()

    if r is not None:
        try:
            acquired = r.set(_debounce_key(cell_id), "1", nx=True, px=_window_ms())
        except Exception as e:
            logger.warning(f"Redis debounce error for cell {cell_id}: {e}")
            acquired = True  # Fail open: enqueue without coalescing
        if not acquired:
            logger.debug(f"Recompute for {cell_id} coalesced into pending window")
            return False

    try:
        _enqueue(cell_id, window)
    except Exception as e:
        logger.error(f"Failed to enqueue recompute for cell {cell_id}: {e}")
        mark_cell_pending(cell_id)
        if r is not None:
            try:
                r.delete(_debounce_key(cell_id))
            except Exception:
                logger.debug(f"Could not clear debounce key for {cell_id}")
        return False

    logger.debug(f"Recompute enqueued for {cell_id} (countdown={window}s)")
    return True


def mark_cell_pending(cell_id: str) -> bool:
    """Park cell_id for the next flush. Returns False if Redis is unavailable."""
    r = get_redis_client()
    if r is None:
        logger.warning(f"Recompute for cell {cell_id} dropped: Redis unavailable")
        return False
    try:
        r.sadd(PENDING_SET_KEY, cell_id)
        return True
    except Exception as e:
        logger.warning(f"Failed to park recompute for cell {cell_id}: {e}")
        return False


def drain_pending_cells(limit: int = DRAIN_BATCH_SIZE) -> List[str]:
    """Pop up to `limit` parked cells."""
    r = get_redis_client()
    if r is None:
        return []
    try:
        cells = r.spop(PENDING_SET_KEY, limit)
    except Exception as e:
        logger.warning(f"Failed to drain pending recomputes: {e}")
        return []
    return list(cells or [])
