"""
Aggregation Celery Tasks

- recompute_cell_aggregate: debounced per-cell recompute (enqueued by
  services.recompute_scheduler)
- sweep_expired_entries: beat task; retention sweep then recompute the
  affected cells
- flush_pending_recomputes: beat task; recompute cells parked after an
  enqueue failure or exhausted retries

Task contract:
- Idempotent: recompute is a pure function of the persisted entry set
- Retry: up to 3 attempts with exponential backoff on store errors
- Exhausted retries park the cell in the pending set
"""

import logging
from typing import Dict, Optional

from celery import Task
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasks import celery_app
from core.database import get_db_sync
from services.cell_aggregation import bulk_recompute, recompute_cell_aggregate
from services.recompute_scheduler import drain_pending_cells, mark_cell_pending, schedule_cell_recompute
from services.retention_sweeper import sweep_expired_entries

logger = logging.getLogger(__name__)


class RecomputeTask(Task):
    """Parks the cell for the next flush once retries are exhausted."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        cell_id = args[0] if args else kwargs.get("cell_id")
        logger.error(f"Recompute for cell {cell_id} failed after retries: {exc}")
        if cell_id:
            mark_cell_pending(cell_id)


@celery_app.task(
    name="tasks.recompute_cell_aggregate",
    base=RecomputeTask,
    bind=True,
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_backoff_max=60,
    max_retries=3,
)
def recompute_cell_aggregate_task(self: Task, cell_id: str) -> Dict:
    db: Optional[Session] = None
    try:
        db = get_db_sync()
        aggregate = recompute_cell_aggregate(db, cell_id)
        if aggregate is None:
            return {"status": "removed", "cell_id": cell_id}
        return {"status": "updated", "cell_id": cell_id, "entry_count": aggregate.entry_count}
    except SQLAlchemyError as e:
        if db:
            db.rollback()
        logger.warning(f"Recompute for cell {cell_id} hit a store error (attempt {self.request.retries + 1}): {e}")
        raise
    finally:
        if db:
            db.close()


@celery_app.task(
    name="tasks.sweep_expired_entries",
    bind=True,
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_backoff_max=60,
    max_retries=3,
)
def sweep_expired_entries_task(self: Task) -> Dict:
    """
    Celery beat task: delete expired entries, then schedule a recompute
    for every cell that lost entries.
    Runs every SWEEP_INTERVAL_MINUTES via celerybeat_schedule.
    """
    db: Optional[Session] = None
    try:
        db = get_db_sync()
        result = sweep_expired_entries(db)
    finally:
        if db:
            db.close()

    scheduled = 0
    for cell_id in sorted(result.affected_cells):
        if schedule_cell_recompute(cell_id):
            scheduled += 1

    logger.info(f"Retention sweep: {result.removed} removed, {scheduled}/{len(result.affected_cells)} recomputes enqueued")
    return {"status": "success", "removed": result.removed, "cells": len(result.affected_cells)}


@celery_app.task(name="tasks.flush_pending_recomputes", bind=True)
def flush_pending_recomputes(self: Task) -> Dict:
    """
    Celery beat task: recompute parked cells in-process.
    Cells that fail again are parked for the next pass.
    """
    cells = drain_pending_cells()
    if not cells:
        return {"status": "success", "recomputed": 0}

    db: Optional[Session] = None
    try:
        db = get_db_sync()
        outcomes = bulk_recompute(db, cells)
    finally:
        if db:
            db.close()

    failed = [cell_id for cell_id, outcome in outcomes.items() if outcome == "error"]
    for cell_id in failed:
        mark_cell_pending(cell_id)

    logger.info(f"Flushed {len(cells)} pending recomputes ({len(failed)} re-parked)")
    return {"status": "success", "recomputed": len(cells) - len(failed), "failed": len(failed)}
