"""
Retention Sweeper

Deletes expired entries (expires_at <= now) in committed batches and reports
which cells lost entries so their aggregates can be recomputed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from models import EmotionEntry
from services.cell_aggregation import as_utc
from services.recompute_scheduler import mark_cell_pending

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    removed: int = 0
    affected_cells: Set[str] = field(default_factory=set)


def sweep_expired_entries(db: Session, now: Optional[datetime] = None,
                          batch_size: Optional[int] = None) -> SweepResult:
    """
    Remove every entry expired at `now`.

    Each batch is committed on its own, so a failure midway keeps the work
    already done; the next sweep resumes from what is left. Cells of the
    batches committed before a failure are parked in the pending set before
    the error propagates, since a retried sweep can no longer see them.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    size = batch_size or settings.SWEEP_BATCH_SIZE
    result = SweepResult()

    try:
        while True:
            batch = db.execute(
                select(EmotionEntry.id, EmotionEntry.cell_id)
                .where(EmotionEntry.expires_at.is_not(None), EmotionEntry.expires_at <= now)
                .order_by(EmotionEntry.expires_at, EmotionEntry.id)
                .limit(size)
            ).all()
            if not batch:
                break

            ids = [row.id for row in batch]
            db.execute(
                delete(EmotionEntry)
                .where(EmotionEntry.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            db.commit()

            result.removed += len(ids)
            result.affected_cells.update(row.cell_id for row in batch)

            if len(batch) < size:
                break
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Retention sweep failed after removing {result.removed} entries: {e}",
            extra={"extra_fields": {"removed": result.removed, "cells": len(result.affected_cells)}},
        )
        for cell_id in result.affected_cells:
            mark_cell_pending(cell_id)
        raise

    if result.removed:
        logger.info(
            f"Swept {result.removed} expired entries across {len(result.affected_cells)} cells",
            extra={"extra_fields": {"removed": result.removed, "cells": len(result.affected_cells)}},
        )
    return result
