"""
Emotion Submission Service

Validates, rate-limits, persists and removes emotion entries, and asks the
scheduler for a recompute of the touched cell after every commit.

Limits (checked in this order):
1. Per-cell daily cap: EMOTION_SUBMISSIONS_PER_CELL_PER_DAY entries per
   user per cell per calendar day (day boundary in SUBMISSION_DAY_TIMEZONE)
2. Hourly cap: EMOTION_SUBMISSIONS_PER_HOUR entries per user across all
   cells in the trailing hour

Both counts run under a row lock on the submitting user (SELECT ... FOR
UPDATE), so concurrent submissions by one user are checked one at a time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ForbiddenError, NotFoundError, RateLimitError, StoreError, ValidationError
from models import EmotionEntry, User
from services import spatial_index
from services.cell_aggregation import as_utc, live_entries_clause
from services.emotion_catalog import DEFAULT_CATALOG, EmotionCatalog, Visibility, kind_key
from services.recompute_scheduler import mark_cell_pending, schedule_cell_recompute

logger = logging.getLogger(__name__)

MAX_TAGS = 10
MAX_TAG_LENGTH = 32
MAX_NOTE_LENGTH = 280
MIN_TTL_HOURS = 1
MAX_TTL_HOURS = 168  # One week

CELL_ENTRIES_DEFAULT_LIMIT = 20
CELL_ENTRIES_MAX_LIMIT = 50
USER_ENTRIES_DEFAULT_LIMIT = 50
USER_ENTRIES_MAX_LIMIT = 100


@dataclass
class EmotionSubmission:
    cell_id: str
    emotion: str
    intensity: int
    note: Optional[str] = None
    tags: Sequence[str] = field(default_factory=list)
    dwell_seconds: int = 0
    gps_accuracy: int = 10
    visibility: str = Visibility.PUBLIC.value
    ttl_hours: Optional[int] = None
    volatile: bool = False


def _validate(submission: EmotionSubmission, catalog: EmotionCatalog) -> List[str]:
    """Raise ValidationError on the first bad field; return the cleaned tags."""
    if not spatial_index.is_valid_cell(submission.cell_id):
        raise ValidationError(f"Invalid H3 index: {submission.cell_id}", field="cell_id")

    if settings.ENFORCE_SUBMISSION_RESOLUTION:
        resolution = spatial_index.cell_resolution(submission.cell_id)
        if resolution != settings.SPATIAL_RESOLUTION:
            raise ValidationError(
                f"Cell resolution {resolution} does not match required {settings.SPATIAL_RESOLUTION}",
                field="cell_id",
            )

    if submission.emotion not in catalog:
        raise ValidationError(f"Unknown emotion: {submission.emotion}", field="emotion")

    if not 0 <= submission.intensity <= 100:
        raise ValidationError("Intensity must be between 0 and 100", field="intensity")

    if submission.dwell_seconds < 0:
        raise ValidationError("Dwell seconds must be non-negative", field="dwell_seconds")

    if submission.gps_accuracy < 1:
        raise ValidationError("GPS accuracy must be at least 1 meter", field="gps_accuracy")

    if submission.note is not None and len(submission.note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"Note must be at most {MAX_NOTE_LENGTH} characters", field="note")

    if kind_key(submission.visibility) not in (Visibility.PUBLIC.value, Visibility.PRIVATE.value):
        raise ValidationError(f"Invalid visibility: {submission.visibility}", field="visibility")

    tags = list(dict.fromkeys(submission.tags or []))
    if len(tags) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags allowed", field="tags")
    for tag in tags:
        if not tag or len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tags must be 1-{MAX_TAG_LENGTH} characters", field="tags")

    return tags


def start_of_day(now: datetime, tz_name: Optional[str] = None) -> datetime:
    """Midnight of `now`'s calendar day in tz_name, expressed in UTC."""
    tz = ZoneInfo(tz_name or settings.SUBMISSION_DAY_TIMEZONE)
    local = as_utc(now).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def submitter_lock(user_id: UUID):
    """Row lock on the submitting user; serializes that user's limit checks."""
    return select(User.id).where(User.id == user_id).with_for_update()


def _enforce_limits(db: Session, user_id: UUID, cell_id: str, now: datetime) -> None:
    per_cell_limit = settings.EMOTION_SUBMISSIONS_PER_CELL_PER_DAY
    today_in_cell = db.scalar(
        select(func.count(EmotionEntry.id)).where(
            EmotionEntry.user_id == user_id,
            EmotionEntry.cell_id == cell_id,
            EmotionEntry.created_at >= start_of_day(now),
        )
    )
    if today_in_cell >= per_cell_limit:
        raise RateLimitError(
            "per_cell_daily", per_cell_limit, "day",
            detail=f"Maximum {per_cell_limit} emotions per location per day",
        )

    hourly_limit = settings.EMOTION_SUBMISSIONS_PER_HOUR
    last_hour = db.scalar(
        select(func.count(EmotionEntry.id)).where(
            EmotionEntry.user_id == user_id,
            EmotionEntry.created_at > now - timedelta(hours=1),
        )
    )
    if last_hour >= hourly_limit:
        raise RateLimitError(
            "hourly", hourly_limit, "hour",
            detail=f"Maximum {hourly_limit} emotions per hour",
        )


def resolve_ttl_hours(ttl_hours: Optional[int], volatile: bool) -> Optional[int]:
    """Clamp an explicit TTL to 1-168h; volatile entries get the default TTL."""
    if ttl_hours is not None:
        return max(MIN_TTL_HOURS, min(MAX_TTL_HOURS, ttl_hours))
    if volatile and settings.ENABLE_VOLATILITY:
        return max(MIN_TTL_HOURS, min(MAX_TTL_HOURS, settings.VOLATILE_TTL_HOURS_DEFAULT))
    return None


def _request_recompute(cell_id: str) -> None:
    try:
        schedule_cell_recompute(cell_id)
    except Exception as e:
        logger.error(f"Recompute scheduling failed for cell {cell_id}: {e}")
        mark_cell_pending(cell_id)


def submit_emotion(
    db: Session,
    user_id: UUID,
    submission: EmotionSubmission,
    now: Optional[datetime] = None,
    catalog: EmotionCatalog = DEFAULT_CATALOG,
) -> EmotionEntry:
    """
    Validate and persist one emotion entry, then schedule its cell's recompute.

    Raises ValidationError, RateLimitError, or StoreError when the write fails.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    tags = _validate(submission, catalog)

    try:
        # Held until the commit or rollback below.
        db.execute(submitter_lock(user_id))
        _enforce_limits(db, user_id, submission.cell_id, now)

        ttl_hours = resolve_ttl_hours(submission.ttl_hours, submission.volatile)
        entry = EmotionEntry(
            user_id=user_id,
            cell_id=submission.cell_id,
            emotion=kind_key(submission.emotion),
            intensity=submission.intensity,
            valence=catalog.valence_for(submission.emotion),
            note=submission.note,
            tags=tags,
            dwell_seconds=submission.dwell_seconds,
            gps_accuracy=submission.gps_accuracy,
            visibility=kind_key(submission.visibility),
            ttl_hours=ttl_hours,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours) if ttl_hours is not None else None,
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist emotion for user {user_id}: {e}")
        raise StoreError() from e
    except RateLimitError:
        db.rollback()
        raise

    logger.info(
        f"Emotion {entry.emotion} recorded in cell {entry.cell_id}",
        extra={"extra_fields": {"user_id": str(user_id), "cell_id": entry.cell_id, "entry_id": str(entry.id)}},
    )
    _request_recompute(entry.cell_id)
    return entry


def delete_emotion(db: Session, user_id: UUID, entry_id: UUID) -> str:
    """Delete the caller's own entry and schedule a recompute. Returns the cell id."""
    entry = db.get(EmotionEntry, entry_id)
    if entry is None:
        raise NotFoundError("Emotion", str(entry_id))
    if entry.user_id != user_id:
        raise ForbiddenError("You can only delete your own emotions")

    cell_id = entry.cell_id
    try:
        db.delete(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete emotion {entry_id}: {e}")
        raise StoreError() from e

    logger.info(f"Emotion {entry_id} deleted from cell {cell_id}")
    _request_recompute(cell_id)
    return cell_id


def _clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(maximum, limit))


def list_cell_entries(
    db: Session,
    cell_id: str,
    viewer_id: Optional[UUID] = None,
    include_private: bool = False,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[EmotionEntry]:
    """Live entries of a cell, newest first. Private entries only for their owner."""
    if not spatial_index.is_valid_cell(cell_id):
        raise ValidationError(f"Invalid H3 index: {cell_id}", field="cell_id")
    now = as_utc(now or datetime.now(timezone.utc))

    visible = EmotionEntry.visibility == Visibility.PUBLIC.value
    if include_private and viewer_id is not None:
        visible = or_(visible, EmotionEntry.user_id == viewer_id)

    stmt = (
        select(EmotionEntry)
        .where(EmotionEntry.cell_id == cell_id, live_entries_clause(now), visible)
        .order_by(EmotionEntry.created_at.desc(), EmotionEntry.id.desc())
        .limit(_clamp_limit(limit, CELL_ENTRIES_DEFAULT_LIMIT, CELL_ENTRIES_MAX_LIMIT))
    )
    return list(db.scalars(stmt))


def list_user_entries(
    db: Session,
    user_id: UUID,
    cell_id: Optional[str] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[EmotionEntry]:
    """The user's own live entries, newest first, optionally for one cell."""
    now = as_utc(now or datetime.now(timezone.utc))
    stmt = select(EmotionEntry).where(EmotionEntry.user_id == user_id, live_entries_clause(now))
    if cell_id is not None:
        stmt = stmt.where(EmotionEntry.cell_id == cell_id)
    stmt = (
        stmt.order_by(EmotionEntry.created_at.desc(), EmotionEntry.id.desc())
        .limit(_clamp_limit(limit, USER_ENTRIES_DEFAULT_LIMIT, USER_ENTRIES_MAX_LIMIT))
    )
    return list(db.scalars(stmt))
