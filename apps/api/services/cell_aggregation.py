"""
Cell Aggregation Engine

Turns the live emotion entries of one H3 cell into the summary served to
the map:
- Weighting: exponential recency decay x user trust x reported presence
- Distribution and dominant emotion over weighted kind totals
- Coherence: 1 - normalized Shannon entropy of the distribution
- Trend: raw valence shift between the last week and the 8-30 day window

aggregate_cell_entries() is pure: entries, a trust lookup, parameters and
`now` in; a CellSummary (or None) out. recompute_cell_aggregate() wraps it
with the store: stream live entries, then upsert or delete the row.

Policies:
- Dominant-emotion ties go to the kind encountered first while iterating.
  The store feeds entries ordered by (created_at, id); callers passing
  their own iterables must not expect stability across re-ordered input.
- A single weighted kind has coherence 1.0 (entropy ratio is undefined).
- Zero total weight (e.g. every entry reported zero dwell) is treated as
  an empty cell: no aggregate is stored.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from core.config import settings
from models import EmotionAggregate, EmotionEntry, User

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
PRESENCE_FULL_SECONDS = 300.0  # Dwell giving a presence weight of 1.0
PRESENCE_CAP = 2.0
RECENT_WINDOW_DAYS = 7.0
TREND_WINDOW_DAYS = 30.0
TREND_SCALE = 2.0
DEFAULT_TRUST = 1.0


@dataclass(frozen=True)
class AggregationParams:
    half_life_days: float = 30.0
    trust_min: float = 0.5
    trust_max: float = 1.5

    @classmethod
    def from_settings(cls) -> "AggregationParams":
        return cls(
            half_life_days=settings.HALF_LIFE_DAYS,
            trust_min=settings.TRUST_MIN,
            trust_max=settings.TRUST_MAX,
        )

    @property
    def decay_lambda(self) -> float:
        return math.log(2) / self.half_life_days


@dataclass(frozen=True)
class EntrySample:
    """The fields of an entry the engine reads."""
    user_id: UUID
    emotion: str
    valence: float
    intensity: int
    dwell_seconds: int
    created_at: datetime


@dataclass
class CellSummary:
    dominant_emotion: str
    mean_valence: float
    mean_intensity: float
    distribution: Dict[str, float]
    coherence: float
    trend: float
    entry_count: int
    last_entry_at: datetime


TrustLookup = Callable[[UUID], Optional[float]]


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def age_days(created_at: datetime, now: datetime) -> float:
    """Age in days, floored at zero for entries stamped slightly in the future."""
    return max(0.0, (as_utc(now) - as_utc(created_at)).total_seconds() / SECONDS_PER_DAY)


def recency_weight(age: float, params: AggregationParams) -> float:
    """exp(-lambda * age); halves every half_life_days."""
    return math.exp(-params.decay_lambda * age)


def presence_weight(dwell_seconds: int) -> float:
    """Linear in dwell up to 5 minutes, capped at 2x."""
    return min(max(dwell_seconds, 0) / PRESENCE_FULL_SECONDS, PRESENCE_CAP)


def clamp_trust(reputation: Optional[float], params: AggregationParams) -> float:
    value = DEFAULT_TRUST if reputation is None else reputation
    return min(max(value, params.trust_min), params.trust_max)


def entry_weight(sample: EntrySample, trust: float, now: datetime,
                 params: AggregationParams) -> float:
    return (
        recency_weight(age_days(sample.created_at, now), params)
        * trust
        * presence_weight(sample.dwell_seconds)
    )


def coherence_from_weights(kind_weights: Sequence[float]) -> float:
    """
    1 - H/H_max over the nonzero weights.

    One (or no) weighted kind is fully coherent by definition.
    """
    weights = [w for w in kind_weights if w > 0]
    if len(weights) <= 1:
        return 1.0
    total = sum(weights)
    entropy = 0.0
    for w in weights:
        p = w / total
        entropy -= p * math.log2(p)
    max_entropy = math.log2(len(weights))
    return min(1.0, max(0.0, 1.0 - entropy / max_entropy))


def trend_from_windows(recent_sum: float, recent_count: int,
                       older_sum: float, older_count: int) -> float:
    """
    Raw (unweighted) valence shift, recent minus older, scaled x2 and
    clamped to [-1, 1]. Zero when either window is empty.
    """
    if not recent_count or not older_count:
        return 0.0
    shift = recent_sum / recent_count - older_sum / older_count
    return max(-1.0, min(1.0, shift * TREND_SCALE))


@dataclass
class _Accumulator:
    total_weight: float = 0.0
    weighted_valence: float = 0.0
    weighted_intensity: float = 0.0
    # Insertion order is first-encountered order; the tie-break relies on it.
    kind_weight: Dict[str, float] = field(default_factory=dict)
    recent_valence_sum: float = 0.0
    recent_count: int = 0
    older_valence_sum: float = 0.0
    older_count: int = 0
    entry_count: int = 0
    last_entry_at: Optional[datetime] = None


def aggregate_cell_entries(
    entries: Iterable[EntrySample],
    trust_lookup: TrustLookup,
    now: datetime,
    params: AggregationParams,
) -> Optional[CellSummary]:
    """
    Summarize one cell's live entries.

    `entries` must already be filtered to live entries; it is consumed once,
    so a streaming iterator is fine. Returns None when there are no entries
    or their total weight is zero.
    """
    acc = _Accumulator()

    for sample in entries:
        age = age_days(sample.created_at, now)
        weight = entry_weight(sample, clamp_trust(trust_lookup(sample.user_id), params), now, params)

        acc.entry_count += 1
        acc.total_weight += weight
        acc.weighted_valence += sample.valence * weight
        acc.weighted_intensity += sample.intensity * weight
        acc.kind_weight[sample.emotion] = acc.kind_weight.get(sample.emotion, 0.0) + weight

        if age <= RECENT_WINDOW_DAYS:
            acc.recent_valence_sum += sample.valence
            acc.recent_count += 1
        elif age <= TREND_WINDOW_DAYS:
            acc.older_valence_sum += sample.valence
            acc.older_count += 1

        created = as_utc(sample.created_at)
        if acc.last_entry_at is None or created > acc.last_entry_at:
            acc.last_entry_at = created

    if acc.entry_count == 0:
        return None

    if acc.total_weight <= 0.0:
        logger.debug(f"Zero total weight across {acc.entry_count} entries; treating cell as empty")
        return None

    # Strict '>' keeps the first-encountered kind on ties.
    dominant = None
    dominant_weight = -1.0
    for kind, weight in acc.kind_weight.items():
        if weight > dominant_weight:
            dominant, dominant_weight = kind, weight

    kind_total = sum(acc.kind_weight.values())
    distribution = {
        kind: 100.0 * weight / kind_total
        for kind, weight in acc.kind_weight.items()
        if weight > 0
    }

    trend = trend_from_windows(
        acc.recent_valence_sum, acc.recent_count,
        acc.older_valence_sum, acc.older_count,
    )

    return CellSummary(
        dominant_emotion=dominant,
        mean_valence=acc.weighted_valence / acc.total_weight,
        mean_intensity=acc.weighted_intensity / acc.total_weight,
        distribution=distribution,
        coherence=coherence_from_weights(list(acc.kind_weight.values())),
        trend=trend,
        entry_count=acc.entry_count,
        last_entry_at=acc.last_entry_at,
    )


# ---------------------------------------------------------------------------
# Store side
# ---------------------------------------------------------------------------

def live_entries_clause(now: datetime):
    """SQL filter for entries that have not expired at `now`."""
    return or_(EmotionEntry.expires_at.is_(None), EmotionEntry.expires_at > now)


def load_trust_lookup(db: Session, cell_id: str, now: datetime) -> TrustLookup:
    """Reputation of every user with a live entry in the cell, keyed by id."""
    contributors = (
        select(EmotionEntry.user_id)
        .where(EmotionEntry.cell_id == cell_id, live_entries_clause(now))
        .distinct()
    )
    rows = db.execute(
        select(User.id, User.reputation).where(User.id.in_(contributors))
    ).all()
    reputations = {row.id: row.reputation for row in rows}
    return reputations.get


def iter_live_entries(db: Session, cell_id: str, now: datetime,
                      batch_size: Optional[int] = None) -> Iterable[EntrySample]:
    """Stream the cell's live entries ordered by (created_at, id) in batches."""
    stmt = (
        select(
            EmotionEntry.user_id,
            EmotionEntry.emotion,
            EmotionEntry.valence,
            EmotionEntry.intensity,
            EmotionEntry.dwell_seconds,
            EmotionEntry.created_at,
        )
        .where(EmotionEntry.cell_id == cell_id, live_entries_clause(now))
        .order_by(EmotionEntry.created_at, EmotionEntry.id)
        .execution_options(yield_per=batch_size or settings.AGGREGATION_FETCH_BATCH_SIZE)
    )
    for row in db.execute(stmt):
        yield EntrySample(
            user_id=row.user_id,
            emotion=row.emotion,
            valence=row.valence,
            intensity=row.intensity,
            dwell_seconds=row.dwell_seconds,
            created_at=row.created_at,
        )


def _upsert_aggregate(db: Session, cell_id: str, summary: CellSummary, now: datetime) -> None:
    values = {
        "cell_id": cell_id,
        "dominant_emotion": summary.dominant_emotion,
        "mean_valence": summary.mean_valence,
        "mean_intensity": summary.mean_intensity,
        "distribution": summary.distribution,
        "coherence": summary.coherence,
        "trend": summary.trend,
        "entry_count": summary.entry_count,
        "last_entry_at": summary.last_entry_at,
        "updated_at": now,
    }

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for aggregate upsert: {dialect}")

    stmt = insert(EmotionAggregate).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[EmotionAggregate.cell_id],
        set_={k: stmt.excluded[k] for k in values if k != "cell_id"},
    )
    db.execute(stmt)


def recompute_cell_aggregate(
    db: Session,
    cell_id: str,
    now: Optional[datetime] = None,
    params: Optional[AggregationParams] = None,
) -> Optional[EmotionAggregate]:
    """
    Recompute and persist the aggregate for one cell.

    Upserts the row, or deletes it when the cell has no live weighted
    entries (returning None). Commits its own transaction. Store errors
    propagate; nothing is written on a failed fetch.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    params = params or AggregationParams.from_settings()

    trust_lookup = load_trust_lookup(db, cell_id, now)
    summary = aggregate_cell_entries(iter_live_entries(db, cell_id, now), trust_lookup, now, params)

    if summary is None:
        result = db.execute(delete(EmotionAggregate).where(EmotionAggregate.cell_id == cell_id))
        db.commit()
        if result.rowcount:
            logger.info(f"Removed aggregate for cell {cell_id} (no live entries)")
        return None

    _upsert_aggregate(db, cell_id, summary, now)
    db.commit()

    logger.info(
        f"Updated aggregate for {cell_id}: {summary.dominant_emotion} "
        f"({summary.entry_count} entries, coherence={summary.coherence:.3f})",
        extra={"extra_fields": {"cell_id": cell_id, "entry_count": summary.entry_count}},
    )
    aggregate = db.get(EmotionAggregate, cell_id, populate_existing=True)
    return aggregate


def bulk_recompute(db: Session, cell_ids: Iterable[str],
                   now: Optional[datetime] = None) -> Dict[str, str]:
    """
    Recompute several cells in sequence.

    Returns {cell_id: "updated" | "removed" | "error"}; one failing cell
    does not stop the others.
    """
    outcomes: Dict[str, str] = {}
    for cell_id in dict.fromkeys(cell_ids):
        try:
            aggregate = recompute_cell_aggregate(db, cell_id, now=now)
            outcomes[cell_id] = "updated" if aggregate is not None else "removed"
        except Exception as e:
            db.rollback()
            logger.error(f"Bulk recompute failed for cell {cell_id}: {e}")
            outcomes[cell_id] = "error"
    logger.info(f"Bulk recomputed {len(outcomes)} cells")
    return outcomes
