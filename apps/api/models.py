from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey, Text, String, Index, CheckConstraint
from sqlalchemy.types import JSON
from sqlalchemy.dialects.postgresql import UUID, JSONB
from core.database import Base
import uuid
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite test runs).
JSONType = JSONB().with_variant(JSON(), "sqlite")


class User(Base):
    __tablename__ = "app_user"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)
    role = Column(Text, default="user", nullable=False)  # 'user', 'admin'
    # Reputation scalar owned by the account lifecycle. Read here only as a
    # weighting input; clamped to [TRUST_MIN, TRUST_MAX] at aggregation time.
    reputation = Column(Float, default=1.0, nullable=False)


class EmotionEntry(Base):
    """
    One user's emotion observation pinned to one H3 cell.

    Immutable once created. Removed by owner delete or by the retention
    sweeper after expires_at.
    """
    __tablename__ = "emotion_entry"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False)
    cell_id = Column(String(16), nullable=False)
    emotion = Column(Text, nullable=False)  # EmotionKind value
    intensity = Column(Integer, nullable=False)  # 0-100
    valence = Column(Float, nullable=False)  # Frozen from the catalog at creation
    note = Column(Text, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    dwell_seconds = Column(Integer, nullable=False, default=0)
    gps_accuracy = Column(Integer, nullable=False, default=10)  # meters
    visibility = Column(Text, nullable=False, default="PUBLIC")  # PUBLIC | PRIVATE
    ttl_hours = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # NULL = permanent

    __table_args__ = (
        CheckConstraint("intensity >= 0 AND intensity <= 100", name="ck_emotion_entry_intensity"),
        CheckConstraint("dwell_seconds >= 0", name="ck_emotion_entry_dwell"),
        CheckConstraint("gps_accuracy >= 1", name="ck_emotion_entry_gps_accuracy"),
        Index("ix_emotion_entry_cell_expires", "cell_id", "expires_at"),
        Index("ix_emotion_entry_user_cell_created", "user_id", "cell_id", "created_at"),
        Index("ix_emotion_entry_user_created", "user_id", "created_at"),
        Index("ix_emotion_entry_expires_at", "expires_at"),
    )


class EmotionAggregate(Base):
    """
    Derived per-cell summary served to the map.

    Exists only while the cell has live weighted entries; written exclusively
    by services.cell_aggregation.
    """
    __tablename__ = "emotion_aggregate"

    cell_id = Column(String(16), primary_key=True)
    dominant_emotion = Column(Text, nullable=False)
    mean_valence = Column(Float, nullable=False)
    mean_intensity = Column(Float, nullable=False)
    distribution = Column(JSONType, nullable=False)  # {kind: percent}
    coherence = Column(Float, nullable=False)
    trend = Column(Float, nullable=False)
    entry_count = Column(Integer, nullable=False)
    last_entry_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
