"""
Tests for the retention sweeper.
"""

from datetime import timedelta
from unittest.mock import patch

import h3
import pytest
from sqlalchemy import Delete
from sqlalchemy.exc import OperationalError

from models import EmotionAggregate, EmotionEntry
from services.cell_aggregation import recompute_cell_aggregate
from services.recompute_scheduler import PENDING_SET_KEY
from services.retention_sweeper import sweep_expired_entries
from tasks.aggregation_tasks import flush_pending_recomputes

CELL_A = h3.latlng_to_cell(40.7128, -74.0060, 10)
CELL_B = h3.latlng_to_cell(40.7580, -73.9855, 10)


def _entry(db, user, now, cell_id, expires_in, emotion="JOY", valence=0.8):
    entry = EmotionEntry(
        user_id=user.id,
        cell_id=cell_id,
        emotion=emotion,
        intensity=50,
        valence=valence,
        dwell_seconds=300,
        created_at=now - timedelta(hours=30),
        expires_at=(now + expires_in) if expires_in is not None else None,
    )
    db.add(entry)
    db.commit()
    return entry


class TestSweepExpiredEntries:
    def test_nothing_to_sweep(self, db_session, now):
        result = sweep_expired_entries(db_session, now=now)
        assert result.removed == 0
        assert result.affected_cells == set()

    def test_removes_only_expired(self, db_session, user, now):
        _entry(db_session, user, now, CELL_A, timedelta(hours=-1))
        _entry(db_session, user, now, CELL_A, timedelta(hours=1))
        _entry(db_session, user, now, CELL_B, None)

        result = sweep_expired_entries(db_session, now=now)

        assert result.removed == 1
        assert result.affected_cells == {CELL_A}
        assert db_session.query(EmotionEntry).count() == 2

    def test_expiry_boundary_is_inclusive(self, db_session, user, now):
        _entry(db_session, user, now, CELL_A, timedelta(0))
        assert sweep_expired_entries(db_session, now=now).removed == 1

    def test_sweeps_in_batches(self, db_session, user, now):
        for i in range(7):
            _entry(db_session, user, now, CELL_A if i % 2 else CELL_B, timedelta(minutes=-(i + 1)))

        result = sweep_expired_entries(db_session, now=now, batch_size=3)

        assert result.removed == 7
        assert result.affected_cells == {CELL_A, CELL_B}
        assert db_session.query(EmotionEntry).count() == 0

    def test_second_sweep_is_noop(self, db_session, user, now):
        _entry(db_session, user, now, CELL_A, timedelta(hours=-2))
        sweep_expired_entries(db_session, now=now)
        assert sweep_expired_entries(db_session, now=now).removed == 0


def _fail_on_delete(db, failing_call):
    """Make the n-th DELETE issued through `db` raise OperationalError."""
    real_execute = db.execute
    deletes = {"count": 0}

    def execute(statement, *args, **kwargs):
        if isinstance(statement, Delete):
            deletes["count"] += 1
            if deletes["count"] == failing_call:
                raise OperationalError("DELETE FROM emotion_entry", {}, Exception("connection lost"))
        return real_execute(statement, *args, **kwargs)

    return patch.object(db, "execute", side_effect=execute)


class TestSweepFailureMidway:
    @pytest.fixture
    def two_stale_cells(self, db_session, user, now):
        # One expired JOY and one live SADNESS per cell; aggregates computed
        # while the JOY entries were still live.
        _entry(db_session, user, now, CELL_A, timedelta(hours=-2))
        _entry(db_session, user, now, CELL_A, None, emotion="SADNESS", valence=-0.6)
        _entry(db_session, user, now, CELL_B, timedelta(hours=-1))
        _entry(db_session, user, now, CELL_B, None, emotion="SADNESS", valence=-0.6)
        for cell_id in (CELL_A, CELL_B):
            assert recompute_cell_aggregate(db_session, cell_id, now=now - timedelta(hours=3)).entry_count == 2

    def test_committed_batches_are_parked_before_error(self, db_session, now, fake_redis, two_stale_cells):
        with _fail_on_delete(db_session, failing_call=2):
            with pytest.raises(OperationalError):
                sweep_expired_entries(db_session, now=now, batch_size=1)

        assert fake_redis.smembers(PENDING_SET_KEY) == {CELL_A}
        assert db_session.query(EmotionEntry).filter_by(cell_id=CELL_A).count() == 1
        assert db_session.query(EmotionEntry).filter_by(cell_id=CELL_B).count() == 2

    def test_retry_and_flush_repair_every_cell(self, db_session, now, fake_redis, two_stale_cells):
        with _fail_on_delete(db_session, failing_call=2):
            with pytest.raises(OperationalError):
                sweep_expired_entries(db_session, now=now, batch_size=1)

        retry = sweep_expired_entries(db_session, now=now, batch_size=1)
        assert retry.affected_cells == {CELL_B}

        # CELL_A is only reachable through the pending set.
        assert flush_pending_recomputes.apply().get()["recomputed"] == 1

        db_session.expire_all()
        repaired = db_session.get(EmotionAggregate, CELL_A)
        assert repaired.entry_count == 1
        assert repaired.dominant_emotion == "SADNESS"
        assert repaired.coherence == 1.0

    def test_failure_on_first_batch_parks_nothing(self, db_session, now, fake_redis, two_stale_cells):
        with _fail_on_delete(db_session, failing_call=1):
            with pytest.raises(OperationalError):
                sweep_expired_entries(db_session, now=now, batch_size=1)

        assert fake_redis.smembers(PENDING_SET_KEY) == set()
        assert db_session.query(EmotionEntry).count() == 4
