"""
Tests for emotion submission: validation, per-cell and hourly caps, TTL
handling, deletion, listings, and recompute scheduling after writes.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import h3
import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from core.config import settings
from core.exceptions import ForbiddenError, NotFoundError, RateLimitError, StoreError, ValidationError
from models import EmotionEntry
from services.emotion_catalog import EmotionKind, Visibility
from services.emotion_submission import (
    EmotionSubmission,
    delete_emotion,
    list_cell_entries,
    list_user_entries,
    resolve_ttl_hours,
    start_of_day,
    submit_emotion,
    submitter_lock,
)

CELL = h3.latlng_to_cell(40.7128, -74.0060, 10)
OTHER_CELL = h3.latlng_to_cell(40.7580, -73.9855, 10)
COARSE_CELL = h3.latlng_to_cell(40.7128, -74.0060, 7)


def _submission(**overrides) -> EmotionSubmission:
    values = dict(cell_id=CELL, emotion="JOY", intensity=70, dwell_seconds=300)
    values.update(overrides)
    return EmotionSubmission(**values)


class TestValidation:
    @pytest.mark.parametrize("overrides,field", [
        ({"cell_id": "not-a-cell"}, "cell_id"),
        ({"emotion": "BOREDOM"}, "emotion"),
        ({"intensity": -1}, "intensity"),
        ({"intensity": 101}, "intensity"),
        ({"dwell_seconds": -5}, "dwell_seconds"),
        ({"gps_accuracy": 0}, "gps_accuracy"),
        ({"note": "x" * 281}, "note"),
        ({"tags": [f"t{i}" for i in range(11)]}, "tags"),
        ({"tags": ["x" * 33]}, "tags"),
        ({"visibility": "FRIENDS"}, "visibility"),
    ])
    def test_rejects_bad_input(self, db_session, user, now, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            submit_emotion(db_session, user.id, _submission(**overrides), now=now)
        assert exc_info.value.field == field
        assert db_session.query(EmotionEntry).count() == 0

    def test_boundary_values_accepted(self, db_session, user, now):
        entry = submit_emotion(
            db_session, user.id,
            _submission(intensity=100, dwell_seconds=0, gps_accuracy=1, note="x" * 280),
            now=now,
        )
        assert entry.intensity == 100

    def test_duplicate_tags_collapse_in_order(self, db_session, user, now):
        tags = ["park", "sunset", "park"] + [f"t{i}" for i in range(8)]
        entry = submit_emotion(db_session, user.id, _submission(tags=tags), now=now)
        assert entry.tags[:2] == ["park", "sunset"]
        assert len(entry.tags) == 10

    def test_resolution_enforced_when_enabled(self, db_session, user, now):
        with patch.object(settings, "ENFORCE_SUBMISSION_RESOLUTION", True):
            with pytest.raises(ValidationError):
                submit_emotion(db_session, user.id, _submission(cell_id=COARSE_CELL), now=now)

    def test_any_resolution_accepted_by_default(self, db_session, user, now):
        entry = submit_emotion(db_session, user.id, _submission(cell_id=COARSE_CELL), now=now)
        assert entry.cell_id == COARSE_CELL


class TestPersistence:
    def test_valence_frozen_from_catalog(self, db_session, user, now):
        entry = submit_emotion(db_session, user.id, _submission(emotion="ANGER"), now=now)
        assert entry.valence == -0.8
        assert entry.emotion == "ANGER"

    def test_enum_inputs_stored_as_values(self, db_session, user, now):
        entry = submit_emotion(
            db_session, user.id,
            _submission(emotion=EmotionKind.HOPE, visibility=Visibility.PRIVATE),
            now=now,
        )
        assert entry.emotion == "HOPE"
        assert entry.visibility == "PRIVATE"

    def test_permanent_by_default(self, db_session, user, now):
        entry = submit_emotion(db_session, user.id, _submission(), now=now)
        assert entry.expires_at is None
        assert entry.ttl_hours is None

    def test_ttl_sets_expiry(self, db_session, user, now):
        entry = submit_emotion(db_session, user.id, _submission(ttl_hours=6), now=now)
        assert entry.ttl_hours == 6
        assert entry.expires_at.replace(tzinfo=timezone.utc) == now + timedelta(hours=6)


class TestResolveTtl:
    def test_clamped_to_range(self):
        assert resolve_ttl_hours(0, False) == 1
        assert resolve_ttl_hours(500, False) == 168
        assert resolve_ttl_hours(12, True) == 12

    def test_volatile_uses_default(self):
        assert resolve_ttl_hours(None, True) == settings.VOLATILE_TTL_HOURS_DEFAULT

    def test_volatile_ignored_when_disabled(self):
        with patch.object(settings, "ENABLE_VOLATILITY", False):
            assert resolve_ttl_hours(None, True) is None

    def test_not_volatile_is_permanent(self):
        assert resolve_ttl_hours(None, False) is None


class TestLimits:
    def test_fourth_same_cell_same_day_rejected(self, db_session, user, now):
        for i in range(3):
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=i))

        with pytest.raises(RateLimitError) as exc_info:
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=5))
        assert exc_info.value.limit_name == "per_cell_daily"
        assert exc_info.value.limit == 3

        # Another cell is still accepted.
        entry = submit_emotion(db_session, user.id, _submission(cell_id=OTHER_CELL), now=now + timedelta(minutes=6))
        assert entry.cell_id == OTHER_CELL

    def test_per_cell_cap_resets_next_day(self, db_session, user, now):
        for i in range(3):
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=i))
        tomorrow = start_of_day(now) + timedelta(days=1, minutes=1)
        assert submit_emotion(db_session, user.id, _submission(), now=tomorrow) is not None

    def test_per_cell_cap_is_per_user(self, db_session, user, other_user, now):
        for i in range(3):
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=i))
        assert submit_emotion(db_session, other_user.id, _submission(), now=now + timedelta(minutes=4))

    def test_per_cell_cap_checked_before_hourly(self, db_session, user, now):
        with patch.object(settings, "EMOTION_SUBMISSIONS_PER_HOUR", 3):
            for i in range(3):
                submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=i))
            with pytest.raises(RateLimitError) as exc_info:
                submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=5))
        assert exc_info.value.limit_name == "per_cell_daily"

    def test_hourly_cap_across_cells(self, db_session, user, now):
        cells = [h3.latlng_to_cell(40.70 + i * 0.01, -74.0, 10) for i in range(11)]
        for i in range(10):
            submit_emotion(db_session, user.id, _submission(cell_id=cells[i]), now=now + timedelta(minutes=i))

        with pytest.raises(RateLimitError) as exc_info:
            submit_emotion(db_session, user.id, _submission(cell_id=cells[10]), now=now + timedelta(minutes=11))
        assert exc_info.value.limit_name == "hourly"
        assert exc_info.value.status_code == 429

    def test_hourly_window_trails(self, db_session, user, now):
        cells = [h3.latlng_to_cell(40.70 + i * 0.01, -74.0, 10) for i in range(11)]
        for i in range(10):
            submit_emotion(db_session, user.id, _submission(cell_id=cells[i]), now=now + timedelta(minutes=i))
        later = now + timedelta(minutes=61)
        assert submit_emotion(db_session, user.id, _submission(cell_id=cells[10]), now=later)

    def test_day_boundary_follows_configured_timezone(self):
        now = datetime(2026, 6, 15, 3, 0, tzinfo=timezone.utc)
        # 03:00 UTC is still 23:00 on June 14th in New York (UTC-4 in summer).
        assert start_of_day(now, "America/New_York") == datetime(2026, 6, 14, 4, 0, tzinfo=timezone.utc)
        assert start_of_day(now, "UTC") == datetime(2026, 6, 15, 0, 0, tzinfo=timezone.utc)


def _pg_sql(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


class TestLimitSerialization:
    def test_lock_selects_user_row_for_update(self, user):
        sql = _pg_sql(submitter_lock(user.id))
        assert "FROM app_user" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    def test_counts_run_after_lock(self, db_session, user, now):
        real_execute = db_session.execute
        executed = []

        def execute(statement, *args, **kwargs):
            executed.append(statement)
            return real_execute(statement, *args, **kwargs)

        def enforce(*args, **kwargs):
            assert any("FOR UPDATE" in _pg_sql(s) for s in executed)

        with patch.object(db_session, "execute", side_effect=execute), \
             patch("services.emotion_submission._enforce_limits", side_effect=enforce) as limits:
            submit_emotion(db_session, user.id, _submission(), now=now)

        limits.assert_called_once()

    def test_rejected_submission_releases_lock(self, db_session, user, now):
        for i in range(3):
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=i))

        with pytest.raises(RateLimitError):
            submit_emotion(db_session, user.id, _submission(), now=now + timedelta(minutes=5))

        assert not db_session.in_transaction()


class TestRecomputeScheduling:
    def test_submission_schedules_recompute(self, db_session, user, now):
        with patch("services.emotion_submission.schedule_cell_recompute") as schedule:
            submit_emotion(db_session, user.id, _submission(), now=now)
        schedule.assert_called_once_with(CELL)

    def test_scheduling_failure_does_not_fail_submission(self, db_session, user, now):
        with patch("services.emotion_submission.schedule_cell_recompute", side_effect=RuntimeError("broker down")), \
             patch("services.emotion_submission.mark_cell_pending") as park:
            entry = submit_emotion(db_session, user.id, _submission(), now=now)

        assert db_session.get(EmotionEntry, entry.id) is not None
        park.assert_called_once_with(CELL)

    def test_rejected_submission_does_not_schedule(self, db_session, user, now):
        with patch("services.emotion_submission.schedule_cell_recompute") as schedule:
            with pytest.raises(ValidationError):
                submit_emotion(db_session, user.id, _submission(intensity=500), now=now)
        schedule.assert_not_called()

    def test_store_failure_raises_store_error(self, db_session, user, now):
        with patch.object(db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("db gone"))):
            with pytest.raises(StoreError):
                submit_emotion(db_session, user.id, _submission(), now=now)


class TestDelete:
    def test_owner_can_delete(self, db_session, user, now):
        entry = submit_emotion(db_session, user.id, _submission(), now=now)
        with patch("services.emotion_submission.schedule_cell_recompute") as schedule:
            assert delete_emotion(db_session, user.id, entry.id) == CELL
        assert db_session.get(EmotionEntry, entry.id) is None
        schedule.assert_called_once_with(CELL)

    def test_missing_entry(self, db_session, user):
        with pytest.raises(NotFoundError):
            delete_emotion(db_session, user.id, uuid4())

    def test_other_users_entry_forbidden(self, db_session, user, other_user, now):
        entry = submit_emotion(db_session, user.id, _submission(), now=now)
        with pytest.raises(ForbiddenError):
            delete_emotion(db_session, other_user.id, entry.id)
        assert db_session.get(EmotionEntry, entry.id) is not None


class TestListings:
    def test_cell_listing_hides_private_entries(self, db_session, user, other_user, now):
        submit_emotion(db_session, user.id, _submission(), now=now)
        submit_emotion(db_session, other_user.id, _submission(visibility="PRIVATE"), now=now)

        entries = list_cell_entries(db_session, CELL, viewer_id=user.id, include_private=True, now=now)
        assert len(entries) == 1
        assert entries[0].user_id == user.id

    def test_owner_sees_own_private_entries(self, db_session, user, now):
        submit_emotion(db_session, user.id, _submission(visibility="PRIVATE"), now=now)

        assert list_cell_entries(db_session, CELL, now=now) == []
        own = list_cell_entries(db_session, CELL, viewer_id=user.id, include_private=True, now=now)
        assert len(own) == 1

    def test_cell_listing_newest_first_and_limited(self, db_session, user, other_user, now):
        submit_emotion(db_session, user.id, _submission(emotion="FEAR"), now=now)
        submit_emotion(db_session, other_user.id, _submission(emotion="HOPE"), now=now + timedelta(minutes=1))

        entries = list_cell_entries(db_session, CELL, limit=1, now=now + timedelta(minutes=2))
        assert [e.emotion for e in entries] == ["HOPE"]

    def test_cell_listing_excludes_expired(self, db_session, user, now):
        submit_emotion(db_session, user.id, _submission(ttl_hours=1), now=now)
        assert list_cell_entries(db_session, CELL, now=now + timedelta(hours=2)) == []

    def test_cell_listing_rejects_invalid_cell(self, db_session):
        with pytest.raises(ValidationError):
            list_cell_entries(db_session, "bad")

    def test_user_listing(self, db_session, user, other_user, now):
        submit_emotion(db_session, user.id, _submission(), now=now)
        submit_emotion(db_session, user.id, _submission(cell_id=OTHER_CELL), now=now + timedelta(minutes=1))
        submit_emotion(db_session, other_user.id, _submission(), now=now)

        mine = list_user_entries(db_session, user.id, now=now + timedelta(minutes=2))
        assert [e.cell_id for e in mine] == [OTHER_CELL, CELL]

        in_cell = list_user_entries(db_session, user.id, cell_id=CELL, now=now + timedelta(minutes=2))
        assert len(in_cell) == 1

    def test_limits_are_clamped(self, db_session, user, now):
        for i in range(3):
            submit_emotion(db_session, user.id, _submission(cell_id=h3.latlng_to_cell(40.7 + i * 0.01, -74.0, 10)),
                           now=now + timedelta(minutes=i))
        assert len(list_user_entries(db_session, user.id, limit=0, now=now + timedelta(minutes=5))) == 1
