"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

from core.config import settings

# Schedule configuration
beat_schedule = {
    # Retention sweep: delete expired entries and recompute the cells they left.
    'sweep-expired-entries': {
        'task': 'tasks.sweep_expired_entries',
        'schedule': crontab(minute=f'*/{settings.SWEEP_INTERVAL_MINUTES}'),
    },
    # Recomputes parked because enqueueing failed or retries ran out.
    'flush-pending-recomputes': {
        'task': 'tasks.flush_pending_recomputes',
        'schedule': crontab(minute='*'),  # Every minute
    },
}
