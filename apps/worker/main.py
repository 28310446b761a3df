"""
Celery worker entry point.

This imports the Celery app and tasks from the API module.

    celery -A main worker --loglevel=info
    celery -A main beat --loglevel=info
"""
import sys

# Add API directory to path so we can import tasks
sys.path.insert(0, '/api')

# Import Celery app and tasks from API
from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

# This makes Celery discover tasks
celery_app.autodiscover_tasks(['tasks'])
