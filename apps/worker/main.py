"""
Celery worker entry point.

This imports the Celery app and tasks from the API module.
"""
import sys
import os

# Add API directory to path so we can import tasks
sys.path.insert(0, os.environ.get("API_PATH", os.path.join(os.path.dirname(__file__), "..", "api")))

from core.database import init_db  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from services.risk_notifications import register_notification_handlers  # noqa: E402

# Import Celery app and tasks from API
from tasks import celery_app  # noqa: E402

setup_logging()
init_db()
register_notification_handlers()

# This makes Celery discover tasks
celery_app.autodiscover_tasks(['tasks'])


# Liveness check for the worker
@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
