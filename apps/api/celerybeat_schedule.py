"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from datetime import timedelta

from core.config import settings

# Schedule configuration
beat_schedule = {
    # Intervention outcome sweep: pending interventions whose 48h window
    # has elapsed without a relapse are marked successful.
    'check-intervention-outcomes': {
        'task': 'tasks.check_intervention_outcomes',
        'schedule': timedelta(minutes=settings.OUTCOME_CHECK_INTERVAL_MINUTES),  # Every 15 minutes by default
    },
}
