"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Lifecycle events acknowledged to the provider but never applied
    # (processing failed after the ledger insert) are re-applied from the
    # stored payload.
    'reprocess-pending-lifecycle-events': {
        'task': 'tasks.reprocess_pending_lifecycle_events',
        'schedule': crontab(minute='*/5'),  # Every 5 minutes
    },
}
