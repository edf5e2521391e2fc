"""
Celery worker entry point.

This imports the Celery app and tasks from the API module. Run with the API
directory on the import path, e.g.
``celery -A main worker --beat`` from ``apps/worker`` with PYTHONPATH=apps/api.
"""
from tasks import celery_app


# Health check task
@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
