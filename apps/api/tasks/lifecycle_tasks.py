"""
Lifecycle ledger reconciliation.

Webhooks acknowledge once the event is in the ledger; anything whose
processing failed afterwards is re-applied here from the stored payload.
"""
from datetime import timedelta
from typing import Dict, Optional
import logging

from celery import Task
from celery.signals import worker_init, worker_process_init
from sqlalchemy.orm import sessionmaker

from core.clock import Clock, SystemClock
from core.config import Settings, settings as default_settings
from core.database import build_engine, build_session_factory
from core.logging import setup_logging
from services.lifecycle_processing import reprocess_pending_events
from services.scheduler import CadencePolicy
from tasks import celery_app

logger = logging.getLogger(__name__)


class WorkerResources:
    """Handles built once per worker process (see ``init_worker_resources``)."""

    def __init__(self, settings: Settings, session_factory: sessionmaker, clock: Clock) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.policy = CadencePolicy.from_settings(settings)


_resources: Optional[WorkerResources] = None


@worker_init.connect
@worker_process_init.connect
def init_worker_resources(**kwargs) -> None:
    global _resources
    if _resources is not None:
        return
    setup_logging(default_settings)
    engine = build_engine(default_settings)
    _resources = WorkerResources(default_settings, build_session_factory(engine), SystemClock())
    logger.info("Worker resources initialized")


def run_reprocess(resources: WorkerResources) -> Dict:
    db = resources.session_factory()
    try:
        counts = reprocess_pending_events(
            db,
            now=resources.clock.now(),
            policy=resources.policy,
            older_than=timedelta(seconds=resources.settings.LEDGER_REPROCESS_AFTER_S),
            limit=resources.settings.LEDGER_REPROCESS_BATCH_SIZE,
            max_attempts=resources.settings.LEDGER_MAX_ATTEMPTS,
        )
        return {"status": "success", **counts}
    finally:
        db.close()


@celery_app.task(name="tasks.reprocess_pending_lifecycle_events", bind=True)
def reprocess_pending_lifecycle_events(self: Task) -> Dict:
    """
    Re-apply ledger rows whose processed_at is still null after
    LEDGER_REPROCESS_AFTER_S.
    """
    if _resources is None:
        logger.error("Worker resources not initialized; skipping reprocess run")
        return {"status": "error", "error": "worker not initialized"}
    return run_reprocess(_resources)
