"""
Celery Tasks for Async Video Composition

Optional executor (JOB_EXECUTOR=celery): the web process acknowledges the
request and queues compose_video_task; a worker runs the same orchestrator.
Progress must go through the Redis tracker so the web process can serve polls.

Start a worker:
    celery -A backend.celery_tasks worker --loglevel=info
"""

import logging
import threading
from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure, worker_process_init

from backend import database, monitoring
from backend.http_client import reset_http_session
from backend.config import get_settings
from backend.progress import ProgressTracker

logger = logging.getLogger(__name__)

# ============================================================
# CELERY CONFIGURATION
# ============================================================

_settings = get_settings()

celery_app = Celery(
    'video_tasks',
    broker=_settings.redis_url,
    backend=_settings.redis_url
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Encoding is CPU bound - one job per worker slot
    worker_prefetch_multiplier=1,

    # Failed jobs are terminal; a resubmission is a new job
    task_acks_late=False,
    task_time_limit=_settings.encode_timeout + 300,

    result_expires=86400,
    worker_send_task_events=True,
    task_send_sent_event=True,
)


# ============================================================
# TASK SIGNALS (for monitoring)
# ============================================================

@worker_process_init.connect
def worker_init_handler(**kwargs):
    """Error tracking, content store and fresh HTTP pool for each worker process"""
    reset_http_session()
    monitoring.init_sentry()
    database.configure(get_settings().database_path)
    database.init_db()


@task_prerun.connect
def task_prerun_handler(task_id, task, args, kwargs, **extras):
    logger.info(f"Task starting: {task.name} [{task_id}]")


@task_postrun.connect
def task_postrun_handler(task_id, task, args, kwargs, retval, state, **extras):
    logger.info(f"Task completed: {task.name} [{task_id}] - State: {state}")


@task_failure.connect
def task_failure_handler(task_id, exception, args, kwargs, traceback, einfo, **extras):
    logger.error(f"Task failed: {task_id} - {exception}")


# ============================================================
# VIDEO COMPOSITION TASK
# ============================================================

_orchestrator = None
_orchestrator_lock = threading.Lock()


def get_worker_orchestrator():
    """One orchestrator per worker process, publishing progress to Redis"""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            from backend.jobs import VideoJobOrchestrator

            settings = get_settings()
            tracker = ProgressTracker(redis_url=settings.redis_url,
                                      grace_seconds=settings.progress_grace_seconds)
            _orchestrator = VideoJobOrchestrator(tracker, settings=settings)
        return _orchestrator


@celery_app.task(bind=True, max_retries=0)
def compose_video_task(self, content_id, background_music_id: Optional[str],
                       background_video_id: str) -> Dict[str, Any]:
    """Run the whole pipeline for one content record"""
    logger.info(f"[TASK] Starting video job: {content_id}")
    succeeded = get_worker_orchestrator().run(content_id, background_music_id, background_video_id)
    return {
        'status': 'completed' if succeeded else 'failed',
        'content_id': content_id,
    }
