"""
Job progress tracking

Process-wide keyed store of {message, percent, timestamp} polled by clients.
Percent None marks a terminal error. Writes are last-writer-wins and reads
return copies. The Redis backend lets a separate worker process publish
progress that the web process can serve.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT = {'message': 'Starting...', 'percent': 0}
REDIS_KEY_PREFIX = 'progress:'
REDIS_TTL_SECONDS = 24 * 3600  # Safety net for entries whose clear never ran


class ProgressTracker:
    """Keyed progress store with set / get / clear

    Entries are cleared a grace period after completion (clear_later) or
    after a client has observed an error snapshot, whichever comes first.
    """

    def __init__(self, redis_url: Optional[str] = None, grace_seconds: float = 5.0):
        self.grace_seconds = grace_seconds
        self._redis = None
        self._mem: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}

        if redis_url:
            client = redis.Redis.from_url(redis_url)
            client.ping()
            self._redis = client
            logger.info("[PROGRESS] Using Redis backend")

    @property
    def backend(self) -> str:
        return 'redis' if self._redis is not None else 'memory'

    def set(self, job_id, message: str, percent: Optional[float] = None):
        """Store the latest progress for a job (percent None = error)"""
        key = str(job_id)
        if percent is not None:
            percent = max(0, min(100, int(round(percent))))
        entry = {'message': message, 'percent': percent, 'timestamp': time.time()}

        if self._redis is not None:
            self._redis.setex(REDIS_KEY_PREFIX + key, REDIS_TTL_SECONDS, json.dumps(entry))
        else:
            with self._lock:
                self._mem[key] = entry
        logger.debug(f"[PROGRESS] {key}: {percent}% - {message}")

    def get(self, job_id) -> Dict[str, Any]:
        """Point-in-time snapshot; unknown jobs report the default snapshot"""
        key = str(job_id)
        entry = None

        if self._redis is not None:
            raw = self._redis.get(REDIS_KEY_PREFIX + key)
            if raw:
                entry = json.loads(raw)
        else:
            with self._lock:
                stored = self._mem.get(key)
                entry = dict(stored) if stored else None

        if entry is None:
            return dict(DEFAULT_SNAPSHOT)

        # Client has now seen the error; evict after the grace period
        if entry.get('percent') is None:
            self.clear_later(key)

        return entry

    def clear(self, job_id):
        key = str(job_id)
        if self._redis is not None:
            self._redis.delete(REDIS_KEY_PREFIX + key)
        else:
            with self._lock:
                self._mem.pop(key, None)
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def clear_later(self, job_id, delay: Optional[float] = None):
        """Schedule a clear once; repeated calls keep the first schedule"""
        key = str(job_id)
        delay = self.grace_seconds if delay is None else delay

        with self._lock:
            if key in self._timers:
                return
            if self._redis is None and key not in self._mem:
                return
            timer = threading.Timer(delay, self._expire, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def _expire(self, key: str):
        with self._lock:
            self._timers.pop(key, None)
        if self._redis is not None:
            self._redis.delete(REDIS_KEY_PREFIX + key)
        else:
            with self._lock:
                self._mem.pop(key, None)
        logger.debug(f"[PROGRESS] Cleared {key}")


def create_progress_tracker(settings) -> ProgressTracker:
    """Build the tracker selected by PROGRESS_BACKEND

    Celery workers publish from another process, so that executor always
    gets the Redis backend.
    """
    use_redis = settings.progress_backend == 'redis'
    if settings.job_executor == 'celery' and not use_redis:
        logger.warning("[PROGRESS] JOB_EXECUTOR=celery needs shared progress, using Redis backend")
        use_redis = True
    if use_redis:
        return ProgressTracker(redis_url=settings.redis_url,
                               grace_seconds=settings.progress_grace_seconds)
    return ProgressTracker(grace_seconds=settings.progress_grace_seconds)
