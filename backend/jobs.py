"""
Video job orchestration

A job is owned by one content record (job id == content id). submit() validates
and acknowledges immediately; run() executes the stages strictly in order on a
background worker:

    queued -> synthesizing_voice -> resolving_media -> composing -> finalizing -> completed

with `failed` reachable from any non-terminal stage. Percent published to the
progress tracker never decreases within one job.
"""

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend import database, monitoring
from backend.composer import CompositionSpec, VideoComposer
from backend.config import Settings, get_settings
from backend.errors import ContentNotFoundError, StageError
from backend.media_resolver import MediaResolver
from backend.progress import ProgressTracker
from backend.story import parse_story, title_read_time, voiceover_script
from backend.voiceover import VoiceSynthesizer

logger = logging.getLogger(__name__)

ESTIMATED_TOTAL_SECONDS = 120.0
COMPOSE_ESTIMATE_SECONDS = 60.0
TICKER_INTERVAL = 1.0
MAX_TRACKED_JOBS = 1000

# Percent allocation per stage
VOICE_START, VOICE_MAX = 5, 25
MEDIA_START, MEDIA_MAX = 30, 40
COMPOSE_START, COMPOSE_BASE, COMPOSE_SPAN, COMPOSE_MAX = 45, 40, 50, 90
FINALIZE_PERCENT = 95


class JobStage(str, Enum):
    QUEUED = "queued"
    SYNTHESIZING_VOICE = "synthesizing_voice"
    RESOLVING_MEDIA = "resolving_media"
    COMPOSING = "composing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_ORDER = [
    JobStage.QUEUED,
    JobStage.SYNTHESIZING_VOICE,
    JobStage.RESOLVING_MEDIA,
    JobStage.COMPOSING,
    JobStage.FINALIZING,
    JobStage.COMPLETED,
]


@dataclass
class Job:
    id: str
    stage: JobStage = JobStage.QUEUED
    message: str = ''
    percent: Optional[int] = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.stage in (JobStage.COMPLETED, JobStage.FAILED)

    def advance(self, stage: JobStage):
        """Move forward only; failed is absorbing and completed is final"""
        if self.is_terminal:
            raise ValueError(f"Job {self.id} is already {self.stage.value}")
        if stage != JobStage.FAILED and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.stage):
            raise ValueError(f"Job {self.id} cannot go from {self.stage.value} to {stage.value}")
        self.stage = stage
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'stage': self.stage.value,
            'message': self.message,
            'percent': self.percent,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class ProgressTicker:
    """Calls `callback(elapsed_seconds)` every interval until stopped

    stop() is idempotent and, once it returns, no further callback runs.
    """

    def __init__(self, callback: Callable[[float], None], interval: float = TICKER_INTERVAL):
        self.callback = callback
        self.interval = interval
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._started_at = 0.0
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._loop, name='progress-ticker', daemon=True)
        self._thread.start()

    def _loop(self):
        while not self._stopped.wait(self.interval):
            with self._lock:
                if self._stopped.is_set():
                    return
                try:
                    self.callback(time.monotonic() - self._started_at)
                except Exception as e:
                    logger.warning(f"[JOB] Progress ticker callback failed: {e}")

    def stop(self):
        with self._lock:
            self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


class VideoJobOrchestrator:
    """Drives voice -> media -> composition -> persistence for one content record"""

    def __init__(self, tracker: ProgressTracker, settings: Optional[Settings] = None,
                 voice: Optional[VoiceSynthesizer] = None,
                 resolver: Optional[MediaResolver] = None,
                 composer: Optional[VideoComposer] = None,
                 store=database):
        self.settings = settings or get_settings()
        self.tracker = tracker
        self.voice = voice or VoiceSynthesizer(self.settings)
        self.resolver = resolver or MediaResolver(self.settings)
        self.composer = composer or VideoComposer(self.settings)
        self.store = store
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ========================================================================
    # JOB REGISTRY
    # ========================================================================

    def _register(self, job_id: str) -> Job:
        job = Job(job_id)
        with self._lock:
            self._jobs.pop(job_id, None)
            self._jobs[job_id] = job
            while len(self._jobs) > MAX_TRACKED_JOBS:
                self._jobs.popitem(last=False)
        return job

    def get_job(self, job_id) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(str(job_id))
            return job.to_dict() if job else None

    def _report(self, job: Job, message: str, percent: Optional[float],
                stage: Optional[JobStage] = None):
        """Publish progress; percent is raised to the last reported value"""
        with self._lock:
            if stage is not None:
                job.advance(stage)
            if percent is not None:
                percent = max(job.percent or 0, int(round(percent)))
            job.message = message
            job.percent = percent
            job.updated_at = time.time()
        self.tracker.set(job.id, message, percent)

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.job_workers,
                thread_name_prefix='video-job'
            )
        return self._executor

    def submit(self, content_id, background_music_id: str, background_video_id: str) -> Dict[str, Any]:
        """Validate, mark processing and schedule the job; returns immediately"""
        content = self.store.get_content(content_id)
        if not content:
            raise ContentNotFoundError(content_id)

        self.store.mark_processing(content_id, background_music_id, background_video_id)

        job_id = str(content_id)
        # Cancel any pending clear left over from an earlier run of this content
        self.tracker.clear(job_id)
        job = self._register(job_id)
        self._report(job, 'Starting video creation process...', 0)

        if self.settings.job_executor == 'celery':
            from backend.celery_tasks import compose_video_task
            compose_video_task.delay(content_id, background_music_id, background_video_id)
            logger.info(f"[JOB] {job_id} queued on Celery")
        else:
            self._get_executor().submit(self.run, content_id, background_music_id, background_video_id)
            logger.info(f"[JOB] {job_id} scheduled on worker pool")

        return {'accepted': True, 'contentId': content_id}

    def shutdown(self, wait: bool = False):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
        self.composer.shutdown()

    # ========================================================================
    # EXECUTION
    # ========================================================================

    @monitoring.track_video_job
    def run(self, content_id, background_music_id: str, background_video_id: str) -> bool:
        """Execute every stage; any failure ends in the failed state (no retry)"""
        job_id = str(content_id)
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            job = self._register(job_id)

        started = time.monotonic()
        try:
            content = self.store.get_content(content_id)
            if not content:
                raise ContentNotFoundError(content_id)
            story_text = content.get('generated_text') or ''
            title, _ = parse_story(story_text)
            script = voiceover_script(story_text)

            # Voice
            self._report(job, 'Generating voiceover audio...', VOICE_START, JobStage.SYNTHESIZING_VOICE)
            self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
            voice_started = time.monotonic()
            track = self.voice.synthesize(script, self.settings.temp_dir / f"voiceover_{job_id}.mp3")
            voice_progress = min(VOICE_MAX, round((time.monotonic() - voice_started)
                                                  / ESTIMATED_TOTAL_SECONDS * VOICE_MAX))
            self._report(job, 'Voiceover generated', voice_progress)
            logger.info(f"[JOB] {job_id} voice: {track.method.value}, {track.duration:.1f}s")

            # Media
            self._report(job, 'Loading background assets...', MEDIA_START, JobStage.RESOLVING_MEDIA)
            assets_started = time.monotonic()
            video_asset = self.resolver.resolve_video(background_video_id)
            music_asset = self.resolver.resolve_music(background_music_id) if background_music_id else None
            assets_progress = min(MEDIA_MAX, voice_progress + round((time.monotonic() - assets_started)
                                                                    / ESTIMATED_TOTAL_SECONDS * 15))
            self._report(job, 'Background assets loaded', assets_progress)

            # Composition
            self._report(job, 'Composing video (this may take a moment)...', COMPOSE_START, JobStage.COMPOSING)
            self.settings.output_dir.mkdir(parents=True, exist_ok=True)
            spec = CompositionSpec(
                background_video=video_asset.location,
                background_music=music_asset.location if music_asset else None,
                voiceover=str(track.audio_path),
                output_path=self.settings.output_dir / f"video_{job_id}.mp4",
                target_duration=track.duration or ESTIMATED_TOTAL_SECONDS,
                text=script,
                word_timings=track.word_timings,
                title=title or None,
                card_duration=title_read_time(title),
            )

            def on_tick(elapsed: float):
                estimate = min(COMPOSE_MAX, COMPOSE_START + round(elapsed / COMPOSE_ESTIMATE_SECONDS
                                                                  * (COMPOSE_MAX - COMPOSE_START)))
                self._report(job, 'Composing video...', estimate)

            ticker = ProgressTicker(on_tick)

            def on_progress(percent: float, message: str):
                ticker.stop()
                mapped = min(COMPOSE_MAX, COMPOSE_BASE + round(percent / 100 * COMPOSE_SPAN))
                self._report(job, message or 'Composing video...', mapped)

            ticker.start()
            try:
                output_path = self.composer.compose(spec, on_progress)
            finally:
                ticker.stop()

            # Finalize
            self._report(job, 'Finalizing video...', FINALIZE_PERCENT, JobStage.FINALIZING)
            self.store.mark_completed(content_id, str(output_path), str(track.audio_path))
            self._report(job, 'Video creation completed!', 100, JobStage.COMPLETED)
            self.tracker.clear_later(job_id)

            logger.info(f"[JOB] {job_id} completed in {time.monotonic() - started:.1f}s: {output_path}")
            return True

        except Exception as e:
            self._fail(job, content_id, e)
            return False

    def _fail(self, job: Job, content_id, error: Exception):
        if isinstance(error, StageError):
            logger.error(f"[JOB] {job.id} failed in {error.stage}: {error}")
        else:
            logger.exception(f"[JOB] {job.id} failed: {error}")
            monitoring.capture_exception(error, extra={'content_id': content_id})

        with self._lock:
            if not job.is_terminal:
                job.advance(JobStage.FAILED)
        self._report(job, f"Error: {error}", None)

        try:
            self.store.mark_failed(content_id, str(error))
        except Exception as db_error:
            logger.error(f"[JOB] {job.id} could not record failure: {db_error}")
