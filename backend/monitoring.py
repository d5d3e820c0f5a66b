"""
Monitoring Module for the Story Shorts API
Prometheus metrics + Sentry error tracking
"""

import os
import platform
import time
import logging
from functools import wraps

import sentry_sdk
from flask import Blueprint, Flask, Response, request, g
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

APP_VERSION = os.getenv('APP_VERSION', '1.0.0')

# ==============================================================================
# PROMETHEUS METRICS
# ==============================================================================

# Request metrics
REQUEST_COUNT = Counter(
    'storyshorts_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_LATENCY = Histogram(
    'storyshorts_http_request_duration_seconds',
    'HTTP request latency',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Job metrics
VIDEO_JOB_COUNT = Counter(
    'storyshorts_video_jobs_total',
    'Video jobs by terminal outcome',
    ['status']
)

VIDEO_JOB_DURATION = Histogram(
    'storyshorts_video_job_duration_seconds',
    'Wall time of a whole video job',
    buckets=[10, 30, 60, 120, 180, 300, 600, 900]
)

ACTIVE_VIDEO_JOBS = Gauge(
    'storyshorts_active_video_jobs',
    'Currently running video jobs'
)

# Stage metrics
VOICE_SYNTHESIS_COUNT = Counter(
    'storyshorts_voice_synthesis_total',
    'Voice synthesis attempts per provider',
    ['provider', 'status']
)

MEDIA_RESOLUTION_COUNT = Counter(
    'storyshorts_media_resolutions_total',
    'Media resolutions by kind and method',
    ['kind', 'method']
)

COMPOSITION_DURATION = Histogram(
    'storyshorts_composition_duration_seconds',
    'FFmpeg composition duration',
    ['status'],
    buckets=[5, 15, 30, 60, 120, 300, 600, 900]
)

# Error metrics
ERROR_COUNT = Counter(
    'storyshorts_errors_total',
    'Total errors',
    ['error_type', 'endpoint']
)

# Service health
SERVICE_STATUS = Gauge(
    'storyshorts_service_status',
    'Service availability status (1=up, 0=down)',
    ['service']
)

# System info
APP_INFO = Info('storyshorts_app', 'Application information')

# ==============================================================================
# SENTRY ERROR TRACKING
# ==============================================================================

def init_sentry() -> bool:
    """Initialize Sentry error tracking (web and worker processes)"""
    sentry_dsn = os.getenv('SENTRY_DSN', '')

    if not sentry_dsn or sentry_dsn.startswith('https://your'):
        logger.info("Sentry DSN not configured")
        return False

    try:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[
                FlaskIntegration(),
                CeleryIntegration(),
                RedisIntegration(),
            ],
            traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', 0.1)),
            environment=os.getenv('FLASK_ENV', 'production'),
            release=APP_VERSION,
            send_default_pii=False,
            before_send=_sentry_before_send,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    logger.info("Sentry initialized successfully")
    return True

def _sentry_before_send(event, hint):
    """Filter API keys out of request headers before sending to Sentry"""
    if 'request' in event and 'headers' in event['request']:
        headers = event['request']['headers']
        for header in ['Authorization', 'X-API-Key', 'xi-api-key', 'Cookie']:
            if header in headers:
                headers[header] = '[FILTERED]'
    return event

def capture_exception(exception: Exception, extra: dict = None):
    """Capture exception to Sentry (no-op when Sentry was never initialized)"""
    with sentry_sdk.push_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)

# ==============================================================================
# FLASK MIDDLEWARE
# ==============================================================================

def init_monitoring(app: Flask):
    """Initialize all monitoring for Flask app"""
    sentry_enabled = init_sentry()

    APP_INFO.info({
        'version': APP_VERSION,
        'environment': os.getenv('FLASK_ENV', 'production'),
        'sentry_enabled': str(sentry_enabled),
        'python_version': platform.python_version()
    })

    @app.before_request
    def start_timer():
        g.start_time = time.time()

    @app.after_request
    def record_request(response):
        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            endpoint = request.endpoint or 'unknown'

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response

    logger.info("Monitoring middleware initialized")

# ==============================================================================
# METRIC HELPERS
# ==============================================================================

def track_video_job(f):
    """Decorator to track whole-job metrics (outcome, wall time, active gauge)"""
    @wraps(f)
    def decorated(*args, **kwargs):
        ACTIVE_VIDEO_JOBS.inc()
        start_time = time.time()
        status = 'success'

        try:
            result = f(*args, **kwargs)
            if result is False:
                status = 'failed'
            return result
        except Exception:
            status = 'failed'
            raise
        finally:
            ACTIVE_VIDEO_JOBS.dec()
            VIDEO_JOB_COUNT.labels(status=status).inc()
            VIDEO_JOB_DURATION.observe(time.time() - start_time)

    return decorated

def track_composition(f):
    """Decorator to time ffmpeg composition runs"""
    @wraps(f)
    def decorated(*args, **kwargs):
        start_time = time.time()
        status = 'success'

        try:
            return f(*args, **kwargs)
        except Exception:
            status = 'failed'
            raise
        finally:
            COMPOSITION_DURATION.labels(status=status).observe(time.time() - start_time)

    return decorated

def record_voice_attempt(provider: str, status: str):
    VOICE_SYNTHESIS_COUNT.labels(provider=provider, status=status).inc()

def record_media_resolution(kind: str, method: str):
    MEDIA_RESOLUTION_COUNT.labels(kind=kind, method=method).inc()

def record_error(error: Exception, endpoint: str = 'unknown'):
    ERROR_COUNT.labels(error_type=type(error).__name__, endpoint=endpoint).inc()

# ==============================================================================
# SERVICE HEALTH TRACKING
# ==============================================================================

def update_service_status(service: str, is_healthy: bool):
    """Update service health status"""
    SERVICE_STATUS.labels(service=service).set(1 if is_healthy else 0)

def check_all_services(settings=None):
    """Check and update status of all services"""
    from backend.config import get_settings
    settings = settings or get_settings()

    services = {
        'ffmpeg': _check_ffmpeg(),
        'google_tts': bool(settings.google_credentials and os.path.exists(settings.google_credentials)),
        'elevenlabs': bool(settings.elevenlabs_api_key),
        'pexels': bool(settings.pexels_api_key),
        'tiktok': bool(settings.tiktok_client_key and settings.tiktok_client_secret),
    }
    if settings.progress_backend == 'redis' or settings.job_executor == 'celery':
        services['redis'] = _check_redis(settings.redis_url)

    for service, is_healthy in services.items():
        update_service_status(service, is_healthy)

    return services

def _check_redis(redis_url: str) -> bool:
    """Check if Redis is available"""
    import redis
    try:
        redis.Redis.from_url(redis_url, socket_connect_timeout=2).ping()
        return True
    except redis.RedisError:
        return False

def _check_ffmpeg() -> bool:
    """Check if FFmpeg is available"""
    import subprocess
    from backend.ffmpeg_tools import get_ffmpeg_path
    try:
        result = subprocess.run([get_ffmpeg_path(), '-version'], capture_output=True, timeout=5)
        return result.returncode == 0
    except (OSError, RuntimeError, subprocess.SubprocessError):
        return False

# ==============================================================================
# METRICS ENDPOINT BLUEPRINT
# ==============================================================================

metrics_bp = Blueprint('metrics', __name__)

@metrics_bp.route('/metrics')
def metrics():
    """Prometheus metrics endpoint"""
    check_all_services()
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

@metrics_bp.route('/health')
def health():
    """Health check endpoint for load balancers"""
    return {
        'status': 'healthy',
        'timestamp': time.time()
    }

@metrics_bp.route('/readiness')
def readiness():
    """Readiness check - ffmpeg is the only hard dependency"""
    services = check_all_services()

    if services.get('ffmpeg'):
        return {'status': 'ready', 'services': services}
    return {'status': 'not_ready', 'services': services}, 503
