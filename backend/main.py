"""
STORY SHORTS - Backend API
Flask server that turns stored story text into narrated vertical videos

A create request is acknowledged immediately; the job runs in the background
(worker pool or Celery) and clients poll the progress endpoint until the
snapshot reaches 100 or reports an error (percent null).
"""

from flask import Flask, request, jsonify, send_file, g, current_app
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import os
import time
import uuid
from pathlib import Path
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from dataclasses import dataclass
from enum import Enum

from backend import database, monitoring
from backend.config import Settings, get_settings
from backend.errors import ContentNotFoundError, MediaResolutionError
from backend.jobs import VideoJobOrchestrator
from backend.progress import create_progress_tracker
from backend.segment_library import list_categories, process_background_source, validate_category

API_VERSION = "1.0.0"
MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # Story text only, no uploads
MAX_STORY_LENGTH = 20_000

VIDEO_MIME_TYPES = {'.mp4': 'video/mp4', '.webm': 'video/webm', '.mov': 'video/quicktime'}


class ResponseStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"

# === DATA MODELS ===
@dataclass
class ApiResponse:
    """Standardized API response"""
    status: ResponseStatus
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": self.status.value}
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        if self.request_id:
            result["request_id"] = self.request_id
        return result


def error_response(message: str, code: str, http_status: int):
    return jsonify(ApiResponse(
        status=ResponseStatus.ERROR,
        error=message,
        error_code=code,
        request_id=getattr(g, 'request_id', None)
    ).to_dict()), http_status


def success_response(data: Dict[str, Any], http_status: int = 200):
    return jsonify(ApiResponse(
        status=ResponseStatus.SUCCESS,
        data=data,
        request_id=getattr(g, 'request_id', None)
    ).to_dict()), http_status

# === LOGGING SETUP ===
class RequestIdFilter(logging.Filter):
    """Tag records with the current request id ('background' for job threads)"""

    def filter(self, record):
        try:
            from flask import has_request_context
            if has_request_context():
                record.request_id = getattr(g, 'request_id', 'no-request-id')
            else:
                record.request_id = 'background'
        except RuntimeError:
            record.request_id = 'no-context'
        return True


def setup_logging(log_dir: Optional[Path] = None):
    """Configure production logging with rotation and request IDs"""
    log_dir = Path(log_dir or 'logs')
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = [logging.StreamHandler()]

    file_handler = RotatingFileHandler(
        log_dir / 'backend.log',
        maxBytes=10_000_000,  # 10MB
        backupCount=10
    )
    handlers.append(file_handler)

    log_format = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s'

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )

    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())

    return logging.getLogger(__name__)

# Initialize logging
logger = setup_logging(get_settings().log_dir)

# === FLASK APP FACTORY ===
def create_app(config=None):
    """Application factory

    `config` may carry prebuilt collaborators for tests: 'settings',
    'progress_tracker' and 'orchestrator'.
    """
    config = dict(config or {})
    settings: Settings = config.pop('settings', None) or get_settings()
    settings.ensure_directories()

    app = Flask(__name__)

    app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
    app.config['RATELIMIT_HEADERS_ENABLED'] = True
    app.config['start_time'] = time.time()  # For uptime in health endpoints
    app.config['PROPAGATE_EXCEPTIONS'] = False
    app.config['settings'] = settings

    tracker = config.pop('progress_tracker', None)
    orchestrator = config.pop('orchestrator', None)
    app.config.update(config)

    # Content store
    database.configure(settings.database_path)
    database.init_db()

    CORS(app,
         origins=settings.cors_origins,
         methods=["GET", "POST", "OPTIONS"],
         allow_headers=["Content-Type", "X-Request-ID"],
         expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
         max_age=3600)

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=["200 per minute"],
        storage_uri=settings.rate_limit_storage,
        headers_enabled=True
    )

    monitoring.init_monitoring(app)
    app.register_blueprint(monitoring.metrics_bp)

    # Background pipeline
    if tracker is None:
        tracker = create_progress_tracker(settings)
    if orchestrator is None:
        orchestrator = VideoJobOrchestrator(tracker, settings=settings)
    app.config['progress_tracker'] = tracker
    app.config['orchestrator'] = orchestrator

    register_middleware(app)
    register_error_handlers(app)
    register_routes(app, limiter)

    logger.info("=" * 70)
    logger.info("STORY SHORTS - Backend API")
    logger.info(f"   Version: {API_VERSION}")
    logger.info(f"   Environment: {os.getenv('FLASK_ENV', 'production')}")
    logger.info(f"   Progress backend: {tracker.backend}")
    logger.info(f"   Job executor: {settings.job_executor} ({settings.job_workers} workers)")
    logger.info(f"   FFmpeg workers: {settings.ffmpeg_workers}")
    logger.info("=" * 70)

    return app

# === MIDDLEWARE ===
def register_middleware(app):
    """Register application middleware"""

    @app.before_request
    def before_request():
        """Attach request ID and start timer"""
        g.request_id = request.headers.get('X-Request-ID', uuid.uuid4().hex)
        g.start_time = time.time()
        logger.info(f"--> {request.method} {request.path} from {get_remote_address()}")

    @app.after_request
    def after_request(response):
        """Add security headers and log response"""
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        if os.getenv('FLASK_ENV') == 'production':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            logger.info(f"<-- {response.status_code} in {duration:.3f}s")

        return response

# === HELPERS ===
def safe_path_join(base: Path, *parts: str) -> Path:
    """Safely join paths preventing directory traversal"""
    base_resolved = base.resolve()
    candidate = (base / Path(*parts)).resolve()

    if base_resolved == candidate or base_resolved in candidate.parents:
        return candidate
    raise ValueError("Path traversal detected")


def _orchestrator() -> VideoJobOrchestrator:
    return current_app.config['orchestrator']


def _settings() -> Settings:
    return current_app.config['settings']


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

# === ERROR HANDLERS ===
def register_error_handlers(app):
    """Register global error handlers"""

    @app.errorhandler(400)
    def bad_request(error):
        return error_response("Bad request", "BAD_REQUEST", 400)

    @app.errorhandler(404)
    def not_found(error):
        return error_response("Resource not found", "NOT_FOUND", 404)

    @app.errorhandler(413)
    def payload_too_large(error):
        return error_response("Request body too large", "PAYLOAD_TOO_LARGE", 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return error_response("Rate limit exceeded", "RATE_LIMIT_EXCEEDED", 429)

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}")
        return error_response("Internal server error", "INTERNAL_ERROR", 500)

    @app.errorhandler(503)
    def service_unavailable(error):
        return error_response("Service temporarily unavailable", "SERVICE_UNAVAILABLE", 503)

    @app.errorhandler(ContentNotFoundError)
    def content_not_found(error):
        return error_response(str(error), "CONTENT_NOT_FOUND", 404)

# === ROUTES ===
def register_routes(app, limiter):
    """Register all application routes"""

    # === CONTENT ===
    @app.route('/api/v1/content', methods=['POST'])
    @limiter.limit("30 per minute")
    def create_content():
        """Store externally generated story text"""
        data = _json_body()
        text = data.get('generatedText') or data.get('text')
        if not isinstance(text, str) or not text.strip():
            return error_response("Missing required field: generatedText", "MISSING_FIELD", 400)
        if len(text) > MAX_STORY_LENGTH:
            return error_response(f"Story text exceeds {MAX_STORY_LENGTH} characters",
                                  "TEXT_TOO_LONG", 400)

        prompt = data.get('prompt')
        content_id = database.create_content(text, prompt=prompt if isinstance(prompt, str) else None)
        logger.info(f"[CONTENT] Stored content {content_id} ({len(text)} chars)")
        return success_response({'id': content_id}, 201)

    # === VIDEO CREATION ===
    @app.route('/api/v1/videos/create', methods=['POST'])
    @limiter.limit("10 per minute")
    def create_video():
        """Acknowledge a video job; composition continues in the background"""
        data = _json_body()
        for name in ('contentId', 'backgroundMusic', 'backgroundVideo'):
            if data.get(name) in (None, ''):
                return error_response(f"Missing required field: {name}", "MISSING_FIELD", 400)

        content_id = data['contentId']
        result = _orchestrator().submit(content_id, str(data['backgroundMusic']),
                                        str(data['backgroundVideo']))
        logger.info(f"[VIDEO] Job accepted for content {content_id}")
        return jsonify(result), 202

    @app.route('/api/v1/videos/progress/<content_id>', methods=['GET'])
    @limiter.exempt
    def video_progress(content_id):
        """Raw progress snapshot (polled every second or so by clients)"""
        return jsonify(current_app.config['progress_tracker'].get(content_id))

    @app.route('/api/v1/videos/<content_id>', methods=['GET'])
    def get_video(content_id):
        """Persisted result of the last job for a content record"""
        content = database.get_content(content_id)
        if not content:
            raise ContentNotFoundError(content_id)

        video_url = content.get('video_url')
        download_url = None
        if video_url:
            download_url = f"/api/v1/videos/file/{Path(video_url).name}"

        return success_response({
            'contentId': content['id'],
            'status': content.get('status'),
            'videoUrl': video_url,
            'voiceoverUrl': content.get('voiceover_url'),
            'downloadUrl': download_url,
            'backgroundMusic': content.get('background_music'),
            'backgroundVideo': content.get('background_video'),
            'error': content.get('error'),
            'job': _orchestrator().get_job(content_id),
        })

    @app.route('/api/v1/videos/file/<path:filename>', methods=['GET'])
    def serve_video(filename):
        """Stream a finished video (range requests supported)"""
        try:
            video_path = safe_path_join(_settings().output_dir, filename)
        except ValueError:
            return error_response("Invalid path", "INVALID_PATH", 400)

        if not video_path.is_file():
            return error_response("Video not found", "VIDEO_NOT_FOUND", 404)

        mime_type = VIDEO_MIME_TYPES.get(video_path.suffix.lower(), 'application/octet-stream')
        return send_file(
            video_path,
            mimetype=mime_type,
            conditional=True,  # Enable range requests
            max_age=3600
        )

    # === BACKGROUND LIBRARY ===
    @app.route('/api/v1/backgrounds/list', methods=['GET'])
    def list_backgrounds():
        """Segment library inventory by category"""
        categories = list_categories(_settings())
        return success_response({
            'categories': categories,
            'total': sum(c['count'] for c in categories.values()),
        })

    @app.route('/api/v1/backgrounds/setup', methods=['POST'])
    @limiter.limit("5 per hour")
    def setup_background():
        """Download a gameplay video and cut it into library segments"""
        data = _json_body()
        url = data.get('url')
        category = data.get('category')
        if not url or not category:
            return error_response("url and category are required", "MISSING_FIELD", 400)
        if not str(url).startswith(('http://', 'https://')):
            return error_response("url must be http(s)", "INVALID_URL", 400)

        try:
            validate_category(category)
            segments = process_background_source(url, category, settings=_settings())
        except ValueError as e:
            return error_response(str(e), "INVALID_CATEGORY", 400)
        except MediaResolutionError as e:
            logger.error(f"[BACKGROUNDS] Setup failed for {url}: {e}")
            monitoring.record_error(e, endpoint='setup_background')
            return error_response(str(e), "DOWNLOAD_FAILED", 502)

        return success_response({
            'category': category,
            'segments': segments,
            'count': len(segments),
        }, 201)


# === MAIN ===
# WSGI: waitress-serve --call backend.main:create_app
if __name__ == '__main__':
    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV') == 'development'

    if debug:
        print("[INFO] Running in DEVELOPMENT mode with Flask dev server")
        app.run(
            host='0.0.0.0',
            port=port,
            debug=True,
            threaded=True
        )
    else:
        from waitress import serve

        print("=" * 60)
        print("[INFO] Starting PRODUCTION server")
        print(f"[INFO] Server will be available at: http://0.0.0.0:{port}")
        print("=" * 60)
        serve(
            app,
            host='0.0.0.0',
            port=port,
            threads=8,
            connection_limit=200,
            channel_timeout=120,
            expose_tracebacks=False  # SECURITY: Don't expose tracebacks
        )
