"""
Service configuration

All settings come from environment variables. A .env file in the repository
root (or the current working directory) is loaded first.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from parent directory (where .env file is)
_script_dir = Path(__file__).resolve().parent
_root_dir = _script_dir.parent
_env_path = _root_dir / '.env'
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _default_workers() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass
class Settings:
    """Runtime settings for the web process and the background workers"""

    # Filesystem layout
    media_dir: Path = field(default_factory=lambda: _root_dir / 'media')
    output_dir: Path = field(default_factory=lambda: _root_dir / 'uploads')
    temp_dir: Path = field(default_factory=lambda: _root_dir / 'temp')
    log_dir: Path = field(default_factory=lambda: Path('logs'))
    database_path: Path = field(default_factory=lambda: _root_dir / 'data' / 'content.db')

    # Provider credentials
    google_credentials: Optional[str] = None
    google_voice: str = 'en-US-Neural2-D'
    edge_voice: str = 'en-US-GuyNeural'
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: str = 'pNInz6obpgDQGcFmaJgB'
    openai_api_key: Optional[str] = None
    pexels_api_key: Optional[str] = None
    tiktok_client_key: Optional[str] = None
    tiktok_client_secret: Optional[str] = None

    # Timeouts (seconds)
    http_timeout: int = 30
    tts_timeout: int = 120
    encode_timeout: int = 900

    # Concurrency
    ffmpeg_workers: int = field(default_factory=_default_workers)
    job_workers: int = field(default_factory=_default_workers)
    job_executor: str = 'thread'

    # Progress tracking
    progress_backend: str = 'memory'
    redis_url: str = 'redis://localhost:6379/0'
    progress_grace_seconds: float = 5.0

    # Web
    cors_origins: List[str] = field(default_factory=lambda: ['http://localhost:3000'])
    rate_limit_storage: str = 'memory://'

    @property
    def backgrounds_dir(self) -> Path:
        return self.media_dir / 'backgrounds'

    @property
    def music_dir(self) -> Path:
        return self.media_dir / 'music'

    @property
    def sources_dir(self) -> Path:
        return self.media_dir / 'sources'

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from the process environment"""
        settings = cls()

        if os.getenv('MEDIA_DIR'):
            settings.media_dir = Path(os.environ['MEDIA_DIR'])
        if os.getenv('OUTPUT_DIR'):
            settings.output_dir = Path(os.environ['OUTPUT_DIR'])
        if os.getenv('TEMP_DIR'):
            settings.temp_dir = Path(os.environ['TEMP_DIR'])
        if os.getenv('LOG_DIR'):
            settings.log_dir = Path(os.environ['LOG_DIR'])
        if os.getenv('DATABASE_PATH'):
            settings.database_path = Path(os.environ['DATABASE_PATH'])

        settings.google_credentials = os.getenv('GOOGLE_APPLICATION_CREDENTIALS')
        settings.google_voice = os.getenv('GOOGLE_TTS_VOICE', settings.google_voice)
        settings.edge_voice = os.getenv('EDGE_TTS_VOICE', settings.edge_voice)
        settings.elevenlabs_api_key = os.getenv('ELEVENLABS_API_KEY')
        settings.elevenlabs_voice_id = os.getenv('ELEVENLABS_VOICE_ID', settings.elevenlabs_voice_id)
        settings.openai_api_key = os.getenv('OPENAI_API_KEY')
        settings.pexels_api_key = os.getenv('PEXELS_API_KEY')
        settings.tiktok_client_key = os.getenv('TIKTOK_CLIENT_KEY')
        settings.tiktok_client_secret = os.getenv('TIKTOK_CLIENT_SECRET')

        settings.http_timeout = _env_int('HTTP_TIMEOUT', settings.http_timeout)
        settings.tts_timeout = _env_int('TTS_TIMEOUT', settings.tts_timeout)
        settings.encode_timeout = _env_int('ENCODE_TIMEOUT', settings.encode_timeout)

        settings.ffmpeg_workers = max(1, _env_int('FFMPEG_WORKERS', settings.ffmpeg_workers))
        settings.job_workers = max(1, _env_int('JOB_WORKERS', settings.job_workers))
        settings.job_executor = os.getenv('JOB_EXECUTOR', settings.job_executor).lower()

        settings.progress_backend = os.getenv('PROGRESS_BACKEND', settings.progress_backend).lower()
        settings.redis_url = os.getenv('REDIS_URL', settings.redis_url)
        settings.progress_grace_seconds = _env_float('PROGRESS_GRACE_SECONDS', settings.progress_grace_seconds)

        origins = os.getenv('CORS_ORIGINS')
        if origins:
            settings.cors_origins = [o.strip() for o in origins.split(',') if o.strip()]
        settings.rate_limit_storage = os.getenv('RATELIMIT_STORAGE_URI', settings.rate_limit_storage)

        return settings

    def ensure_directories(self):
        """Create the media / output / temp directories"""
        for path in (self.media_dir, self.backgrounds_dir, self.music_dir,
                     self.sources_dir, self.output_dir, self.temp_dir):
            path.mkdir(parents=True, exist_ok=True)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Optional[Settings]):
    """Replace the process-wide settings (None re-reads the environment)"""
    global _settings
    _settings = settings
