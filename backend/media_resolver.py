"""
Media resolution for background video and music

Video: segment library -> cached clip -> Pexels search -> colour placeholder.
Music: TikTok sound URL (streamed by ffmpeg directly) -> cached mp3 -> silence.

Every identifier maps to one fixed cache location, so concurrent resolutions of
the same identifier at worst repeat work and overwrite with equivalent files.
"""

import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from backend import monitoring, segment_library
from backend.config import Settings, get_settings
from backend.errors import FFmpegError, MediaResolutionError, ProviderError
from backend.ffmpeg_tools import generate_silence, is_remote, run_ffmpeg
from backend.http_client import get_http_session

logger = logging.getLogger(__name__)

PEXELS_SEARCH_URL = "https://api.pexels.com/videos/search"
TIKTOK_API_BASE = "https://open.tiktokapis.com/v2"

MAX_CLIP_SECONDS = 30
PLACEHOLDER_VIDEO_SECONDS = 30
PLACEHOLDER_MUSIC_SECONDS = 30

VIDEO_SEARCH_TERMS = {
    'minecraft_parkour': 'minecraft parkour gameplay',
    'subway_surfers': 'subway surfers gameplay',
    'abstract': 'abstract motion graphics',
    'nature': 'nature landscape beautiful',
    'city': 'city urban timelapse',
}

PLACEHOLDER_COLORS = {
    'minecraft_parkour': '0x4CAF50',
    'subway_surfers': '0xFF9800',
    'abstract': '0x9C27B0',
    'nature': '0x4CAF50',
    'city': '0x607D8B',
}
DEFAULT_PLACEHOLDER_COLOR = '0x2196F3'

_UNSAFE_ID_RE = re.compile(r'[^A-Za-z0-9_-]+')


class ResolutionMethod(str, Enum):
    CACHED_LOCAL = "cached_local"
    PROVIDER_SEARCH = "provider_search"
    SYNTHESIZED_PLACEHOLDER = "synthesized_placeholder"
    REMOTE_STREAM = "remote_stream"


@dataclass(frozen=True)
class MediaAsset:
    identifier: str
    location: str   # Local file path or remote URL
    method: ResolutionMethod

    @property
    def is_remote(self) -> bool:
        return is_remote(self.location)

    def to_dict(self) -> Dict[str, Any]:
        return {'identifier': self.identifier, 'location': self.location, 'method': self.method.value}


def safe_identifier(identifier: str) -> str:
    """Identifiers become file names; anything outside [A-Za-z0-9_-] is replaced"""
    cleaned = _UNSAFE_ID_RE.sub('_', str(identifier or '')).strip('_')
    return cleaned[:64] or 'default'


def display_name(identifier: str) -> str:
    """'subway_surfers' -> 'Subway Surfers'"""
    return ' '.join(part.capitalize() for part in identifier.replace('-', '_').split('_') if part)


def is_trending_sound(identifier: str) -> bool:
    """TikTok sounds: 'tiktok_' prefix, all-digit ids, or ids carrying a music_id"""
    if not identifier:
        return False
    return identifier.startswith('tiktok_') or identifier.isdigit() or 'music_id' in identifier


def select_best_video_file(video: Dict[str, Any]) -> Optional[str]:
    """First HD (or >= 1080 wide) file, else the first mp4"""
    files = video.get('video_files') or []
    for f in files:
        if f.get('quality') == 'hd' or (f.get('width') or 0) >= 1080:
            return f.get('link')
    for f in files:
        if f.get('file_type') == 'video/mp4':
            return f.get('link')
    return None


def _usable(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


class MediaResolver:
    """Resolves background video / music identifiers to playable locations"""

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[random.Random] = None):
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()
        self._token_lock = threading.Lock()
        self._tiktok_token: Optional[str] = None
        self._tiktok_token_expires = 0.0

    # ========================================================================
    # VIDEO
    # ========================================================================

    def resolve_video(self, identifier: str) -> MediaAsset:
        identifier = safe_identifier(identifier)
        asset = self._resolve_video(identifier)
        monitoring.record_media_resolution('video', asset.method.value)
        logger.info(f"[MEDIA] Video '{identifier}' -> {asset.location} ({asset.method.value})")
        return asset

    def _resolve_video(self, identifier: str) -> MediaAsset:
        backgrounds_dir = self.settings.backgrounds_dir

        # 1. Segment library: specific segment, then random clip of the category
        segment = segment_library.find_segment(identifier, settings=self.settings)
        if segment is None:
            segment = segment_library.random_segment(identifier, settings=self.settings, rng=self.rng)
        if segment is not None:
            return MediaAsset(identifier, str(segment), ResolutionMethod.CACHED_LOCAL)

        # 2. Single cached clip
        cached = backgrounds_dir / f"{identifier}.mp4"
        if _usable(cached):
            return MediaAsset(identifier, str(cached), ResolutionMethod.CACHED_LOCAL)

        # 3. Stock footage search, cached into the category library
        if self.settings.pexels_api_key:
            clip_path = backgrounds_dir / identifier / f"{identifier}_pexels.mp4"
            try:
                video_url = self.search_stock_video(VIDEO_SEARCH_TERMS.get(identifier, identifier.replace('_', ' ')))
                if video_url:
                    self._download_clip(video_url, clip_path)
                    return MediaAsset(identifier, str(clip_path), ResolutionMethod.PROVIDER_SEARCH)
            except (ProviderError, FFmpegError, requests.RequestException, ValueError) as e:
                logger.warning(f"[MEDIA] Stock footage for '{identifier}' unavailable: {e}")

        # 4. Placeholder clip
        try:
            self.generate_placeholder_video(identifier, cached)
        except FFmpegError as e:
            raise MediaResolutionError(f"Could not produce background video for '{identifier}': {e}") from e
        return MediaAsset(identifier, str(cached), ResolutionMethod.SYNTHESIZED_PLACEHOLDER)

    def search_stock_video(self, query: str) -> Optional[str]:
        """Search Pexels for a portrait clip and return the best file URL"""
        response = get_http_session().get(
            PEXELS_SEARCH_URL,
            params={'query': query, 'per_page': 1, 'orientation': 'portrait'},
            headers={'Authorization': self.settings.pexels_api_key},
            timeout=self.settings.http_timeout,
        )
        if response.status_code != 200:
            raise ProviderError('pexels', f"HTTP {response.status_code}")

        videos = response.json().get('videos') or []
        if not videos:
            logger.info(f"[MEDIA] Pexels returned no results for '{query}'")
            return None
        return select_best_video_file(videos[0])

    def _download_clip(self, url: str, output_path: Path):
        """Fetch at most MAX_CLIP_SECONDS of a remote clip (stream copy)"""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        # Hidden temp name keeps half-written files out of random sampling
        temp_path = output_path.with_name(f".{output_path.stem}.downloading.mp4")
        try:
            run_ffmpeg(['-i', url, '-c', 'copy', '-t', str(MAX_CLIP_SECONDS), str(temp_path)],
                       timeout=self.settings.encode_timeout)
            if not _usable(temp_path):
                raise ProviderError('pexels', "downloaded clip is empty")
            temp_path.replace(output_path)
        finally:
            temp_path.unlink(missing_ok=True)

    def generate_placeholder_video(self, identifier: str, output_path: Path) -> Path:
        """Solid colour 1080x1920 clip with the category name centered"""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        color = PLACEHOLDER_COLORS.get(identifier, DEFAULT_PLACEHOLDER_COLOR)
        source = f"color=c={color}:size=1080x1920:duration={PLACEHOLDER_VIDEO_SECONDS}"
        encode = ['-c:v', 'libx264', '-preset', 'fast', '-crf', '23', '-pix_fmt', 'yuv420p']
        drawtext = (
            f"drawtext=text='{display_name(identifier)}':fontsize=60:fontcolor=white:"
            "x=(w-text_w)/2:y=(h-text_h)/2"
        )

        # Written under a hidden name so a failed encode never looks cached
        temp_path = output_path.with_name(f".{output_path.stem}.rendering.mp4")

        logger.info(f"[MEDIA] Generating placeholder video for '{identifier}'")
        try:
            try:
                run_ffmpeg(['-f', 'lavfi', '-i', source, '-vf', drawtext] + encode + [str(temp_path)],
                           timeout=self.settings.encode_timeout)
            except FFmpegError as e:
                # Builds without libfreetype have no drawtext
                logger.warning(f"[MEDIA] drawtext unavailable, plain placeholder: {e}")
                run_ffmpeg(['-f', 'lavfi', '-i', source] + encode + [str(temp_path)],
                           timeout=self.settings.encode_timeout)
            if not _usable(temp_path):
                raise FFmpegError("placeholder encode produced no output")
            temp_path.replace(output_path)
        finally:
            temp_path.unlink(missing_ok=True)
        return output_path

    # ========================================================================
    # MUSIC
    # ========================================================================

    def resolve_music(self, identifier: str) -> MediaAsset:
        asset = self._resolve_music(identifier)
        monitoring.record_media_resolution('music', asset.method.value)
        logger.info(f"[MEDIA] Music '{identifier}' -> {asset.location} ({asset.method.value})")
        return asset

    def _resolve_music(self, identifier: str) -> MediaAsset:
        if is_trending_sound(identifier) and self.settings.tiktok_client_key and self.settings.tiktok_client_secret:
            sound_id = identifier[len('tiktok_'):] if identifier.startswith('tiktok_') else identifier
            try:
                url = self.tiktok_sound_url(sound_id)
                if url:
                    return MediaAsset(identifier, url, ResolutionMethod.REMOTE_STREAM)
                logger.info(f"[MEDIA] TikTok sound {sound_id} has no play URL, using local cache")
            except (ProviderError, requests.RequestException, ValueError) as e:
                logger.warning(f"[MEDIA] TikTok sound {sound_id} unavailable: {e}")

        identifier = safe_identifier(identifier)
        music_path = self.settings.music_dir / f"{identifier}.mp3"
        if music_path.exists() and music_path.stat().st_size == 0:
            music_path.unlink()
        if music_path.exists():
            return MediaAsset(identifier, str(music_path), ResolutionMethod.CACHED_LOCAL)

        logger.info(f"[MEDIA] Generating placeholder audio for '{identifier}'")
        try:
            generate_silence(music_path, PLACEHOLDER_MUSIC_SECONDS, timeout=self.settings.encode_timeout)
        except FFmpegError as e:
            music_path.unlink(missing_ok=True)
            raise MediaResolutionError(f"Could not produce background music for '{identifier}': {e}") from e
        return MediaAsset(identifier, str(music_path), ResolutionMethod.SYNTHESIZED_PLACEHOLDER)

    def _tiktok_access_token(self) -> str:
        """Client-credentials token, cached until shortly before expiry"""
        with self._token_lock:
            if self._tiktok_token and time.time() < self._tiktok_token_expires:
                return self._tiktok_token

            response = get_http_session().post(
                f"{TIKTOK_API_BASE}/oauth/token/",
                data={
                    'client_key': self.settings.tiktok_client_key,
                    'client_secret': self.settings.tiktok_client_secret,
                    'grant_type': 'client_credentials',
                },
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.settings.http_timeout,
            )
            if response.status_code != 200:
                raise ProviderError('tiktok', f"token request failed: HTTP {response.status_code}")

            payload = response.json()
            data = payload.get('data') if isinstance(payload.get('data'), dict) else payload
            token = data.get('access_token') or data.get('accessToken')
            if not token:
                raise ProviderError('tiktok', "token response carried no access_token")

            self._tiktok_token = token
            self._tiktok_token_expires = time.time() + int(data.get('expires_in', 3600)) - 60
            return token

    def tiktok_sound_url(self, sound_id: str) -> Optional[str]:
        """Direct play URL of a TikTok sound (None when the API has none)"""
        response = get_http_session().get(
            f"{TIKTOK_API_BASE}/research/music/query/",
            params={'music_ids': sound_id},
            headers={'Authorization': f"Bearer {self._tiktok_access_token()}"},
            timeout=self.settings.http_timeout,
        )
        if response.status_code != 200:
            raise ProviderError('tiktok', f"sound query failed: HTTP {response.status_code}")

        music_list = (response.json().get('data') or {}).get('music_list') or []
        if not music_list:
            return None
        sound = music_list[0]
        if sound.get('play_url'):
            return sound['play_url']
        play_urls = sound.get('play_url_list') or []
        return play_urls[0] if play_urls else None
