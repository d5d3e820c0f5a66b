"""
Background segment library

Long gameplay videos are downloaded once with yt-dlp into media/sources/<category>/
and cut into fixed-length clips under media/backgrounds/<category>/. The media
resolver samples those clips at random for bare category identifiers.
"""

import logging
import random
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yt_dlp

from backend.config import Settings, get_settings
from backend.errors import FFmpegError, MediaResolutionError
from backend.ffmpeg_tools import get_ffmpeg_path, get_media_duration, run_ffmpeg

logger = logging.getLogger(__name__)

SEGMENT_SECONDS = 120
MAX_SEGMENTS = 10
UNKNOWN_SOURCE_SECONDS = 1200  # Assumed length when the source can't be probed

_CATEGORY_RE = re.compile(r'^[A-Za-z0-9_-]{1,64}$')
_YOUTUBE_RE = re.compile(r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([^&\n?#/]+)')
_TIKTOK_RE = re.compile(r'tiktok\.com/@[\w.]+/video/(\d+)')


def validate_category(category: str) -> str:
    """Category names become directory names - letters, digits, '_' and '-' only"""
    if not category or not _CATEGORY_RE.match(category):
        raise ValueError(f"Invalid category name: {category!r}")
    return category


def extract_video_id(url: str) -> str:
    """Extract video ID from YouTube or TikTok URL (timestamp when unrecognized)"""
    match = _YOUTUBE_RE.search(url or '')
    if match:
        return match.group(1)
    match = _TIKTOK_RE.search(url or '')
    if match:
        return f"tiktok_{match.group(1)}"
    return str(int(time.time() * 1000))


def _video_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.glob('*.mp4')
        if not p.name.startswith('.') and p.stat().st_size > 0
    )


def find_segment(identifier: str, settings: Optional[Settings] = None) -> Optional[Path]:
    """Look up a specific segment id (file stem) across every category"""
    settings = settings or get_settings()
    root = settings.backgrounds_dir
    if not root.is_dir():
        return None
    for category_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        candidate = category_dir / f"{identifier}.mp4"
        if candidate.is_file() and candidate.stat().st_size > 0:
            return candidate
    return None


def random_segment(category: str, settings: Optional[Settings] = None,
                   rng: Optional[random.Random] = None) -> Optional[Path]:
    """Pick a random clip from a category directory (None when empty)"""
    settings = settings or get_settings()
    files = _video_files(settings.backgrounds_dir / category)
    if not files:
        return None
    return (rng or random).choice(files)


def download_source_video(url: str, category: str, settings: Optional[Settings] = None) -> Path:
    """Download a source video with yt-dlp (reused when already present)"""
    settings = settings or get_settings()
    category = validate_category(category)
    category_dir = settings.sources_dir / category
    category_dir.mkdir(parents=True, exist_ok=True)

    stem = f"{category}_{extract_video_id(url)}"
    output_path = category_dir / f"{stem}.mp4"
    if output_path.exists() and output_path.stat().st_size > 0:
        logger.info(f"[SEGMENTS] Source already downloaded: {output_path}")
        return output_path

    ydl_config = {
        'format': 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best',
        'outtmpl': str(category_dir / f"{stem}.%(ext)s"),
        'merge_output_format': 'mp4',
        'noplaylist': True,
        'quiet': True,
        'no_warnings': True,
        'ffmpeg_location': get_ffmpeg_path(),
    }

    logger.info(f"[SEGMENTS] Downloading {url}")
    try:
        with yt_dlp.YoutubeDL(ydl_config) as ydl:
            ydl.download([url])
    except yt_dlp.utils.DownloadError as e:
        raise MediaResolutionError(f"Download failed: {e}") from e

    if not output_path.exists():
        # yt-dlp may keep the container it downloaded
        matches = [p for p in category_dir.glob(f"{stem}.*") if p.suffix not in ('.part', '.ytdl')]
        if not matches:
            raise MediaResolutionError("Downloaded file not found")
        matches[0].rename(output_path)

    size_mb = output_path.stat().st_size / 1024 / 1024
    logger.info(f"[SEGMENTS] Downloaded: {output_path} ({size_mb:.2f} MB)")
    return output_path


def cut_into_segments(source: Path, category: str, segment_seconds: int = SEGMENT_SECONDS,
                      max_segments: int = MAX_SEGMENTS,
                      settings: Optional[Settings] = None) -> List[Dict[str, Any]]:
    """Stream-copy the source into numbered clips in the category library"""
    settings = settings or get_settings()
    category = validate_category(category)
    source = Path(source)
    output_dir = settings.backgrounds_dir / category
    output_dir.mkdir(parents=True, exist_ok=True)

    duration = get_media_duration(source) or UNKNOWN_SOURCE_SECONDS
    count = min(max(1, int(duration // segment_seconds)), max_segments)

    segments = []
    for i in range(count):
        start = i * segment_seconds
        number = i + 1
        output_path = output_dir / f"{source.stem}_segment_{number}.mp4"
        try:
            run_ffmpeg([
                '-i', str(source),
                '-ss', str(start), '-t', str(segment_seconds),
                '-c', 'copy', '-avoid_negative_ts', 'make_zero',
                str(output_path)
            ], timeout=settings.encode_timeout)
        except FFmpegError as e:
            logger.warning(f"[SEGMENTS] Segment {number} of {source.name} failed: {e}")
            continue

        if output_path.exists() and output_path.stat().st_size > 0:
            segments.append({
                'id': output_path.stem,
                'path': str(output_path),
                'category': category,
                'segmentNumber': number,
                'startTime': start,
                'duration': segment_seconds,
            })

    logger.info(f"[SEGMENTS] Cut {len(segments)}/{count} segments from {source.name}")
    return segments


def process_background_source(url: str, category: str,
                              settings: Optional[Settings] = None) -> List[Dict[str, Any]]:
    """Download a gameplay video and add its segments to the library"""
    source = download_source_video(url, category, settings=settings)
    return cut_into_segments(source, category, settings=settings)


def list_categories(settings: Optional[Settings] = None) -> Dict[str, Dict[str, Any]]:
    """Inventory of the segment library: category -> {count, files}"""
    settings = settings or get_settings()
    root = settings.backgrounds_dir
    categories = {}
    if not root.is_dir():
        return categories

    for category_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        files = _video_files(category_dir)
        if files:
            categories[category_dir.name] = {
                'count': len(files),
                'files': [{'id': f.stem, 'name': f.name} for f in files],
            }
    return categories
