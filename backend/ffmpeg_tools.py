"""
FFmpeg helpers shared by the voice, media and composition stages
"""

import logging
import re
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

import imageio_ffmpeg

from backend.errors import FFmpegError

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r'Duration: (\d+):(\d+):(\d+)\.(\d+)')


@lru_cache(maxsize=1)
def get_ffmpeg_path() -> str:
    """Get ffmpeg executable path

    A system ffmpeg is preferred (it normally ships drawtext and libass);
    otherwise the imageio_ffmpeg bundled binary is used.
    """
    system_ffmpeg = shutil.which('ffmpeg')
    if system_ffmpeg:
        return system_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def is_remote(location: Union[str, Path, None]) -> bool:
    return isinstance(location, str) and location.startswith(('http://', 'https://'))


def get_media_duration(file_path: Union[str, Path]) -> float:
    """Get duration of video or audio file using ffmpeg -i (works without ffprobe)"""
    try:
        result = subprocess.run([
            get_ffmpeg_path(), '-hide_banner', '-i', str(file_path)
        ], capture_output=True, text=True, timeout=30)
        # FFmpeg outputs duration to stderr
        match = _DURATION_RE.search(result.stderr)
        if match:
            hours, minutes, seconds, decimal = match.groups()
            fractional = int(decimal) / (10 ** len(decimal))
            return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + fractional
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not get media duration for {file_path}: {e}")
    return 0.0


def run_ffmpeg(args: List[str], timeout: Optional[float] = 300) -> subprocess.CompletedProcess:
    """Run ffmpeg with the given arguments (binary path is prepended)"""
    cmd = [get_ffmpeg_path(), '-hide_banner', '-y'] + [str(a) for a in args]
    logger.debug(f"[FFMPEG] {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise FFmpegError(f"ffmpeg timed out after {timeout}s") from e
    except OSError as e:
        raise FFmpegError(f"ffmpeg could not be started: {e}") from e

    if result.returncode != 0:
        # Log detailed error server-side, keep the raised message short
        logger.error(f"[FFMPEG] Failed ({result.returncode}): {result.stderr[-800:]}")
        raise FFmpegError(f"ffmpeg exited with code {result.returncode}", stderr=result.stderr)
    return result


def generate_silence(output_path: Path, duration: float, timeout: Optional[float] = 120) -> Path:
    """Write a silent stereo track of the given duration"""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    codec = 'libmp3lame' if output_path.suffix.lower() == '.mp3' else 'aac'
    run_ffmpeg([
        '-f', 'lavfi', '-i', 'anullsrc=channel_layout=stereo:sample_rate=44100',
        '-t', f"{duration:.3f}",
        '-c:a', codec, '-b:a', '192k',
        str(output_path)
    ], timeout=timeout)
    return output_path


def concat_audio(parts: List[Path], output_path: Path, timeout: Optional[float] = 300) -> Path:
    """Losslessly join audio files in order with the concat demuxer (stream copy)"""
    output_path = Path(output_path)
    list_file = output_path.with_suffix('.concat.txt')
    lines = []
    for part in parts:
        escaped = str(Path(part).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_file.write_text("\n".join(lines) + "\n", encoding='utf-8')
    try:
        run_ffmpeg([
            '-f', 'concat', '-safe', '0', '-i', str(list_file),
            '-c', 'copy', str(output_path)
        ], timeout=timeout)
    finally:
        list_file.unlink(missing_ok=True)
    return output_path
