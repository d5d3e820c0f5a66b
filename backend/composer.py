"""
Video composition engine

One ffmpeg pass: looped background scaled/cropped to 1080x1920, burned-in ASS
captions, a centered title card for the first seconds, voiceover mixed over
attenuated music. Output length is always voiceover + 0.5s.
"""

import logging
import shutil
import subprocess
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from backend import monitoring
from backend.captions import WordTiming, build_caption_groups, write_ass
from backend.config import Settings, get_settings
from backend.errors import CompositionError, FFmpegError, TitleCardError
from backend.ffmpeg_tools import get_ffmpeg_path, get_media_duration, is_remote
from backend.title_card import TitleCardRenderer

logger = logging.getLogger(__name__)

OUTPUT_WIDTH = 1080
OUTPUT_HEIGHT = 1920
OUTPUT_FPS = 30
TAIL_PAD_SECONDS = 0.5
TITLE_FADE_SECONDS = 0.3

VOICE_GAIN = 1.0
MUSIC_GAIN = 0.25        # Under voiceover
MUSIC_ONLY_GAIN = 0.8

ProgressCallback = Callable[[float, str], None]


@dataclass
class CompositionSpec:
    """Everything the composer needs for one output video"""
    background_video: str
    background_music: Optional[str]
    voiceover: Optional[str]
    output_path: Path
    target_duration: float = 60.0
    text: str = ''
    word_timings: List[WordTiming] = field(default_factory=list)
    title: Optional[str] = None
    card_duration: float = 0.0


def escape_filter_path(path) -> str:
    """Quote a file path for use inside an ffmpeg filter argument"""
    escaped = str(path).replace('\\', '/').replace(':', '\\:').replace("'", "'\\''")
    return f"'{escaped}'"


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """Translate one `-progress` key=value line into a percent (None if not a time marker)"""
    key, _, value = line.strip().partition('=')
    if key == 'progress' and value == 'end':
        return 100.0
    if key not in ('out_time_us', 'out_time_ms') or duration <= 0:
        return None
    try:
        # Both keys carry microseconds
        seconds = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0.0, min(100.0, seconds / duration * 100))


def build_compose_command(background_video: str, voiceover: Optional[str], output_path: Path,
                          duration: float, music: Optional[str] = None,
                          subtitles: Optional[Path] = None, title_image: Optional[Path] = None,
                          card_duration: float = 0.0) -> List[str]:
    """Build the single-pass ffmpeg command

    The background is looped with -stream_loop so any clip length covers the
    window, then trimmed; -t caps the output at exactly `duration`.
    """
    inputs = ['-stream_loop', '-1', '-i', str(background_video)]
    next_index = 1
    voice_index = music_index = title_index = None

    if voiceover:
        inputs += ['-i', str(voiceover)]
        voice_index, next_index = next_index, next_index + 1

    if music:
        if is_remote(music):
            inputs += ['-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '5']
        inputs += ['-i', str(music)]
        music_index, next_index = next_index, next_index + 1

    if title_image and card_duration > 0:
        inputs += ['-loop', '1', '-t', f"{card_duration:.3f}", '-i', str(title_image)]
        title_index = next_index

    filters = [
        f"[0:v]scale={OUTPUT_WIDTH}:{OUTPUT_HEIGHT}:force_original_aspect_ratio=increase,"
        f"crop={OUTPUT_WIDTH}:{OUTPUT_HEIGHT},setsar=1,"
        f"trim=duration={duration:.3f},setpts=PTS-STARTPTS[bg]"
    ]
    video_label = 'bg'

    if subtitles:
        filters.append(f"[{video_label}]ass={escape_filter_path(subtitles)}[cap]")
        video_label = 'cap'

    if title_index is not None:
        fade = min(TITLE_FADE_SECONDS, card_duration)
        fade_start = card_duration - fade
        filters.append(
            f"[{title_index}:v]format=rgba,fade=t=out:st={fade_start:.3f}:d={fade:.3f}:alpha=1[title]"
        )
        filters.append(
            f"[{video_label}][title]overlay=(W-w)/2:(H-h)/2:"
            f"enable='between(t,0,{card_duration:.3f})'[vout]"
        )
        video_label = 'vout'

    audio_label = None
    if voice_index is not None and music_index is not None:
        filters.append(
            f"[{voice_index}:a]volume={VOICE_GAIN}[voice];"
            f"[{music_index}:a]volume={MUSIC_GAIN}[music];"
            f"[voice][music]amix=inputs=2:duration=first:dropout_transition=2,"
            f"apad=whole_dur={duration:.3f}[aout]"
        )
        audio_label = 'aout'
    elif voice_index is not None:
        filters.append(f"[{voice_index}:a]volume={VOICE_GAIN},apad=whole_dur={duration:.3f}[aout]")
        audio_label = 'aout'
    elif music_index is not None:
        filters.append(f"[{music_index}:a]volume={MUSIC_ONLY_GAIN}[aout]")
        audio_label = 'aout'

    cmd = [get_ffmpeg_path(), '-hide_banner', '-y', '-loglevel', 'error'] + inputs + [
        '-filter_complex', ';'.join(filters),
        '-map', f"[{video_label}]",
    ]
    cmd += ['-map', f"[{audio_label}]"] if audio_label else ['-an']
    cmd += [
        '-t', f"{duration:.3f}",  # EXPLICIT duration - no -shortest
        '-c:v', 'libx264',
        '-preset', 'fast',
        '-crf', '23',
        '-pix_fmt', 'yuv420p',
        '-r', str(OUTPUT_FPS),
    ]
    if audio_label:
        cmd += ['-c:a', 'aac', '-b:a', '128k']
    cmd += [
        '-movflags', '+faststart',
        '-progress', 'pipe:1',
        '-nostats',
        str(output_path)
    ]
    return cmd


class VideoComposer:
    """Compose final videos; encodes run on a bounded ffmpeg pool"""

    def __init__(self, settings: Optional[Settings] = None,
                 title_renderer: Optional[TitleCardRenderer] = None):
        self.settings = settings or get_settings()
        self.title_renderer = title_renderer or TitleCardRenderer()
        self.timeout = self.settings.encode_timeout
        self._encode_pool = ThreadPoolExecutor(
            max_workers=self.settings.ffmpeg_workers,
            thread_name_prefix='ffmpeg'
        )

    def shutdown(self):
        self._encode_pool.shutdown(wait=False)

    @monitoring.track_composition
    def compose(self, spec: CompositionSpec, on_progress: Optional[ProgressCallback] = None) -> Path:
        output_path = Path(spec.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        voice_duration = 0.0
        if spec.voiceover and not is_remote(spec.voiceover):
            voice_duration = get_media_duration(spec.voiceover)
        if voice_duration <= 0:
            logger.warning(f"[COMPOSE] Could not probe voiceover, using nominal {spec.target_duration}s")
            voice_duration = float(spec.target_duration)
        final_duration = round(voice_duration + TAIL_PAD_SECONDS, 3)

        work_dir = Path(tempfile.mkdtemp(prefix=f"compose_{output_path.stem}_",
                                         dir=self._temp_root()))
        try:
            title_image = None
            card_duration = min(max(0.0, spec.card_duration or 0.0), final_duration)
            if spec.title and card_duration > 0:
                try:
                    title_image = self.title_renderer.render(spec.title, work_dir / 'title_card.png')
                except TitleCardError as e:
                    logger.warning(f"[COMPOSE] Continuing without title card: {e}")

            groups = build_caption_groups(spec.text, voice_duration, spec.word_timings)
            try:
                subtitles = write_ass(groups, work_dir / 'captions.ass')
            except OSError as e:
                raise CompositionError(f"Could not write captions: {e}") from e

            cmd = build_compose_command(
                spec.background_video, spec.voiceover, output_path, final_duration,
                music=spec.background_music, subtitles=subtitles,
                title_image=title_image, card_duration=card_duration
            )

            logger.info(f"[COMPOSE] voice={voice_duration:.2f}s final={final_duration:.2f}s "
                        f"captions={len(groups)} title={'yes' if title_image else 'no'} "
                        f"music={'yes' if spec.background_music else 'no'}")

            if on_progress:
                on_progress(0, "Starting video composition...")
            try:
                self._encode_pool.submit(self._run_encode, cmd, final_duration, on_progress).result()
            except FFmpegError as e:
                raise CompositionError(f"Video composition failed: {e}") from e
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise CompositionError("Video composition failed - output file not created")

        logger.info(f"[COMPOSE] Video saved: {output_path}")
        return output_path

    def _temp_root(self) -> str:
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        return str(self.settings.temp_dir)

    def _run_encode(self, cmd: List[str], duration: float,
                    on_progress: Optional[ProgressCallback] = None):
        """Run ffmpeg, streaming -progress output into the callback"""
        logger.debug(f"[COMPOSE] {' '.join(cmd)}")
        with tempfile.TemporaryFile(mode='w+') as stderr_file:
            try:
                process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file,
                                           text=True, bufsize=1)
            except OSError as e:
                raise FFmpegError(f"ffmpeg could not be started: {e}") from e

            timed_out = threading.Event()

            def kill():
                timed_out.set()
                process.kill()

            watchdog = threading.Timer(self.timeout, kill)
            watchdog.daemon = True
            watchdog.start()

            last_reported = -1
            try:
                for line in process.stdout:
                    percent = parse_progress_line(line, duration)
                    if percent is None or on_progress is None:
                        continue
                    if int(percent) > last_reported:
                        last_reported = int(percent)
                        on_progress(percent, f"Processing video: {last_reported}%")
                returncode = process.wait()
            finally:
                watchdog.cancel()
                if process.poll() is None:
                    process.kill()
                    process.wait()

            if timed_out.is_set():
                raise FFmpegError(f"ffmpeg timed out after {self.timeout}s")
            if returncode != 0:
                stderr_file.seek(0)
                stderr = stderr_file.read()
                logger.error(f"[COMPOSE] FFmpeg failed ({returncode}): {stderr[-800:]}")
                raise FFmpegError(f"ffmpeg exited with code {returncode}", stderr=stderr)
