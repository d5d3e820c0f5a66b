# Voice synthesis - fixed provider chain with fallback
# Google Cloud TTS -> Edge-TTS -> ElevenLabs -> silent placeholder

import asyncio
import base64
import logging
import math
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import soundfile as sf

from backend import monitoring
from backend.captions import WordTiming
from backend.config import Settings, get_settings
from backend.errors import ProviderError, VoiceSynthesisError
from backend.ffmpeg_tools import concat_audio, get_media_duration
from backend.http_client import get_http_session

logger = logging.getLogger(__name__)

EDGE_CHUNK_LIMIT = 1900            # Characters per Edge-TTS request
GOOGLE_CHUNK_LIMIT = 4500          # Google caps requests at 5000 bytes
EDGE_TICKS_PER_SECOND = 10_000_000  # WordBoundary offsets are 100ns ticks
BOUNDARY_LOOKAHEAD = 4             # Script tokens searched per boundary word
PLACEHOLDER_WPM = 150
PLACEHOLDER_MIN_SECONDS = 5
PLACEHOLDER_MAX_SECONDS = 60
PLACEHOLDER_SAMPLE_RATE = 24000

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_MODEL = "eleven_multilingual_v2"
OPENAI_TRANSCRIPTION_URL = "https://api.openai.com/v1/audio/transcriptions"

_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+')


class VoiceMethod(str, Enum):
    GOOGLE_CLOUD = "google_cloud"
    EDGE_TTS = "edge_tts"
    ELEVENLABS = "elevenlabs"
    PLACEHOLDER = "placeholder"


@dataclass
class VoiceTrack:
    """Narration audio plus optional per-word timings"""
    text: str
    audio_path: Path
    duration: float
    word_timings: List[WordTiming] = field(default_factory=list)
    method: VoiceMethod = VoiceMethod.PLACEHOLDER

    def __post_init__(self):
        self.audio_path = Path(self.audio_path)
        self.duration = max(0.0, float(self.duration or 0.0))
        timings = [
            WordTiming(t.word, t.start, max(t.start, t.end))
            for t in self.word_timings
        ]
        self.word_timings = sorted(timings, key=lambda t: t.start)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audio_path": str(self.audio_path),
            "duration": self.duration,
            "method": self.method.value,
            "word_count": len(self.word_timings),
        }


# ============================================================================
# HELPERS
# ============================================================================

def estimate_placeholder_duration(text: str) -> int:
    """Reading time at 150 wpm, clamped to [5, 60] seconds"""
    words = len((text or '').split())
    seconds = math.ceil(words / PLACEHOLDER_WPM * 60)
    return min(PLACEHOLDER_MAX_SECONDS, max(PLACEHOLDER_MIN_SECONDS, seconds))


def _split_long_sentence(sentence: str, limit: int) -> List[str]:
    pieces = []
    current = ""
    for word in sentence.split():
        # A single word longer than the limit is hard-cut
        while len(word) > limit:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:limit])
            word = word[limit:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) > limit:
            pieces.append(current)
            current = word
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def split_text_into_chunks(text: str, limit: int = EDGE_CHUNK_LIMIT) -> List[str]:
    """Split text on sentence boundaries into chunks of at most `limit` chars

    Sentences longer than the limit are split on word boundaries. Order is
    preserved, so joining the chunks with spaces gives back the words of the
    original text.
    """
    text = ' '.join((text or '').split())
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        if not sentence:
            continue
        if len(sentence) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split_long_sentence(sentence, limit))
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) > limit:
            chunks.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def words_from_character_alignment(characters: List[str], starts: List[float],
                                   ends: List[float]) -> List[WordTiming]:
    """Group character-level alignment into words split on whitespace

    Word start is its first character's start, word end its last character's end.
    """
    words = []
    buffer = []
    word_start = word_end = 0.0

    for char, start, end in zip(characters, starts, ends):
        if char.isspace():
            if buffer:
                words.append(WordTiming(''.join(buffer), word_start, word_end))
                buffer = []
            continue
        if not buffer:
            word_start = float(start)
        buffer.append(char)
        word_end = float(end)

    if buffer:
        words.append(WordTiming(''.join(buffer), word_start, word_end))
    return words


def _word_core(word: str) -> str:
    return ''.join(ch for ch in word if ch.isalnum()).lower()


def restore_punctuation(timings: List[WordTiming], text: str) -> List[WordTiming]:
    """Swap bare boundary words for the matching script tokens, in order

    WordBoundary events carry words without their punctuation; the caption
    segmenter needs the sentence ends back. Unmatched words are kept as-is.
    """
    tokens = text.split()
    restored = []
    cursor = 0

    for timing in timings:
        word = timing.word
        core = _word_core(word)
        if core:
            for j in range(cursor, min(cursor + BOUNDARY_LOOKAHEAD, len(tokens))):
                if _word_core(tokens[j]) == core:
                    word, cursor = tokens[j], j + 1
                    break
        restored.append(WordTiming(word, timing.start, timing.end))
    return restored


def _require_output(path: Path, provider: str):
    if not path.exists() or path.stat().st_size == 0:
        raise ProviderError(provider, "synthesis produced empty output")


# ============================================================================
# PROVIDERS
# ============================================================================

class VoiceProviderBase(ABC):
    method: VoiceMethod

    @property
    def provider_name(self) -> str:
        return self.method.value

    @abstractmethod
    def is_available(self) -> bool: pass

    @abstractmethod
    def synthesize(self, text: str, output_path: Path,
                   options: Optional[Dict[str, Any]] = None) -> VoiceTrack: pass


class GoogleCloudTTSProvider(VoiceProviderBase):
    """Google Cloud Text-to-Speech with service-account credentials (no word timings)"""
    method = VoiceMethod.GOOGLE_CLOUD

    def __init__(self, settings: Settings):
        self.credentials_path = settings.google_credentials
        self.voice = settings.google_voice
        self.timeout = settings.tts_timeout

    def is_available(self) -> bool:
        return bool(self.credentials_path) and Path(self.credentials_path).exists()

    def _client(self):
        from google.cloud import texttospeech
        from google.oauth2 import service_account

        credentials = service_account.Credentials.from_service_account_file(
            str(self.credentials_path),
            scopes=["https://www.googleapis.com/auth/cloud-platform"],
        )
        return texttospeech.TextToSpeechClient(credentials=credentials)

    def synthesize(self, text, output_path, options=None):
        from google.cloud import texttospeech

        voice_name = (options or {}).get('voice') or self.voice
        language_code = '-'.join(voice_name.split('-')[:2])
        output_path = Path(output_path).with_suffix('.mp3')
        output_path.parent.mkdir(parents=True, exist_ok=True)

        client = self._client()
        voice = texttospeech.VoiceSelectionParams(language_code=language_code, name=voice_name)
        audio_config = texttospeech.AudioConfig(audio_encoding=texttospeech.AudioEncoding.MP3)

        chunks = split_text_into_chunks(text, GOOGLE_CHUNK_LIMIT)
        if not chunks:
            raise ProviderError(self.provider_name, "no text to synthesize")

        parts = []
        try:
            for i, chunk in enumerate(chunks):
                response = client.synthesize_speech(
                    input=texttospeech.SynthesisInput(text=chunk),
                    voice=voice,
                    audio_config=audio_config,
                    timeout=self.timeout,
                )
                part = output_path.with_name(f"{output_path.stem}_g{i}.mp3")
                part.write_bytes(response.audio_content)
                parts.append(part)

            if len(parts) == 1:
                shutil.move(str(parts[0]), str(output_path))
            else:
                concat_audio(parts, output_path)
        finally:
            for part in parts:
                part.unlink(missing_ok=True)

        _require_output(output_path, self.provider_name)
        duration = get_media_duration(output_path)
        logger.info(f"[VOICE] Google Cloud TTS: {duration:.1f}s ({voice_name})")
        return VoiceTrack(text, output_path, duration, [], self.method)


class EdgeTTSProvider(VoiceProviderBase):
    """Edge-TTS streaming synthesis with WordBoundary timings"""
    method = VoiceMethod.EDGE_TTS

    def __init__(self, settings: Settings):
        self.voice = settings.edge_voice
        self.openai_api_key = settings.openai_api_key
        self.timeout = settings.tts_timeout
        self._edge_tts_available = None

    def is_available(self) -> bool:
        """Check if edge-tts can be imported"""
        if self._edge_tts_available is None:
            try:
                import edge_tts  # noqa: F401
                self._edge_tts_available = True
            except ImportError:
                self._edge_tts_available = False
        return self._edge_tts_available

    async def _stream_chunk(self, text: str, voice: str, output_path: Path) -> List[WordTiming]:
        """Write one chunk's audio and collect its word boundaries (chunk-relative)"""
        import edge_tts

        communicate = edge_tts.Communicate(text, voice, boundary="WordBoundary")
        timings = []
        with open(output_path, 'wb') as audio_file:
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    audio_file.write(chunk["data"])
                elif chunk["type"] == "WordBoundary":
                    start = chunk["offset"] / EDGE_TICKS_PER_SECOND
                    end = (chunk["offset"] + chunk["duration"]) / EDGE_TICKS_PER_SECOND
                    timings.append(WordTiming(chunk["text"], start, end))
        return restore_punctuation(timings, text)

    def synthesize(self, text, output_path, options=None):
        voice = (options or {}).get('voice') or self.voice
        output_path = Path(output_path).with_suffix('.mp3')
        output_path.parent.mkdir(parents=True, exist_ok=True)

        chunks = split_text_into_chunks(text, EDGE_CHUNK_LIMIT)
        if not chunks:
            raise ProviderError(self.provider_name, "no text to synthesize")
        if len(chunks) > 1:
            logger.info(f"[VOICE] Edge-TTS: splitting {len(text)} chars into {len(chunks)} chunks")

        parts = []
        word_timings: List[WordTiming] = []
        offset = 0.0
        try:
            for i, chunk in enumerate(chunks):
                part = output_path.with_name(f"{output_path.stem}_e{i}.mp3")
                parts.append(part)
                chunk_timings = asyncio.run(
                    asyncio.wait_for(self._stream_chunk(chunk, voice, part), timeout=self.timeout)
                )
                _require_output(part, self.provider_name)

                word_timings.extend(
                    WordTiming(t.word, t.start + offset, t.end + offset) for t in chunk_timings
                )
                chunk_duration = get_media_duration(part)
                if chunk_duration <= 0 and chunk_timings:
                    chunk_duration = chunk_timings[-1].end
                offset += chunk_duration

            if len(parts) == 1:
                shutil.move(str(parts[0]), str(output_path))
            else:
                concat_audio(parts, output_path)
        finally:
            for part in parts:
                part.unlink(missing_ok=True)

        _require_output(output_path, self.provider_name)
        duration = get_media_duration(output_path) or offset

        if not word_timings and self.openai_api_key:
            word_timings = self._transcribe_word_timings(output_path)

        logger.info(f"[VOICE] Edge-TTS: {duration:.1f}s, {len(word_timings)} word timings ({voice})")
        return VoiceTrack(text, output_path, duration, word_timings, self.method)

    def _transcribe_word_timings(self, audio_path: Path) -> List[WordTiming]:
        """Recover word timings with a Whisper transcription pass (best effort)"""
        session = get_http_session()
        try:
            with open(audio_path, 'rb') as audio_file:
                response = session.post(
                    OPENAI_TRANSCRIPTION_URL,
                    headers={'Authorization': f'Bearer {self.openai_api_key}'},
                    data={
                        'model': 'whisper-1',
                        'response_format': 'verbose_json',
                        'timestamp_granularities[]': 'word',
                    },
                    files={'file': (audio_path.name, audio_file, 'audio/mpeg')},
                    timeout=self.timeout,
                )
            if response.status_code != 200:
                logger.warning(f"[VOICE] Transcription failed: HTTP {response.status_code}")
                return []
            words = response.json().get('words') or []
        except (OSError, ValueError) as e:
            logger.warning(f"[VOICE] Transcription failed: {e}")
            return []

        return [
            WordTiming(w['word'], float(w['start']), float(w['end']))
            for w in words
            if 'word' in w and 'start' in w and 'end' in w
        ]


class ElevenLabsProvider(VoiceProviderBase):
    """ElevenLabs synthesis with character alignment"""
    method = VoiceMethod.ELEVENLABS

    def __init__(self, settings: Settings):
        self.api_key = settings.elevenlabs_api_key
        self.voice_id = settings.elevenlabs_voice_id
        self.timeout = settings.tts_timeout

    def is_available(self) -> bool:
        return bool(self.api_key)

    def synthesize(self, text, output_path, options=None):
        voice_id = (options or {}).get('voice_id') or self.voice_id
        output_path = Path(output_path).with_suffix('.mp3')
        output_path.parent.mkdir(parents=True, exist_ok=True)

        response = get_http_session().post(
            f"{ELEVENLABS_API_URL}/text-to-speech/{voice_id}/with-timestamps",
            headers={'xi-api-key': self.api_key, 'Content-Type': 'application/json'},
            json={'text': text, 'model_id': ELEVENLABS_MODEL},
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise ProviderError(self.provider_name, f"HTTP {response.status_code}: {response.text[:200]}")

        payload = response.json()
        audio_b64 = payload.get('audio_base64')
        if not audio_b64:
            raise ProviderError(self.provider_name, "response carried no audio")
        output_path.write_bytes(base64.b64decode(audio_b64))
        _require_output(output_path, self.provider_name)

        alignment = payload.get('alignment') or {}
        word_timings = words_from_character_alignment(
            alignment.get('characters') or [],
            alignment.get('character_start_times_seconds') or [],
            alignment.get('character_end_times_seconds') or [],
        )

        duration = get_media_duration(output_path)
        if duration <= 0 and word_timings:
            duration = word_timings[-1].end
        logger.info(f"[VOICE] ElevenLabs: {duration:.1f}s, {len(word_timings)} word timings")
        return VoiceTrack(text, output_path, duration, word_timings, self.method)


class PlaceholderVoiceProvider(VoiceProviderBase):
    """Silent WAV sized to the text's reading time - always available"""
    method = VoiceMethod.PLACEHOLDER

    def is_available(self) -> bool:
        return True

    def synthesize(self, text, output_path, options=None):
        duration = estimate_placeholder_duration(text)
        output_path = Path(output_path).with_suffix('.wav')
        output_path.parent.mkdir(parents=True, exist_ok=True)

        samples = np.zeros(duration * PLACEHOLDER_SAMPLE_RATE, dtype=np.int16)
        sf.write(str(output_path), samples, PLACEHOLDER_SAMPLE_RATE, subtype='PCM_16')

        logger.warning(f"[VOICE] Using silent placeholder voiceover ({duration}s)")
        return VoiceTrack(text, output_path, float(duration), [], self.method)


# ============================================================================
# SYNTHESIZER
# ============================================================================

class VoiceSynthesizer:
    """Tries each provider in order; the first success wins"""

    def __init__(self, settings: Optional[Settings] = None,
                 providers: Optional[List[VoiceProviderBase]] = None):
        settings = settings or get_settings()
        self.providers = providers if providers is not None else [
            GoogleCloudTTSProvider(settings),
            EdgeTTSProvider(settings),
            ElevenLabsProvider(settings),
            PlaceholderVoiceProvider(),
        ]

    def synthesize(self, text: str, output_path: Path,
                   options: Optional[Dict[str, Any]] = None) -> VoiceTrack:
        for provider in self.providers:
            name = provider.provider_name
            if not provider.is_available():
                logger.info(f"[VOICE] {name} not configured, skipping")
                continue
            try:
                track = provider.synthesize(text, output_path, options)
            except Exception as e:
                logger.warning(f"[VOICE] {name} failed, trying next provider: {e}")
                monitoring.record_voice_attempt(name, 'failed')
                continue
            monitoring.record_voice_attempt(name, 'success')
            return track

        raise VoiceSynthesisError("All voice providers failed")
