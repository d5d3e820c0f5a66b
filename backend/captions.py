"""
Caption segmentation

Turns narration word timings into on-screen caption groups. Groups close on a
six word limit, on sentence-ending punctuation and on speech pauses longer
than 0.4s. Everything here is pure except write_ass().
"""

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MAX_WORDS_PER_GROUP = 6
SPLIT_THRESHOLD = 3            # Groups with more words get two lines
PAUSE_THRESHOLD = 0.4          # Seconds of silence that force a new group
MAX_GROUPS = 500
MIN_DISPLAY_SECONDS = 0.05
SENTENCE_END = ('.', '!', '?')
CLOSING_QUOTES = "\"'\u201d\u2019"
ALLOWED_PUNCTUATION = set(".,!?'-:;\" ")

MONTHS = [
    'JANUARY', 'FEBRUARY', 'MARCH', 'APRIL', 'MAY', 'JUNE',
    'JULY', 'AUGUST', 'SEPTEMBER', 'OCTOBER', 'NOVEMBER', 'DECEMBER'
]

_STRIP_CHARS_RE = re.compile(r'[\[\](){}*_]')
_DATE_RE = re.compile(r'^(\d{2})(\d{2})(\d{4})([.,!?]*)$')


@dataclass(frozen=True)
class WordTiming:
    word: str
    start: float
    end: float


@dataclass(frozen=True)
class CaptionGroup:
    lines: Tuple[str, ...]
    start: float
    end: float

    @property
    def text(self) -> str:
        return ' '.join(self.lines)


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        suffix = 'TH'
    else:
        suffix = {1: 'ST', 2: 'ND', 3: 'RD'}.get(day % 10, 'TH')
    return f"{day}{suffix}"


def normalize_date_token(token: str) -> str:
    """Rewrite a bare MMDDYYYY token as 'MONTH Dth, YYYY'

    Tokens that are not valid dates are returned unchanged.
    """
    match = _DATE_RE.match(token)
    if not match:
        return token
    month, day, year, trailing = match.groups()
    month_num, day_num = int(month), int(day)
    if not (1 <= month_num <= 12 and 1 <= day_num <= 31):
        return token
    return f"{MONTHS[month_num - 1]} {_ordinal(day_num)}, {year}{trailing}"


def sanitize_word(word: str) -> str:
    """Clean one caption word: brackets/asterisks out, dates spelled, uppercased"""
    if not word:
        return ''
    cleaned = _STRIP_CHARS_RE.sub('', str(word)).strip()
    cleaned = normalize_date_token(cleaned)
    cleaned = ''.join(ch for ch in cleaned if ch.isalnum() or ch in ALLOWED_PUNCTUATION).strip()
    return cleaned.upper()


def is_sentence_end(word: str) -> bool:
    """Terminal punctuation, looking through closing quotes ('stop." ends a sentence)"""
    stripped = _STRIP_CHARS_RE.sub('', word).strip().rstrip(CLOSING_QUOTES)
    return stripped.endswith(SENTENCE_END)


def _split_lines(words: List[str]) -> Tuple[str, ...]:
    if len(words) <= SPLIT_THRESHOLD:
        return (' '.join(words),)
    # 4 words -> 3/1, 5 -> 3/2, 6 -> 3/3
    half = max(SPLIT_THRESHOLD, math.ceil(len(words) / 2))
    return (' '.join(words[:half]), ' '.join(words[half:]))


def _coerce(timing) -> Optional[WordTiming]:
    """Accept WordTiming objects, dicts or (word, start, end) tuples"""
    try:
        if isinstance(timing, WordTiming):
            word, start, end = timing.word, timing.start, timing.end
        elif isinstance(timing, dict):
            word = timing.get('word', timing.get('text', ''))
            start, end = timing['start'], timing['end']
        else:
            word, start, end = timing
        start, end = float(start), float(end)
    except (KeyError, TypeError, ValueError):
        return None
    if not (math.isfinite(start) and math.isfinite(end)):
        return None
    return WordTiming(str(word), start, max(start, end))


def segment(timings: Iterable) -> List[CaptionGroup]:
    """Group word timings into caption groups

    Never raises; malformed entries are skipped and the worst case is an
    empty list.
    """
    words = [t for t in (_coerce(t) for t in (timings or [])) if t is not None]
    words.sort(key=lambda w: w.start)
    groups: List[CaptionGroup] = []
    current: List[WordTiming] = []

    def close_group():
        surviving = [(w, sanitize_word(w.word)) for w in current]
        surviving = [(w, text) for w, text in surviving if text]
        if not surviving:
            return
        start = surviving[0][0].start
        end = surviving[-1][0].end
        if end <= start:
            end = start + MIN_DISPLAY_SECONDS
        groups.append(CaptionGroup(_split_lines([text for _, text in surviving]), start, end))

    for i, timing in enumerate(words):
        current.append(timing)

        sentence_end = is_sentence_end(timing.word)
        has_pause = False
        if i < len(words) - 1:
            has_pause = (words[i + 1].start - timing.end) > PAUSE_THRESHOLD

        if len(current) >= MAX_WORDS_PER_GROUP or sentence_end or has_pause:
            close_group()
            current = []
            if len(groups) >= MAX_GROUPS:
                logger.warning(f"[CAPTIONS] Group cap reached ({MAX_GROUPS}), dropping remaining words")
                return groups

    if current:
        close_group()

    return groups[:MAX_GROUPS]


def even_timings(text: str, duration: float) -> List[WordTiming]:
    """Evenly spaced per-word timings for narration without alignment data"""
    words = (text or '').split()
    if not words or not duration or duration <= 0:
        return []
    per_word = duration / len(words)
    return [
        WordTiming(word, i * per_word, (i + 1) * per_word)
        for i, word in enumerate(words)
    ]


def build_caption_groups(text: str, duration: float,
                         timings: Optional[Sequence] = None) -> List[CaptionGroup]:
    """Segment real timings when present, otherwise the evenly spaced fallback"""
    if timings:
        groups = segment(timings)
        if groups:
            return groups
        logger.warning("[CAPTIONS] Word timings produced no groups, using even spacing")
    return segment(even_timings(text, duration))


def format_ass_time(seconds: float) -> str:
    """Format seconds to ASS time format (H:MM:SS.cc)"""
    seconds = max(0.0, seconds)
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    s = int(seconds % 60)
    cs = int(round((seconds % 1) * 100))
    if cs == 100:
        s, cs = s + 1, 0
    return f"{h}:{m:02d}:{s:02d}.{cs:02d}"


ASS_HEADER = """[Script Info]
Title: Story Captions
ScriptType: v4.00+
PlayResX: 1080
PlayResY: 1920
WrapStyle: 2

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Main,Arial Black,84,&H00FFFFFF,&H00FFFFFF,&H00000000,&H80000000,1,0,0,0,100,100,0,0,1,5,3,5,60,60,0,1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""


def write_ass(groups: Sequence[CaptionGroup], output_path: Path, fade_ms: int = 120) -> Optional[Path]:
    """Write caption groups as centered ASS dialogue events with fade in/out"""
    if not groups:
        return None

    events = []
    for group in groups:
        span_ms = int((group.end - group.start) * 1000)
        fade = max(0, min(fade_ms, span_ms // 3))
        text = r'\N'.join(line.replace('{', '').replace('}', '') for line in group.lines)
        events.append(
            f"Dialogue: 0,{format_ass_time(group.start)},{format_ass_time(group.end)},"
            f"Main,,0,0,0,,{{\\fad({fade},{fade})}}{text}"
        )

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(ASS_HEADER + "\n".join(events) + "\n", encoding='utf-8')
    logger.info(f"[CAPTIONS] ASS captions saved: {output_path} ({len(events)} events)")
    return output_path
