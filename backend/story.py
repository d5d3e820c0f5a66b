"""
Story text helpers

Stories arrive as plain text with an optional 'TITLE: ...' line. The title is
read aloud first and shown on the title card; the body is narrated after it.
"""

import math
import re
from typing import Tuple

TITLE_WORDS_PER_SECOND = 2.5
TITLE_CARD_EXTRA_SECONDS = 1.5

_TITLE_RE = re.compile(r'TITLE:\s*(.+?)(?:\n|$)', re.IGNORECASE)
_PARENTHETICAL_RE = re.compile(r'\([^)]*\)')


def parse_story(text: str) -> Tuple[str, str]:
    """Split story text into (title, body)"""
    text = text or ''
    match = _TITLE_RE.search(text)
    title = match.group(1).strip() if match else ''
    if title and not title.endswith(('.', '!', '?')):
        title += '.'

    body = text[match.end():] if match else text
    body = _PARENTHETICAL_RE.sub('', body)
    body = body.replace('*', '')
    body = ' '.join(body.split())
    return title, body


def voiceover_script(text: str) -> str:
    """Narration script: title followed by body"""
    title, body = parse_story(text)
    if title:
        return f"{title} {body}".strip()
    return body


def title_read_time(title: str) -> float:
    """Seconds the title card stays on screen (0 without a title)"""
    words = len((title or '').split())
    if not words:
        return 0.0
    return math.ceil(words / TITLE_WORDS_PER_SECOND) + TITLE_CARD_EXTRA_SECONDS
