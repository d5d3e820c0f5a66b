"""
Title card rendering

Draws the story title as a social-post style card (author row, wrapped title,
engagement counters) on a transparent 800x400 PNG with Pillow. The composer
overlays it centered during the first seconds of the video.
"""

import logging
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

from PIL import Image, ImageDraw, ImageFont

from backend.errors import TitleCardError

logger = logging.getLogger(__name__)

CARD_CANVAS = (800, 400)
CARD_WIDTH = 750
CARD_RADIUS = 20
CARD_PADDING = 24
AVATAR_SIZE = 50
BADGE_SIZE = 20
LINE_HEIGHT = 31      # 22px title font at 1.4 line height
TITLE_WIDTH = 35
TITLE_MAX_LINES = 4

AVATAR_GRADIENT = ((0xF9, 0x73, 0x16), (0xEF, 0x44, 0x44))
BADGE_COLOR = (0x3B, 0x82, 0xF6, 255)
USERNAME_COLOR = (0x11, 0x11, 0x11, 255)
TITLE_COLOR = (0x1F, 0x29, 0x37, 255)
FOOTER_COLOR = (0x6B, 0x72, 0x80, 255)

FONT_CANDIDATES = {
    'regular': ['DejaVuSans.ttf', 'Arial.ttf', 'arial.ttf', 'LiberationSans-Regular.ttf'],
    'bold': ['DejaVuSans-Bold.ttf', 'Arial Bold.ttf', 'arialbd.ttf', 'LiberationSans-Bold.ttf'],
}

DEFAULT_OPTIONS = {
    'username': 'StoryTeller',
    'likes': '99+',
    'comments': '99+',
}


def wrap_title(title: str, width: int = TITLE_WIDTH, max_lines: int = TITLE_MAX_LINES) -> List[str]:
    """Wrap to at most max_lines lines of at most width chars ('...' on overflow)"""
    text = ' '.join((title or '').split())
    if not text:
        return []
    lines = textwrap.wrap(text, width=width, break_long_words=True)
    if len(lines) <= max_lines:
        return lines
    lines = lines[:max_lines]
    lines[-1] = lines[-1][:width - 3].rstrip() + '...'
    return lines


def _load_font(weight: str, size: int) -> ImageFont.ImageFont:
    for name in FONT_CANDIDATES[weight]:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size)


def _gradient_circle(size: int) -> Image.Image:
    """Diagonal two-colour gradient clipped to a circle"""
    (r0, g0, b0), (r1, g1, b1) = AVATAR_GRADIENT
    gradient = Image.new('RGBA', (size, size))
    pixels = gradient.load()
    span = 2 * (size - 1) or 1
    for y in range(size):
        for x in range(size):
            t = (x + y) / span
            pixels[x, y] = (
                int(r0 + (r1 - r0) * t),
                int(g0 + (g1 - g0) * t),
                int(b0 + (b1 - b0) * t),
                255,
            )
    mask = Image.new('L', (size, size), 0)
    ImageDraw.Draw(mask).ellipse((0, 0, size - 1, size - 1), fill=255)
    avatar = Image.new('RGBA', (size, size), (0, 0, 0, 0))
    avatar.paste(gradient, (0, 0), mask)
    return avatar


def _draw_heart(draw: ImageDraw.ImageDraw, x: int, y: int, size: int, color):
    lobe = size // 2
    draw.ellipse((x, y, x + lobe, y + lobe), outline=color, width=2)
    draw.ellipse((x + lobe, y, x + size, y + lobe), outline=color, width=2)
    draw.line((x + 1, y + lobe // 2 + 2, x + size // 2, y + size), fill=color, width=2)
    draw.line((x + size - 1, y + lobe // 2 + 2, x + size // 2, y + size), fill=color, width=2)


def _draw_bubble(draw: ImageDraw.ImageDraw, x: int, y: int, size: int, color):
    draw.ellipse((x, y, x + size, y + size - 4), outline=color, width=2)
    draw.line((x + 3, y + size - 1, x + 6, y + size - 7), fill=color, width=2)
    for i in range(3):
        cx = x + size // 4 + i * size // 4
        draw.ellipse((cx - 1, y + size // 2 - 3, cx + 1, y + size // 2 - 1), fill=color)


class TitleCardRenderer:
    """Renders the title card PNG"""

    def __init__(self):
        self.username_font = _load_font('bold', 20)
        self.title_font = _load_font('regular', 22)
        self.footer_font = _load_font('regular', 16)

    def render(self, title: str, output_path: Path, opts: Optional[Dict[str, Any]] = None) -> Path:
        options = {**DEFAULT_OPTIONS, **(opts or {})}
        lines = wrap_title(title)
        if not lines:
            raise TitleCardError("Title is empty")

        try:
            image = self._draw(lines, options)
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            image.save(output_path, 'PNG')
        except (OSError, ValueError) as e:
            raise TitleCardError(f"Title card rendering failed: {e}") from e

        logger.info(f"[TITLE] Title card generated: {output_path}")
        return output_path

    def _draw(self, lines: List[str], options: Dict[str, Any]) -> Image.Image:
        canvas_w, canvas_h = CARD_CANVAS
        image = Image.new('RGBA', CARD_CANVAS, (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)

        card_h = CARD_PADDING * 2 + AVATAR_SIZE + 16 + len(lines) * LINE_HEIGHT + 16 + 22
        left = (canvas_w - CARD_WIDTH) // 2
        top = max(0, (canvas_h - card_h) // 2)
        draw.rounded_rectangle(
            (left, top, left + CARD_WIDTH, top + card_h),
            radius=CARD_RADIUS, fill=(255, 255, 255, 255)
        )

        # Header: avatar, username, verified badge
        x = left + CARD_PADDING
        y = top + CARD_PADDING
        image.alpha_composite(_gradient_circle(AVATAR_SIZE), (x, y))

        name_x = x + AVATAR_SIZE + 12
        username = str(options['username'])
        draw.text((name_x, y + AVATAR_SIZE // 2), username, font=self.username_font,
                  fill=USERNAME_COLOR, anchor='lm')

        badge_x = name_x + int(draw.textlength(username, font=self.username_font)) + 12
        badge_y = y + (AVATAR_SIZE - BADGE_SIZE) // 2
        draw.ellipse((badge_x, badge_y, badge_x + BADGE_SIZE, badge_y + BADGE_SIZE), fill=BADGE_COLOR)
        draw.line(
            [(badge_x + 5, badge_y + 10), (badge_x + 9, badge_y + 14), (badge_x + 15, badge_y + 6)],
            fill=(255, 255, 255, 255), width=2
        )

        # Title
        y += AVATAR_SIZE + 16
        for line in lines:
            draw.text((x, y), line, font=self.title_font, fill=TITLE_COLOR)
            y += LINE_HEIGHT

        # Footer counters
        y += 16
        _draw_heart(draw, x, y, 20, FOOTER_COLOR)
        likes_x = x + 28
        draw.text((likes_x, y + 10), str(options['likes']), font=self.footer_font,
                  fill=FOOTER_COLOR, anchor='lm')
        bubble_x = likes_x + int(draw.textlength(str(options['likes']), font=self.footer_font)) + 24
        _draw_bubble(draw, bubble_x, y, 20, FOOTER_COLOR)
        draw.text((bubble_x + 28, y + 10), str(options['comments']), font=self.footer_font,
                  fill=FOOTER_COLOR, anchor='lm')

        return image
