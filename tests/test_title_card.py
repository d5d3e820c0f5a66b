import pytest
from PIL import Image

from backend.errors import TitleCardError
from backend.title_card import TitleCardRenderer, wrap_title


def test_wrap_title_short():
    assert wrap_title('My cat saved me.') == ['My cat saved me.']
    assert wrap_title('   ') == []


def test_wrap_title_limits_lines_and_width():
    title = ' '.join(['somewhat'] * 40)
    lines = wrap_title(title)
    assert len(lines) == 4
    assert all(len(line) <= 35 for line in lines)
    assert lines[-1].endswith('...')


def test_render_writes_transparent_card(tmp_path):
    path = TitleCardRenderer().render('My cat saved me from a kitchen fire', tmp_path / 'card.png')

    with Image.open(path) as image:
        assert image.size == (800, 400)
        assert image.mode == 'RGBA'
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((770, 200)) == (255, 255, 255, 255)


def test_render_custom_counters(tmp_path):
    path = TitleCardRenderer().render('Title', tmp_path / 'card.png',
                                      {'username': 'someone', 'likes': '1.2K', 'comments': '88'})
    assert path.exists()


def test_render_empty_title_fails(tmp_path):
    with pytest.raises(TitleCardError):
        TitleCardRenderer().render('', tmp_path / 'card.png')
