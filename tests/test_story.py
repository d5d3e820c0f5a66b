from backend.story import parse_story, title_read_time, voiceover_script


def test_parse_story_with_title():
    title, body = parse_story("TITLE: I found a door\nIt was *locked*. (Spooky) I opened it anyway.")
    assert title == 'I found a door.'
    assert body == 'It was locked. I opened it anyway.'


def test_parse_story_title_case_insensitive_and_punctuated():
    title, _ = parse_story("title: Why me?\nBody.")
    assert title == 'Why me?'


def test_parse_story_without_title():
    assert parse_story("Just   a body.") == ('', 'Just a body.')
    assert parse_story(None) == ('', '')


def test_voiceover_script_reads_title_first():
    assert voiceover_script("TITLE: Hello\nWorld here.") == 'Hello. World here.'
    assert voiceover_script("No title.") == 'No title.'


def test_title_read_time():
    assert title_read_time('') == 0.0
    assert title_read_time('One two three four five.') == 3.5
    assert title_read_time('Six words make a longer title.') == 4.5
