import sys
from pathlib import Path
from unittest import mock

import pytest

from backend import composer
from backend.captions import WordTiming
from backend.composer import CompositionSpec, VideoComposer, build_compose_command, parse_progress_line
from backend.errors import CompositionError, FFmpegError, TitleCardError


@pytest.fixture(autouse=True)
def ffmpeg_binary():
    with mock.patch.object(composer, 'get_ffmpeg_path', return_value='ffmpeg'):
        yield


def value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def last_value_after(cmd, flag):
    last = len(cmd) - 1 - cmd[::-1].index(flag)
    return cmd[last + 1]


def test_command_loops_background_and_caps_duration(tmp_path):
    cmd = build_compose_command('bg.mp4', 'voice.wav', tmp_path / 'out.mp4', 12.5)

    assert cmd[0] == 'ffmpeg'
    assert cmd[cmd.index('-stream_loop'):cmd.index('-stream_loop') + 4] == ['-stream_loop', '-1', '-i', 'bg.mp4']
    filters = value_after(cmd, '-filter_complex')
    assert 'scale=1080:1920:force_original_aspect_ratio=increase' in filters
    assert 'crop=1080:1920' in filters
    assert 'trim=duration=12.500' in filters
    assert 'amix' not in filters
    assert '-t' in cmd[cmd.index('-filter_complex'):]
    assert last_value_after(cmd, '-t') == '12.500'
    assert '-shortest' not in cmd
    assert value_after(cmd, '-movflags') == '+faststart'
    assert value_after(cmd, '-progress') == 'pipe:1'
    assert cmd[-1] == str(tmp_path / 'out.mp4')


def test_command_mixes_music_under_voice(tmp_path):
    cmd = build_compose_command('bg.mp4', 'voice.wav', tmp_path / 'out.mp4', 10.0, music='music.mp3')
    filters = value_after(cmd, '-filter_complex')
    assert '[2:a]volume=0.25[music]' in filters
    assert 'amix=inputs=2:duration=first' in filters
    assert value_after(cmd, '-c:a') == 'aac'


def test_command_music_only_and_silent(tmp_path):
    music_only = build_compose_command('bg.mp4', None, tmp_path / 'out.mp4', 10.0, music='music.mp3')
    assert '[1:a]volume=0.8[aout]' in value_after(music_only, '-filter_complex')

    silent = build_compose_command('bg.mp4', None, tmp_path / 'out.mp4', 10.0)
    assert '-an' in silent
    assert '-c:a' not in silent


def test_command_remote_music_reconnects(tmp_path):
    url = 'https://sf.tiktokcdn.com/a.mp3'
    cmd = build_compose_command('bg.mp4', 'voice.wav', tmp_path / 'out.mp4', 10.0, music=url)
    music_input = cmd.index(url)
    assert cmd[music_input - 1] == '-i'
    assert '-reconnect' in cmd[:music_input]


def test_command_overlays_title_and_captions(tmp_path):
    cmd = build_compose_command(
        'bg.mp4', 'voice.wav', tmp_path / 'out.mp4', 20.0,
        subtitles=tmp_path / 'captions.ass', title_image=tmp_path / 'title.png', card_duration=3.5,
    )
    filters = value_after(cmd, '-filter_complex')
    assert ['-loop', '1', '-t', '3.500', '-i', str(tmp_path / 'title.png')] == \
        cmd[cmd.index('-loop'):cmd.index('-loop') + 6]
    assert 'ass=' in filters
    assert 'fade=t=out:st=3.200:d=0.300:alpha=1' in filters
    assert "overlay=(W-w)/2:(H-h)/2:enable='between(t,0,3.500)'" in filters
    assert value_after(cmd, '-map') == '[vout]'


def test_parse_progress_line():
    assert parse_progress_line('out_time_us=6000000', 12.0) == 50.0
    assert parse_progress_line('out_time_ms=3000000\n', 12.0) == 25.0
    assert parse_progress_line('out_time_us=99000000', 12.0) == 100.0
    assert parse_progress_line('out_time_us=-5', 12.0) == 0.0
    assert parse_progress_line('progress=end', 12.0) == 100.0
    assert parse_progress_line('progress=continue', 12.0) is None
    assert parse_progress_line('out_time_us=N/A', 12.0) is None
    assert parse_progress_line('frame=10', 12.0) is None
    assert parse_progress_line('out_time_us=100', 0) is None


@pytest.fixture
def video_composer(settings):
    vc = VideoComposer(settings, title_renderer=mock.Mock())
    yield vc
    vc.shutdown()


def fake_encode(cmd, duration, on_progress=None):
    Path(cmd[-1]).write_bytes(b'mp4')
    if on_progress:
        on_progress(100.0, 'Processing video: 100%')


def test_compose_pads_voiceover_by_half_second(video_composer, settings):
    spec = CompositionSpec(
        background_video='bg.mp4',
        background_music=None,
        voiceover=str(settings.temp_dir / 'voice.wav'),
        output_path=settings.output_dir / 'video_1.mp4',
        target_duration=30.0,
    )
    progress = []

    with mock.patch.object(composer, 'get_media_duration', return_value=12.0), \
            mock.patch.object(video_composer, '_run_encode', side_effect=fake_encode) as encode:
        output = video_composer.compose(spec, lambda p, m: progress.append(p))

    cmd = encode.call_args[0][0]
    assert encode.call_args[0][1] == 12.5
    assert last_value_after(cmd, '-t') == '12.500'
    assert 'ass=' not in value_after(cmd, '-filter_complex')
    assert output == settings.output_dir / 'video_1.mp4'
    assert progress == [0, 100.0]
    video_composer.title_renderer.render.assert_not_called()


def test_compose_falls_back_to_nominal_duration(video_composer, settings):
    spec = CompositionSpec('bg.mp4', None, 'voice.wav', settings.output_dir / 'v.mp4', target_duration=20.0,
                           text='one two three four', word_timings=[WordTiming('one.', 0.0, 0.5)])
    with mock.patch.object(composer, 'get_media_duration', return_value=0.0), \
            mock.patch.object(video_composer, '_run_encode', side_effect=fake_encode) as encode:
        video_composer.compose(spec)

    assert encode.call_args[0][1] == 20.5
    assert 'ass=' in value_after(encode.call_args[0][0], '-filter_complex')


def test_compose_renders_title_card(video_composer, settings):
    video_composer.title_renderer.render.side_effect = lambda title, path: Path(path)
    spec = CompositionSpec('bg.mp4', None, 'voice.wav', settings.output_dir / 'v.mp4',
                           title='My cat saved me.', card_duration=3.5)
    with mock.patch.object(composer, 'get_media_duration', return_value=10.0), \
            mock.patch.object(video_composer, '_run_encode', side_effect=fake_encode) as encode:
        video_composer.compose(spec)

    assert video_composer.title_renderer.render.call_args[0][0] == 'My cat saved me.'
    assert "between(t,0,3.500)" in value_after(encode.call_args[0][0], '-filter_complex')


def test_compose_continues_without_title_when_render_fails(video_composer, settings):
    video_composer.title_renderer.render.side_effect = TitleCardError("no fonts")
    spec = CompositionSpec('bg.mp4', None, 'voice.wav', settings.output_dir / 'v.mp4',
                           title='My cat saved me.', card_duration=3.5)
    with mock.patch.object(composer, 'get_media_duration', return_value=10.0), \
            mock.patch.object(video_composer, '_run_encode', side_effect=fake_encode) as encode:
        output = video_composer.compose(spec)

    assert output.exists()
    assert '-loop' not in encode.call_args[0][0]


def test_compose_encode_failure_is_composition_error(video_composer, settings):
    spec = CompositionSpec('bg.mp4', None, 'voice.wav', settings.output_dir / 'v.mp4')
    with mock.patch.object(composer, 'get_media_duration', return_value=10.0), \
            mock.patch.object(video_composer, '_run_encode', side_effect=FFmpegError("exit 1")):
        with pytest.raises(CompositionError):
            video_composer.compose(spec)


def test_compose_without_output_file_fails(video_composer, settings):
    spec = CompositionSpec('bg.mp4', None, 'voice.wav', settings.output_dir / 'v.mp4')
    with mock.patch.object(composer, 'get_media_duration', return_value=10.0), \
            mock.patch.object(video_composer, '_run_encode'):
        with pytest.raises(CompositionError):
            video_composer.compose(spec)


def test_run_encode_streams_progress(video_composer):
    script = "print('out_time_us=6000000'); print('out_time_us=6000001'); print('progress=end')"
    progress = []
    video_composer._run_encode([sys.executable, '-c', script], 12.0, lambda p, m: progress.append((p, m)))
    assert progress == [(50.0, 'Processing video: 50%'), (100.0, 'Processing video: 100%')]


def test_run_encode_failure_raises(video_composer):
    script = "import sys; sys.stderr.write('Invalid data found'); sys.exit(3)"
    with pytest.raises(FFmpegError) as excinfo:
        video_composer._run_encode([sys.executable, '-c', script], 12.0)
    assert 'Invalid data found' in excinfo.value.stderr


def test_run_encode_timeout(video_composer):
    video_composer.timeout = 0.2
    with pytest.raises(FFmpegError, match='timed out'):
        video_composer._run_encode([sys.executable, '-c', 'import time; time.sleep(10)'], 12.0)
