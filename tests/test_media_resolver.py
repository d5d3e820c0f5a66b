import random
from pathlib import Path
from unittest import mock

import pytest

from backend import media_resolver
from backend.errors import FFmpegError, MediaResolutionError
from backend.media_resolver import (
    MediaResolver, ResolutionMethod, display_name, is_trending_sound,
    safe_identifier, select_best_video_file,
)


def fake_run_ffmpeg(args, timeout=None):
    """Stand-in encoder: writes a few bytes to the output path (last argument)"""
    Path(args[-1]).write_bytes(b'\x00\x00\x00\x18ftypmp42')
    return mock.Mock(returncode=0)


def touch(path: Path, data: bytes = b'video') -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_unknown_video_without_network_gets_placeholder(settings):
    resolver = MediaResolver(settings)
    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=fake_run_ffmpeg) as run:
        asset = resolver.resolve_video('something_unheard_of')

    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER
    assert Path(asset.location).is_file()
    assert Path(asset.location).parent == settings.backgrounds_dir
    args = run.call_args[0][0]
    assert 'color=c=0x2196F3:size=1080x1920:duration=30' in args
    assert any("text='Something Unheard Of'" in a for a in args)


def test_resolution_is_idempotent_once_cached(settings):
    resolver = MediaResolver(settings)
    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=fake_run_ffmpeg) as run:
        first = resolver.resolve_video('nature')
        second = resolver.resolve_video('nature')

    assert run.call_count == 1
    assert first.location == second.location
    assert second.method == ResolutionMethod.CACHED_LOCAL


def test_placeholder_retries_without_drawtext(settings):
    calls = []

    def no_drawtext(args, timeout=None):
        calls.append(args)
        if '-vf' in args:
            raise FFmpegError("No such filter: 'drawtext'")
        return fake_run_ffmpeg(args, timeout)

    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=no_drawtext):
        asset = MediaResolver(settings).resolve_video('city')

    assert len(calls) == 2
    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER
    assert Path(asset.location).exists()


def test_placeholder_failure_is_a_stage_error(settings):
    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=FFmpegError("no ffmpeg")):
        with pytest.raises(MediaResolutionError):
            MediaResolver(settings).resolve_video('city')


def test_failed_placeholder_leaves_nothing_cached(settings):
    def partial_then_fail(args, timeout=None):
        Path(args[-1]).write_bytes(b'half an mp4')
        raise FFmpegError("encoder crashed")

    resolver = MediaResolver(settings)
    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=partial_then_fail):
        with pytest.raises(MediaResolutionError):
            resolver.resolve_video('city')

    assert list(settings.backgrounds_dir.glob('*city*')) == []
    assert list(settings.backgrounds_dir.glob('.*')) == []

    with mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=fake_run_ffmpeg) as run:
        asset = resolver.resolve_video('city')
    assert run.called
    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER


def test_category_identifier_samples_segment_library(settings):
    category_dir = settings.backgrounds_dir / 'minecraft_parkour'
    clips = {touch(category_dir / f"minecraft_parkour_abc_segment_{i}.mp4") for i in (1, 2, 3)}
    touch(category_dir / '.minecraft_parkour_x.downloading.mp4')
    touch(category_dir / 'empty.mp4', b'')

    resolver = MediaResolver(settings, rng=random.Random(3))
    with mock.patch.object(media_resolver, 'run_ffmpeg') as run:
        seen = {Path(resolver.resolve_video('minecraft_parkour').location) for _ in range(20)}

    run.assert_not_called()
    assert seen <= clips


def test_specific_segment_identifier(settings):
    clip = touch(settings.backgrounds_dir / 'subway_surfers' / 'subway_surfers_xyz_segment_4.mp4')
    asset = MediaResolver(settings).resolve_video('subway_surfers_xyz_segment_4')
    assert asset.location == str(clip)
    assert asset.method == ResolutionMethod.CACHED_LOCAL


def test_stock_footage_is_downloaded_and_cached(settings):
    settings.pexels_api_key = 'pexels-key'
    search = mock.Mock(status_code=200)
    search.json.return_value = {'videos': [{'video_files': [
        {'quality': 'sd', 'width': 540, 'file_type': 'video/mp4', 'link': 'https://cdn.example/sd.mp4'},
        {'quality': 'hd', 'width': 1080, 'file_type': 'video/mp4', 'link': 'https://cdn.example/hd.mp4'},
    ]}]}
    session = mock.Mock()
    session.get.return_value = search

    resolver = MediaResolver(settings)
    with mock.patch.object(media_resolver, 'get_http_session', return_value=session), \
            mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=fake_run_ffmpeg) as run:
        first = resolver.resolve_video('nature')
        second = resolver.resolve_video('nature')

    assert first.method == ResolutionMethod.PROVIDER_SEARCH
    assert first.location == str(settings.backgrounds_dir / 'nature' / 'nature_pexels.mp4')
    assert run.call_args[0][0][1] == 'https://cdn.example/hd.mp4'
    assert session.get.call_count == 1
    assert second.method == ResolutionMethod.CACHED_LOCAL
    assert second.location == first.location
    assert session.get.call_args[1]['params']['query'] == 'nature landscape beautiful'


def test_stock_footage_failure_falls_back_to_placeholder(settings):
    settings.pexels_api_key = 'pexels-key'
    session = mock.Mock()
    session.get.return_value = mock.Mock(status_code=500)

    with mock.patch.object(media_resolver, 'get_http_session', return_value=session), \
            mock.patch.object(media_resolver, 'run_ffmpeg', side_effect=fake_run_ffmpeg):
        asset = MediaResolver(settings).resolve_video('abstract')

    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER


def test_trending_sound_resolves_to_remote_url(settings):
    settings.tiktok_client_key = 'ck'
    settings.tiktok_client_secret = 'cs'
    token = mock.Mock(status_code=200)
    token.json.return_value = {'access_token': 'tok', 'expires_in': 7200}
    sound = mock.Mock(status_code=200)
    sound.json.return_value = {'data': {'music_list': [{'play_url': 'https://sf.tiktokcdn.com/a.mp3'}]}}
    session = mock.Mock()
    session.post.return_value = token
    session.get.return_value = sound

    resolver = MediaResolver(settings)
    with mock.patch.object(media_resolver, 'get_http_session', return_value=session):
        asset = resolver.resolve_music('tiktok_7012345')
        resolver.resolve_music('tiktok_7012345')

    assert asset.method == ResolutionMethod.REMOTE_STREAM
    assert asset.location == 'https://sf.tiktokcdn.com/a.mp3'
    assert asset.is_remote
    assert session.post.call_count == 1
    assert session.get.call_args[1]['params'] == {'music_ids': '7012345'}
    assert session.get.call_args[1]['headers']['Authorization'] == 'Bearer tok'


def test_trending_sound_without_play_url_uses_local_chain(settings):
    settings.tiktok_client_key = 'ck'
    settings.tiktok_client_secret = 'cs'
    token = mock.Mock(status_code=200)
    token.json.return_value = {'data': {'access_token': 'tok'}}
    sound = mock.Mock(status_code=200)
    sound.json.return_value = {'data': {'music_list': [{'id': '1'}]}}
    session = mock.Mock()
    session.post.return_value = token
    session.get.return_value = sound

    with mock.patch.object(media_resolver, 'get_http_session', return_value=session), \
            mock.patch.object(media_resolver, 'generate_silence',
                              side_effect=lambda path, duration, timeout=None: touch(path)):
        asset = MediaResolver(settings).resolve_music('tiktok_1')

    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER
    assert asset.location == str(settings.music_dir / 'tiktok_1.mp3')


def test_cached_music(settings):
    track = touch(settings.music_dir / 'lofi.mp3', b'mp3')
    with mock.patch.object(media_resolver, 'generate_silence') as silence:
        asset = MediaResolver(settings).resolve_music('lofi')
    silence.assert_not_called()
    assert asset.location == str(track)
    assert asset.method == ResolutionMethod.CACHED_LOCAL


def test_empty_cached_music_is_regenerated(settings):
    touch(settings.music_dir / 'lofi.mp3', b'')
    with mock.patch.object(media_resolver, 'generate_silence',
                           side_effect=lambda path, duration, timeout=None: touch(path)) as silence:
        asset = MediaResolver(settings).resolve_music('lofi')
    assert silence.call_args[0][1] == 30
    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER


def test_trending_sound_without_credentials_is_not_fetched(settings):
    with mock.patch.object(media_resolver, 'get_http_session') as session, \
            mock.patch.object(media_resolver, 'generate_silence',
                              side_effect=lambda path, duration, timeout=None: touch(path)):
        asset = MediaResolver(settings).resolve_music('12345')
    session.assert_not_called()
    assert asset.method == ResolutionMethod.SYNTHESIZED_PLACEHOLDER


def test_helpers():
    assert is_trending_sound('tiktok_123')
    assert is_trending_sound('7012345')
    assert is_trending_sound('x?music_id=9')
    assert not is_trending_sound('lofi_beats')
    assert not is_trending_sound('')

    assert safe_identifier('../../etc/passwd') == 'etc_passwd'
    assert safe_identifier('') == 'default'
    assert display_name('subway_surfers') == 'Subway Surfers'

    assert select_best_video_file({'video_files': [
        {'file_type': 'video/webm', 'link': 'a'},
        {'file_type': 'video/mp4', 'link': 'b'},
    ]}) == 'b'
    assert select_best_video_file({}) is None
