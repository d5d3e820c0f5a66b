import base64
from unittest import mock

import pytest
import soundfile as sf

from backend import voiceover
from backend.captions import WordTiming, segment
from backend.errors import ProviderError, VoiceSynthesisError
from backend.voiceover import (
    EdgeTTSProvider, ElevenLabsProvider, PlaceholderVoiceProvider, VoiceMethod,
    VoiceProviderBase, VoiceSynthesizer, VoiceTrack, estimate_placeholder_duration,
    restore_punctuation, split_text_into_chunks, words_from_character_alignment,
)


class FailingProvider(VoiceProviderBase):
    method = VoiceMethod.GOOGLE_CLOUD

    def __init__(self):
        self.calls = 0

    def is_available(self):
        return True

    def synthesize(self, text, output_path, options=None):
        self.calls += 1
        raise ProviderError(self.provider_name, "quota exceeded")


class UnavailableProvider(FailingProvider):
    method = VoiceMethod.ELEVENLABS

    def is_available(self):
        return False


def test_falls_back_to_placeholder_when_primary_fails(tmp_path):
    failing = FailingProvider()
    synth = VoiceSynthesizer(providers=[failing, PlaceholderVoiceProvider()])

    track = synth.synthesize("A short story about a very brave cat.", tmp_path / 'voice.mp3')

    assert failing.calls == 1
    assert track.method == VoiceMethod.PLACEHOLDER
    assert 5 <= track.duration <= 60
    assert track.word_timings == []
    info = sf.info(str(track.audio_path))
    assert info.samplerate == voiceover.PLACEHOLDER_SAMPLE_RATE
    assert info.frames == int(track.duration) * voiceover.PLACEHOLDER_SAMPLE_RATE


def test_placeholder_duration_is_clamped_for_long_text(tmp_path):
    text = ' '.join(['word'] * 1000)
    track = PlaceholderVoiceProvider().synthesize(text, tmp_path / 'voice.mp3')
    assert track.duration == 60


def test_unavailable_providers_are_skipped(tmp_path):
    unavailable = UnavailableProvider()
    synth = VoiceSynthesizer(providers=[unavailable, PlaceholderVoiceProvider()])
    track = synth.synthesize("Hello there.", tmp_path / 'voice.mp3')
    assert unavailable.calls == 0
    assert track.method == VoiceMethod.PLACEHOLDER


def test_all_providers_failing_raises(tmp_path):
    synth = VoiceSynthesizer(providers=[FailingProvider(), FailingProvider()])
    with pytest.raises(VoiceSynthesisError):
        synth.synthesize("Hello there.", tmp_path / 'voice.mp3')


def test_default_chain_order(settings):
    synth = VoiceSynthesizer(settings)
    assert [p.method for p in synth.providers] == [
        VoiceMethod.GOOGLE_CLOUD, VoiceMethod.EDGE_TTS,
        VoiceMethod.ELEVENLABS, VoiceMethod.PLACEHOLDER,
    ]


def test_estimate_placeholder_duration():
    assert estimate_placeholder_duration('one') == 5
    assert estimate_placeholder_duration(' '.join(['w'] * 75)) == 30
    assert estimate_placeholder_duration(' '.join(['w'] * 300)) == 60
    assert estimate_placeholder_duration('') == 5


def test_split_text_into_chunks_respects_limit_and_order():
    sentences = [f"Sentence number {i} is here." for i in range(200)]
    text = ' '.join(sentences)
    chunks = split_text_into_chunks(text, limit=120)

    assert len(chunks) > 1
    assert all(len(c) <= 120 for c in chunks)
    assert ' '.join(chunks) == text


def test_split_text_into_chunks_breaks_long_sentences():
    text = ' '.join(['abcdefghij'] * 30)
    chunks = split_text_into_chunks(text, limit=50)
    assert all(len(c) <= 50 for c in chunks)
    assert ' '.join(chunks).split() == text.split()


def test_split_text_short_and_empty():
    assert split_text_into_chunks('  Just   one. ') == ['Just one.']
    assert split_text_into_chunks('') == []


def test_words_from_character_alignment():
    characters = list("Hi  you!")
    starts = [0.0, 0.1, 0.2, 0.25, 0.3, 0.4, 0.5, 0.6]
    ends = [0.1, 0.2, 0.25, 0.3, 0.4, 0.5, 0.6, 0.7]

    words = words_from_character_alignment(characters, starts, ends)

    assert words == [WordTiming('Hi', 0.0, 0.2), WordTiming('you!', 0.3, 0.7)]


def test_voice_track_normalizes_timings(tmp_path):
    track = VoiceTrack(
        text='b a',
        audio_path=str(tmp_path / 'v.mp3'),
        duration=-3,
        word_timings=[WordTiming('a', 1.0, 0.5), WordTiming('b', 0.0, 0.4)],
    )
    assert track.duration == 0.0
    assert [t.word for t in track.word_timings] == ['b', 'a']
    assert track.word_timings[1].end == 1.0
    assert track.to_dict()['method'] == 'placeholder'


def test_elevenlabs_derives_word_timings(settings, tmp_path):
    settings.elevenlabs_api_key = 'key'
    response = mock.Mock(status_code=200)
    response.json.return_value = {
        'audio_base64': base64.b64encode(b'ID3 fake mp3 bytes').decode(),
        'alignment': {
            'characters': list("Hi you"),
            'character_start_times_seconds': [0.0, 0.1, 0.2, 0.3, 0.4, 0.5],
            'character_end_times_seconds': [0.1, 0.2, 0.3, 0.4, 0.5, 0.6],
        },
    }
    session = mock.Mock()
    session.post.return_value = response

    with mock.patch.object(voiceover, 'get_http_session', return_value=session), \
            mock.patch.object(voiceover, 'get_media_duration', return_value=0.0):
        track = ElevenLabsProvider(settings).synthesize("Hi you", tmp_path / 'voice.mp3')

    assert track.method == VoiceMethod.ELEVENLABS
    assert [t.word for t in track.word_timings] == ['Hi', 'you']
    assert track.duration == 0.6
    assert track.audio_path.read_bytes() == b'ID3 fake mp3 bytes'
    assert '/with-timestamps' in session.post.call_args[0][0]


def test_elevenlabs_http_error_is_provider_error(settings, tmp_path):
    settings.elevenlabs_api_key = 'key'
    session = mock.Mock()
    session.post.return_value = mock.Mock(status_code=401, text='unauthorized')

    with mock.patch.object(voiceover, 'get_http_session', return_value=session):
        with pytest.raises(ProviderError):
            ElevenLabsProvider(settings).synthesize("Hi", tmp_path / 'voice.mp3')


def test_edge_tts_offsets_chunk_timings(settings, tmp_path, monkeypatch):
    async def fake_stream(self, text, voice, output_path):
        output_path.write_bytes(b'audio')
        return [WordTiming(w, i * 0.5, i * 0.5 + 0.4) for i, w in enumerate(text.split())]

    def fake_concat(parts, output_path):
        output_path.write_bytes(b''.join(p.read_bytes() for p in parts))
        return output_path

    monkeypatch.setattr(voiceover, 'EDGE_CHUNK_LIMIT', 12)
    monkeypatch.setattr(EdgeTTSProvider, '_stream_chunk', fake_stream)
    monkeypatch.setattr(voiceover, 'concat_audio', fake_concat)
    monkeypatch.setattr(voiceover, 'get_media_duration', lambda path: 2.0)

    track = EdgeTTSProvider(settings).synthesize("One two. Three four.", tmp_path / 'voice.mp3')

    assert track.method == VoiceMethod.EDGE_TTS
    assert [(t.word, t.start) for t in track.word_timings] == [
        ('One', 0.0), ('two.', 0.5), ('Three', 2.0), ('four.', 2.5),
    ]
    assert track.audio_path.read_bytes() == b'audioaudio'
    assert not list(tmp_path.glob('voice_e*.mp3'))


def test_restore_punctuation_matches_script_tokens():
    timings = [WordTiming('Hello', 0.0, 0.3), WordTiming('world', 0.3, 0.6),
               WordTiming('Bye', 1.0, 1.2), WordTiming('unknown', 1.2, 1.4)]
    restored = restore_punctuation(timings, 'Hello, world! "Bye."')
    assert [t.word for t in restored] == ['Hello,', 'world!', '"Bye."', 'unknown']
    assert [t.start for t in restored] == [0.0, 0.3, 1.0, 1.2]


def test_edge_tts_boundaries_get_sentence_punctuation(settings, tmp_path, monkeypatch):
    import edge_tts

    class FakeCommunicate:
        def __init__(self, text, voice, boundary=None):
            self.words = [w.strip('.,!?') for w in text.split()]

        async def stream(self):
            yield {'type': 'audio', 'data': b'audio'}
            for i, word in enumerate(self.words):
                yield {'type': 'WordBoundary', 'offset': i * 5_000_000,
                       'duration': 4_000_000, 'text': word}

    monkeypatch.setattr(edge_tts, 'Communicate', FakeCommunicate)
    monkeypatch.setattr(voiceover, 'get_media_duration', lambda path: 2.0)

    track = EdgeTTSProvider(settings).synthesize("Hello world. This is a test!", tmp_path / 'voice.mp3')

    assert [t.word for t in track.word_timings] == ['Hello', 'world.', 'This', 'is', 'a', 'test!']
    assert track.word_timings[1].end == pytest.approx(0.9)

    groups = segment(track.word_timings)
    assert [g.text for g in groups] == ['HELLO WORLD.', 'THIS IS A TEST!']
