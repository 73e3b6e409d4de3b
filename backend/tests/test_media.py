import os
import pytest

from localizer.core.errors import DurationUnavailable, ExtractionFailed, UnsupportedFormat
from localizer.services.media import AudioHandle, MediaExtractor, is_streaming_url, parse_clock


class FakeTools:
    """Stands in for ffmpeg/ffprobe/yt-dlp; records every command line."""

    def __init__(self, code=0, out='', err='', write_output=True):
        self.code = code
        self.out = out
        self.err = err
        self.write_output = write_output
        self.commands = []

    async def __call__(self, *args):
        self.commands.append(args)
        if args[0] == 'ffmpeg' and self.write_output:
            with open(args[-1], 'wb') as f:
                f.write(b'RIFF')
        return self.code, self.out, self.err


@pytest.fixture
def media_file(tmp_path):
    path = tmp_path / 'clip.mp4'
    path.write_bytes(b'\x00\x00\x00\x18ftypmp42')
    return str(path)


@pytest.fixture
def media(tmp_path):
    return MediaExtractor(str(tmp_path / 'work'))


@pytest.mark.anyio
async def test_extract_audio_produces_wav_and_cleans_up(media, media_file, monkeypatch):
    tools = FakeTools()
    monkeypatch.setattr(media, '_run', tools)
    handle = await media.extract_audio(media_file, max_seconds=30)
    assert os.path.exists(handle.path)
    args = tools.commands[0]
    assert args[0] == 'ffmpeg'
    assert '16000' in args and 'pcm_s16le' in args
    assert args[args.index('-t') + 1] == '30'
    async with handle:
        pass
    assert not os.path.exists(handle.path)


@pytest.mark.anyio
async def test_ffmpeg_failure_removes_partial_output(media, media_file, monkeypatch):
    tools = FakeTools(code=1, err='Conversion failed!')
    monkeypatch.setattr(media, '_run', tools)
    with pytest.raises(ExtractionFailed):
        await media.extract_audio(media_file)
    assert os.listdir(media.work_dir) == []


@pytest.mark.anyio
async def test_undecodable_media_is_unsupported(media, media_file, monkeypatch):
    monkeypatch.setattr(media, '_run', FakeTools(code=1, err='clip.mp4: Invalid data found when processing input'))
    with pytest.raises(UnsupportedFormat):
        await media.extract_audio(media_file)


@pytest.mark.anyio
async def test_missing_local_file(media, tmp_path):
    with pytest.raises(ExtractionFailed):
        await media.extract_audio(str(tmp_path / 'nope.mp4'))


@pytest.mark.anyio
async def test_ffprobe_duration(media, media_file, monkeypatch):
    tools = FakeTools(out='63.25\n')
    monkeypatch.setattr(media, '_run', tools)
    assert await media.get_duration(media_file) == 63.25
    assert tools.commands[0][0] == 'ffprobe'


@pytest.mark.anyio
async def test_streaming_duration_from_yt_dlp(media, monkeypatch):
    tools = FakeTools(out='1:02:03\n')
    monkeypatch.setattr(media, '_run', tools)
    assert await media.get_duration('https://www.youtube.com/watch?v=abc') == 3723.0
    assert tools.commands[0][0] == 'yt-dlp'


@pytest.mark.anyio
@pytest.mark.parametrize('out', ['', 'N/A', '0'])
async def test_duration_unavailable(media, media_file, monkeypatch, out):
    monkeypatch.setattr(media, '_run', FakeTools(out=out))
    with pytest.raises(DurationUnavailable):
        await media.get_duration(media_file)


@pytest.mark.anyio
async def test_audio_handle_removes_temp_files(tmp_path):
    audio = tmp_path / 'a.wav'
    extra = tmp_path / 'a.media'
    audio.write_bytes(b'x')
    extra.write_bytes(b'y')
    handle = AudioHandle(str(audio), [str(extra)])
    await handle.cleanup()
    await handle.cleanup()
    assert not audio.exists() and not extra.exists()


def test_parse_clock():
    assert parse_clock('45') == 45.0
    assert parse_clock('02:03') == 123.0
    assert parse_clock('1:02:03.5') == 3723.5
    with pytest.raises(ValueError):
        parse_clock('1:2:3:4')


def test_streaming_urls():
    assert is_streaming_url('https://youtu.be/abc')
    assert is_streaming_url('https://vimeo.com/123')
    assert not is_streaming_url('https://example.com/video.mp4')
