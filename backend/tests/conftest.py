import asyncio, os, tempfile, uuid
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

_TMP = tempfile.mkdtemp(prefix='localizer-test-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_TMP, 'default.db')}")
os.environ.setdefault('UPLOAD_DIR', os.path.join(_TMP, 'uploads'))
os.environ.setdefault('WORK_DIR', os.path.join(_TMP, 'storage'))
os.environ.setdefault('APP_ENV', 'test')

from localizer.ai.base import DubbingPoll, DubbingProvider, RawSegment, RawTranscript, SpeechToTextProvider, TranslationProvider  # after env setup
from localizer.core.config import Settings
from localizer.db.database import init_models
from localizer.main import create_app
from localizer.services.language_detection import LanguageDetector
from localizer.services.media import AudioHandle
from localizer.services.pipeline import build_pipeline

HAPPY_SEGMENTS = [
    RawSegment("This is the first sentence of our test video.", 0.0, 5.0, 0.9),
    RawSegment("Here comes the second part with more words.", 5.0, 10.0, 0.9),
    RawSegment("And finally the third part closes the clip.", 10.0, 15.0, 0.9),
]


class FakeExtractor:
    def __init__(self, work_dir, duration=15.0):
        self.work_dir = work_dir
        self.duration = duration
        self.duration_error = None
        self.extract_error = None
        self.extracted = []

    async def get_duration(self, source):
        if self.duration_error:
            raise self.duration_error
        return self.duration

    async def extract_audio(self, source, max_seconds=None):
        if self.extract_error:
            raise self.extract_error
        path = os.path.join(self.work_dir, f"{uuid.uuid4().hex}.wav")
        with open(path, 'wb') as f:
            f.write(b'RIFF0000WAVE')
        self.extracted.append(path)
        return AudioHandle(path)


class FakeTranscriber(SpeechToTextProvider):
    def __init__(self, name, model_source, segments=None, text=None, error=None, language='bn', gate=None):
        self.name = name
        self.model_source = model_source
        self.segments = list(segments or [])
        self.text = text if text is not None else ' '.join(s.text for s in self.segments)
        self.error = error
        self.language = language
        self.gate = gate
        self.calls = 0

    async def transcribe(self, audio_path, language=None):
        self.calls += 1
        assert os.path.exists(audio_path)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return RawTranscript(text=self.text, segments=list(self.segments), language=self.language)


class FakeTranslator(TranslationProvider):
    name = 'fake'
    model = 'fake-batch'
    confidence = 0.95

    def __init__(self):
        self.calls = []
        self.drop_once = set()
        self.prefix = ''

    async def translate_batch(self, items, source_language, target_language):
        self.calls.append([key for key, _ in items])
        out = {key: f"{self.prefix}[{target_language}] {text}" for key, text in items if key not in self.drop_once}
        self.drop_once = set()
        return out


class FakeDubber(DubbingProvider):
    name = 'fake'

    def __init__(self):
        self.submitted = []
        self.poll_status = 'completed'
        self.submit_error = None
        self.download_error = None

    async def submit_dubbing_job(self, audio_path, source_language, target_language, voice_ids):
        if self.submit_error:
            raise self.submit_error
        self.submitted.append((target_language, list(voice_ids)))
        return f"dub-{len(self.submitted)}"

    async def poll_job(self, job_id, target_language):
        if self.poll_status == 'completed':
            return DubbingPoll('completed', output_url=f"memory://{job_id}/{target_language}")
        if self.poll_status == 'no-audio':
            return DubbingPoll('completed')
        if self.poll_status == 'failed':
            return DubbingPoll('failed', error='voice synthesis failed')
        return DubbingPoll('processing')

    async def download(self, output_url, dest_path):
        if self.download_error:
            raise self.download_error
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)
        with open(dest_path, 'wb') as f:
            f.write(b'ID3fake-mp3')
        return dest_path


async def detect_bengali(audio_path):
    return 'bn', 0.9


@pytest.fixture(scope='session')
def anyio_backend():
    return 'asyncio'


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        upload_dir=str(tmp_path / 'uploads'),
        work_dir=str(tmp_path / 'storage'),
        transcription_models=['primary'],
        fallback_providers=['secondary', 'tertiary'],
        translation_model='fake',
        max_segment_seconds=7.0,
        processing_timeout_seconds=5,
        translation_timeout_seconds=5,
        dubbing_timeout_seconds=60,
    )


@pytest.fixture
async def session_factory(settings):
    engine = create_async_engine(settings.database_url)
    await init_models(bind=engine)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
def extractor(tmp_path):
    work = tmp_path / 'audio'
    work.mkdir()
    return FakeExtractor(str(work))


@pytest.fixture
def transcribers():
    return {
        'primary': FakeTranscriber('primary', 'openai-whisper', HAPPY_SEGMENTS),
        'secondary': FakeTranscriber('secondary', 'gemini-2.5-pro', HAPPY_SEGMENTS),
        'tertiary': FakeTranscriber('tertiary', 'elevenlabs-stt', HAPPY_SEGMENTS),
    }


@pytest.fixture
def translator():
    return FakeTranslator()


@pytest.fixture
def dubber():
    return FakeDubber()


@pytest.fixture
def pipeline(session_factory, extractor, transcribers, translator, dubber, settings):
    return build_pipeline(
        session_factory=session_factory,
        extractor=extractor,
        transcribers=transcribers,
        translators={'fake': translator},
        dubber=dubber,
        detector=LanguageDetector([('fake', detect_bengali)]),
        settings=settings,
    )


async def wait_for_status(pipeline, video_id, status, attempts=200):
    for _ in range(attempts):
        video = await pipeline.get_video(video_id)
        if video.status == status:
            return video
        await asyncio.sleep(0.01)
    raise AssertionError(f"video {video_id} never reached {status} (is {video.status})")


@pytest.fixture
def make_completed_video(pipeline):
    """Video that went through analysis and transcription."""
    async def _make(name='clip.mp4'):
        video = await pipeline.create_video(name, f"/media/{name}")
        await pipeline.start_processing(video.id)
        await pipeline.runner.drain()
        return await pipeline.get_video(video.id)
    return _make


@pytest.fixture
async def client(pipeline):
    app = create_app(pipeline)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac
