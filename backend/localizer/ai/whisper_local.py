import asyncio
import logging
import warnings
from typing import Optional

from localizer.ai.base import RawSegment, RawTranscript, SpeechToTextProvider
from localizer.ai.openai_client import logprob_confidence
from localizer.core.config import get_settings
from localizer.core.errors import ProviderError

logger = logging.getLogger(__name__)

_model = None


def get_model():
    """Load the on-box whisper model once; requires the ``local`` extra."""
    global _model
    if _model is None:
        try:
            import whisper  # type: ignore
        except ImportError:
            raise ProviderError("openai-whisper is not installed (pip install 'video-localizer[local]')",
                                provider="local", retryable=False)
        size = get_settings().whisper_model
        # Suppress torch.load future warning emitted inside whisper
        with warnings.catch_warnings():
            warnings.filterwarnings(
                "ignore",
                message=r"You are using `torch.load` with `weights_only=False`.*",
                category=FutureWarning,
            )
            _model = whisper.load_model(size)
        logger.info("Loaded local whisper model %s", size)
    return _model


def _transcribe_sync(path: str, language: Optional[str]) -> dict:
    model = get_model()
    return model.transcribe(path, verbose=False, language=language)


class LocalWhisperTranscriber(SpeechToTextProvider):
    name = 'local'
    model_source = 'local-whisper'

    async def transcribe(self, audio_path: str, language: Optional[str] = None) -> RawTranscript:
        # whisper is CPU/GPU bound and synchronous
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, _transcribe_sync, audio_path, language)
        segments = [
            RawSegment(text=(seg.get('text') or '').strip(), start=float(seg.get('start', 0.0)),
                       end=float(seg.get('end', 0.0)), confidence=logprob_confidence(seg.get('avg_logprob')))
            for seg in result.get('segments', [])
        ]
        return RawTranscript(text=result.get('text') or '', segments=segments, language=result.get('language'))
