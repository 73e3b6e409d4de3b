import logging
from typing import Awaitable, Callable, NamedTuple, Optional, Sequence, Tuple

from localizer.ai.gemini import detect_language_gemini
from localizer.ai.openai_client import whisper_verbose
from localizer.core.errors import ProviderError
from localizer.services.languages import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES, normalize_language
from localizer.services.standards import text_quality_confidence

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.3

Detector = Callable[[str], Awaitable[Tuple[str, float]]]


class DetectedLanguage(NamedTuple):
    code: str
    confidence: float
    provider: str


async def detect_with_whisper(audio_path: str) -> Tuple[str, float]:
    payload = await whisper_verbose(audio_path)
    code = normalize_language(payload.get('language'))
    if not code:
        raise ProviderError(f"Whisper reported unsupported language {payload.get('language')!r}", provider="openai")
    # the API gives no language probability; judge by how clean the sample transcript is
    return code, text_quality_confidence(payload.get('text') or '')


async def detect_with_gemini(audio_path: str) -> Tuple[str, float]:
    return await detect_language_gemini(audio_path, SUPPORTED_LANGUAGES)


class LanguageDetector:
    """Primary provider, then secondary, then a low-confidence default. Never raises."""

    def __init__(self, detectors: Optional[Sequence[Tuple[str, Detector]]] = None,
                 default: str = DEFAULT_LANGUAGE):
        self.detectors = list(detectors) if detectors is not None else [
            ('openai', detect_with_whisper),
            ('gemini', detect_with_gemini),
        ]
        self.default = default

    async def detect(self, audio_path: str) -> DetectedLanguage:
        for name, detector in self.detectors:
            try:
                code, confidence = await detector(audio_path)
                logger.info("Language detected by %s: %s (%.2f)", name, code, confidence)
                return DetectedLanguage(code, confidence, name)
            except Exception as e:
                logger.warning("Language detection via %s failed: %s", name, e)
        logger.warning("All language detectors failed; defaulting to %s", self.default)
        return DetectedLanguage(self.default, DEFAULT_CONFIDENCE, 'default')
