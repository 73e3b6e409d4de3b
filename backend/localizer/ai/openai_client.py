import logging
import math
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import httpx

from localizer.ai.base import RawSegment, RawTranscript, SpeechToTextProvider, TranslationProvider, raise_for_provider
from localizer.ai.gemini import parse_segment_lines
from localizer.core.config import get_settings
from localizer.core.errors import ProviderError
from localizer.services.languages import language_name

logger = logging.getLogger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1"
WHISPER_MODEL = "whisper-1"
CHAT_MODEL = "gpt-4o"
DEFAULT_SEGMENT_CONFIDENCE = 0.85


def _auth_headers() -> dict:
    key = get_settings().openai_api_key
    if not key:
        raise ProviderError("OpenAI API key not configured", provider="openai", retryable=False)
    return {"Authorization": f"Bearer {key}"}


async def whisper_verbose(audio_path: str, language: Optional[str] = None) -> dict:
    """POST the audio to the hosted Whisper endpoint and return the verbose_json payload."""
    headers = _auth_headers()
    path = Path(audio_path)
    data = {"model": WHISPER_MODEL, "response_format": "verbose_json"}
    if language:
        data["language"] = language
    async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout) as client:
        r = await client.post(f"{OPENAI_API_URL}/audio/transcriptions", headers=headers, data=data,
                              files={"file": (path.name, path.read_bytes(), "audio/wav")})
    raise_for_provider(r, "openai")
    return r.json()


def logprob_confidence(avg_logprob) -> float:
    if avg_logprob is None:
        return DEFAULT_SEGMENT_CONFIDENCE
    return max(0.0, min(1.0, math.exp(avg_logprob)))


class OpenAIWhisperTranscriber(SpeechToTextProvider):
    name = 'openai'
    model_source = 'openai-whisper'

    @property
    def available(self) -> bool:
        return bool(get_settings().openai_api_key)

    async def transcribe(self, audio_path: str, language: Optional[str] = None) -> RawTranscript:
        payload = await whisper_verbose(audio_path, language)
        segments = [
            RawSegment(text=(seg.get('text') or '').strip(), start=float(seg.get('start', 0.0)),
                       end=float(seg.get('end', 0.0)), confidence=logprob_confidence(seg.get('avg_logprob')))
            for seg in payload.get('segments') or []
        ]
        logger.info("Whisper API transcription: %d chars, %d segments", len(payload.get('text') or ''), len(segments))
        return RawTranscript(text=payload.get('text') or '', segments=segments, language=payload.get('language'))


class OpenAITranslator(TranslationProvider):
    name = 'openai'
    model = 'gpt-4o-batch'
    confidence = 0.9

    @property
    def available(self) -> bool:
        return bool(get_settings().openai_api_key)

    async def translate_batch(self, items: Sequence[Tuple[str, str]], source_language: Optional[str],
                              target_language: str) -> Dict[str, str]:
        headers = _auth_headers()
        source_name = language_name(source_language) if source_language else "source"
        batch_text = "\n".join(f"{key}: {text}" for key, text in items)
        body = {
            "model": CHAT_MODEL,
            "temperature": 0.3,
            "messages": [{
                "role": "user",
                "content": (f"Translate the following {source_name} text segments to {language_name(target_language)}. "
                            f"Keep the SEGMENT_X: format intact, one segment per line.\n\n{batch_text}"),
            }],
        }
        async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout) as client:
            r = await client.post(f"{OPENAI_API_URL}/chat/completions", headers=headers, json=body)
        raise_for_provider(r, "openai")
        try:
            content = r.json()['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise ProviderError("OpenAI returned no completion", provider="openai")
        return parse_segment_lines(content)
