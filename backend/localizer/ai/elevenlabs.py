import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

import httpx

from localizer.ai.base import (
    DubbingPoll, DubbingProvider, RawSegment, RawTranscript, SpeechToTextProvider, raise_for_provider,
)
from localizer.core.config import get_settings
from localizer.core.errors import ProviderError
from localizer.services.languages import normalize_language
from localizer.services.standards import text_quality_confidence

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
STT_MODEL = "scribe_v1"
_SENTENCE_END = re.compile(r"[.!?।]$")


def _headers() -> dict:
    key = get_settings().elevenlabs_api_key
    if not key:
        raise ProviderError("ElevenLabs API key not configured", provider="elevenlabs", retryable=False)
    return {"xi-api-key": key}


def words_to_segments(words: List[dict], confidence: float) -> List[RawSegment]:
    """Group word timings into sentence segments, also breaking on speaker change."""
    segments: List[RawSegment] = []
    buf: List[str] = []
    start = end = None
    speaker = None

    def flush():
        if buf and start is not None:
            segments.append(RawSegment(text=''.join(buf).strip(), start=start, end=end,
                                       confidence=confidence, speaker_id=speaker))

    for w in words:
        if w.get('type') not in (None, 'word', 'spacing', 'punctuation'):
            continue
        token = w.get('text') or ''
        if w.get('type') == 'spacing':
            if buf:
                buf.append(token)
            continue
        w_speaker = w.get('speaker_id')
        if buf and w_speaker != speaker:
            flush()
            buf, start = [], None
        if start is None:
            start = float(w.get('start', 0.0))
            speaker = w_speaker
        buf.append(token)
        end = float(w.get('end', start))
        if _SENTENCE_END.search(token):
            flush()
            buf, start = [], None
    flush()
    return [s for s in segments if s.text and s.end > s.start]


class ElevenLabsTranscriber(SpeechToTextProvider):
    name = 'elevenlabs'
    model_source = 'elevenlabs-stt'

    @property
    def available(self) -> bool:
        return bool(get_settings().elevenlabs_api_key)

    async def transcribe(self, audio_path: str, language: Optional[str] = None) -> RawTranscript:
        headers = _headers()
        path = Path(audio_path)
        data = {"model_id": STT_MODEL, "diarize": "true", "timestamps_granularity": "word"}
        if language:
            data["language_code"] = language
        async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout) as client:
            r = await client.post(f"{ELEVENLABS_API_URL}/speech-to-text", headers=headers, data=data,
                                  files={"file": (path.name, path.read_bytes(), "audio/wav")})
        raise_for_provider(r, "elevenlabs")
        payload = r.json()
        text = payload.get('text') or ''
        if not text.strip():
            raise ProviderError("ElevenLabs returned an empty transcription", provider="elevenlabs")
        # ElevenLabs reports language probability, not per-segment confidence
        confidence = text_quality_confidence(text, base=0.75, ceiling=0.9)
        segments = words_to_segments(payload.get('words') or [], confidence)
        return RawTranscript(text=text, segments=segments, confidence=confidence,
                             language=normalize_language(payload.get('language_code')))


class ElevenLabsDubber(DubbingProvider):
    """ElevenLabs dubbing studio: one job per video and target language."""

    name = 'elevenlabs'

    async def submit_dubbing_job(self, audio_path: str, source_language: Optional[str],
                                 target_language: str, voice_ids: Sequence[str]) -> str:
        headers = _headers()
        path = Path(audio_path)
        # the automatic dubbing endpoint clones speaker voices itself; only the
        # speaker count from the assignment is forwarded
        data = {
            "target_lang": target_language,
            "num_speakers": str(max(1, len(voice_ids))),
            "watermark": "true" if get_settings().dubbing_watermark else "false",
        }
        if source_language:
            data["source_lang"] = source_language
        async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout) as client:
            r = await client.post(f"{ELEVENLABS_API_URL}/dubbing", headers=headers, data=data,
                                  files={"file": (path.name, path.read_bytes(), "audio/wav")})
        raise_for_provider(r, "elevenlabs")
        dubbing_id = r.json().get('dubbing_id')
        if not dubbing_id:
            raise ProviderError("No dubbing id received from ElevenLabs", provider="elevenlabs")
        logger.info("ElevenLabs dubbing job %s created for %s", dubbing_id, target_language)
        return dubbing_id

    async def poll_job(self, job_id: str, target_language: str) -> DubbingPoll:
        async with httpx.AsyncClient(timeout=30) as client:
            r = await client.get(f"{ELEVENLABS_API_URL}/dubbing/{job_id}", headers=_headers())
        raise_for_provider(r, "elevenlabs")
        payload = r.json()
        status = payload.get('status')
        if status == 'dubbed':
            return DubbingPoll('completed', output_url=f"{ELEVENLABS_API_URL}/dubbing/{job_id}/audio/{target_language}")
        if status == 'failed':
            return DubbingPoll('failed', error=payload.get('error_message') or payload.get('error') or 'Unknown error')
        return DubbingPoll('processing')

    async def download(self, output_url: str, dest_path: str) -> str:
        dest = Path(dest_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout) as client:
            async with client.stream('GET', output_url, headers=_headers()) as r:
                if not r.is_success:
                    await r.aread()
                raise_for_provider(r, "elevenlabs")
                with open(dest, 'wb') as f:
                    async for chunk in r.aiter_bytes():
                        f.write(chunk)
        return str(dest)
