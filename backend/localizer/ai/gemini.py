import base64
import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import httpx

from localizer.ai.base import RawSegment, RawTranscript, SpeechToTextProvider, TranslationProvider, raise_for_provider
from localizer.core.config import get_settings
from localizer.core.errors import ProviderError
from localizer.services.languages import language_name

logger = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
HEADERS = {"Content-Type": "application/json"}
TRANSCRIBE_MODEL = "gemini-2.5-pro"
TRANSLATE_MODEL = "gemini-2.0-flash"
DETECT_MODEL = "gemini-1.5-pro"

_SEGMENT_LINE = re.compile(r"^\s*(SEGMENT_\d+)\s*:\s*(.+?)\s*$")


async def call_gemini(parts: list, model: str = TRANSLATE_MODEL, json_mode: bool = False,
                      temperature: float = 0.3, api_key: str | None = None) -> str:
    settings = get_settings()
    key = api_key or settings.gemini_api_key
    if not key:
        raise ProviderError("Gemini API key not configured", provider="gemini", retryable=False)
    body = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"temperature": temperature, "maxOutputTokens": 8192},
    }
    if json_mode:
        body["generationConfig"]["responseMimeType"] = "application/json"
    async with httpx.AsyncClient(timeout=settings.provider_http_timeout) as client:
        r = await client.post(GEMINI_API_URL.format(model=model), params={"key": key}, json=body, headers=HEADERS)
    raise_for_provider(r, "gemini")
    data = r.json()
    try:
        return data['candidates'][0]['content']['parts'][0]['text']
    except (KeyError, IndexError, TypeError):
        raise ProviderError(f"Gemini returned no text: {str(data)[:300]}", provider="gemini")


def parse_json_reply(raw: str) -> dict:
    """Parse a JSON object from a model reply that may be wrapped in prose or code fences."""
    cleaned = raw.strip().replace('```json', '').replace('```', '').strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", cleaned)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
    raise ProviderError(f"Gemini reply is not JSON: {raw[:200]}", provider="gemini")


def _audio_part(audio_path: str) -> dict:
    data = base64.b64encode(Path(audio_path).read_bytes()).decode('ascii')
    return {"inlineData": {"mimeType": "audio/wav", "data": data}}


TRANSCRIBE_PROMPT = """Transcribe this audio accurately{language_hint}.
Return JSON: {{"text": "full transcription", "language": "ISO 639-1 code",
"segments": [{{"text": "segment text", "start": seconds, "end": seconds}}]}}
Use natural pauses or sentence breaks for segments. If you cannot segment, return an empty segments array."""


class GeminiTranscriber(SpeechToTextProvider):
    name = 'gemini'
    model_source = 'gemini-2.5-pro'
    default_confidence = 0.85

    @property
    def available(self) -> bool:
        return bool(get_settings().gemini_api_key)

    async def transcribe(self, audio_path: str, language: Optional[str] = None) -> RawTranscript:
        hint = f" in {language_name(language)}" if language else ""
        raw = await call_gemini([_audio_part(audio_path), {"text": TRANSCRIBE_PROMPT.format(language_hint=hint)}],
                                model=TRANSCRIBE_MODEL, json_mode=True, temperature=0.0)
        payload = parse_json_reply(raw)
        segments = []
        for seg in payload.get('segments') or []:
            try:
                segments.append(RawSegment(text=str(seg['text']).strip(), start=float(seg['start']),
                                           end=float(seg['end']), confidence=self.default_confidence))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed Gemini segment: %s", seg)
        logger.info("Gemini transcription: %d chars, %d segments", len(payload.get('text') or ''), len(segments))
        return RawTranscript(text=payload.get('text') or '', segments=segments, language=payload.get('language'))


class GeminiTranslator(TranslationProvider):
    name = 'gemini'
    model = 'gemini-batch'
    confidence = 0.95

    @property
    def available(self) -> bool:
        return bool(get_settings().gemini_api_key)

    async def translate_batch(self, items: Sequence[Tuple[str, str]], source_language: Optional[str],
                              target_language: str) -> Dict[str, str]:
        source_name = language_name(source_language) if source_language else "the source language"
        target_name = language_name(target_language)
        batch_text = "\n".join(f"{key}: {text}" for key, text in items)
        prompt = (
            f"You are a professional translator. Translate the following {source_name} text segments to {target_name}.\n"
            "Each segment is marked SEGMENT_X: followed by its text.\n"
            "1. Keep every SEGMENT_X: marker unchanged, one segment per line\n"
            "2. Translate only the text after the colon\n"
            "3. Preserve names, numbers and the conversational flow\n"
            "4. Return exactly the same number of segments\n\n"
            f"{batch_text}\n\nTranslation to {target_name}:"
        )
        raw = await call_gemini([{"text": prompt}], model=TRANSLATE_MODEL)
        return parse_segment_lines(raw)


def parse_segment_lines(raw: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in raw.splitlines():
        m = _SEGMENT_LINE.match(line)
        if m:
            out[m.group(1)] = m.group(2)
    return out


async def detect_language_gemini(audio_path: str, supported: Dict[str, str]) -> Tuple[str, float]:
    listing = ', '.join(f"{code} ({name})" for code, name in supported.items())
    prompt = (
        "Identify the primary spoken language in this audio.\n"
        f"Supported languages: {listing}.\n"
        'Respond with only JSON: {"language": "code", "confidence": 0.0-1.0}'
    )
    raw = await call_gemini([{"text": prompt}, _audio_part(audio_path)], model=DETECT_MODEL, json_mode=True)
    payload = parse_json_reply(raw)
    code = (payload.get('language') or '').lower()
    if code not in supported:
        raise ProviderError(f"Gemini detected unsupported language {code!r}", provider="gemini")
    confidence = float(payload.get('confidence') or 0.8)
    return code, max(0.0, min(1.0, confidence))
