"""Vendor clients for speech-to-text, translation and dubbing."""

from localizer.ai.base import SpeechToTextProvider, TranslationProvider, DubbingProvider, ProviderLadder
from localizer.ai.elevenlabs import ElevenLabsDubber, ElevenLabsTranscriber
from localizer.ai.gemini import GeminiTranscriber, GeminiTranslator
from localizer.ai.openai_client import OpenAITranslator, OpenAIWhisperTranscriber
from localizer.ai.whisper_local import LocalWhisperTranscriber


def default_transcribers() -> dict[str, SpeechToTextProvider]:
    return {
        'openai': OpenAIWhisperTranscriber(),
        'gemini': GeminiTranscriber(),
        'elevenlabs': ElevenLabsTranscriber(),
        'local': LocalWhisperTranscriber(),
    }


def default_translators() -> dict[str, TranslationProvider]:
    return {'gemini': GeminiTranslator(), 'openai': OpenAITranslator()}


__all__ = [
    'SpeechToTextProvider', 'TranslationProvider', 'DubbingProvider', 'ProviderLadder',
    'ElevenLabsDubber', 'default_transcribers', 'default_translators',
]
