"""
Provider contracts and the quota fallback ladder.

Speech-to-text, translation and dubbing vendors are reached through the small
interfaces below so that engines can be given real HTTP clients in production
and fakes in tests.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

import httpx

from localizer.core.errors import ProviderError, ProviderQuotaExceeded, UnsupportedFormat

logger = logging.getLogger(__name__)

T = TypeVar('T')
P = TypeVar('P')

_QUOTA_MARKERS = ('quota', 'rate limit', 'rate_limit', 'insufficient_quota', 'resource_exhausted')
_FORMAT_MARKERS = ('invalid file format', 'unsupported', 'could not decode', 'invalid_audio')


@dataclass
class RawSegment:
    text: str
    start: float
    end: float
    confidence: Optional[float] = None  # already on a 0..1 scale
    speaker_id: Optional[str] = None
    speaker_name: Optional[str] = None


@dataclass
class RawTranscript:
    text: str
    segments: List[RawSegment] = field(default_factory=list)
    language: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class DubbingPoll:
    status: str  # 'processing' | 'completed' | 'failed'
    output_url: Optional[str] = None
    error: Optional[str] = None


class SpeechToTextProvider:
    name = 'base'
    model_source = 'unknown'

    @property
    def available(self) -> bool:
        return True

    async def transcribe(self, audio_path: str, language: Optional[str] = None) -> RawTranscript:
        raise NotImplementedError


class TranslationProvider:
    name = 'base'
    model = 'unknown'
    confidence = 0.9

    @property
    def available(self) -> bool:
        return True

    async def translate_batch(self, items: Sequence[Tuple[str, str]], source_language: Optional[str],
                              target_language: str) -> Dict[str, str]:
        """Translate ``(key, text)`` pairs in one request; returns ``{key: translated}``."""
        raise NotImplementedError


class DubbingProvider:
    name = 'base'

    async def submit_dubbing_job(self, audio_path: str, source_language: Optional[str],
                                 target_language: str, voice_ids: Sequence[str]) -> str:
        raise NotImplementedError

    async def poll_job(self, job_id: str, target_language: str) -> DubbingPoll:
        raise NotImplementedError

    async def download(self, output_url: str, dest_path: str) -> str:
        raise NotImplementedError


def raise_for_provider(response: httpx.Response, provider: str) -> None:
    """Translate an HTTP error response into the pipeline's provider errors."""
    if response.is_success:
        return
    body = response.text[:500]
    lowered = body.lower()
    if response.status_code == 429 or any(m in lowered for m in _QUOTA_MARKERS):
        raise ProviderQuotaExceeded(f"{provider} quota exceeded ({response.status_code}): {body}", provider=provider)
    if response.status_code in (400, 415, 422) and any(m in lowered for m in _FORMAT_MARKERS):
        raise UnsupportedFormat(f"{provider} rejected the media format: {body}")
    raise ProviderError(f"{provider} API error {response.status_code}: {body}", provider=provider,
                        retryable=response.status_code >= 500 or response.status_code == 408)


class ProviderLadder(Generic[P, T]):
    """Ordered provider strategies walked only on quota errors.

    Any other failure, including UnsupportedFormat, stops the walk and is
    raised as-is: a different vendor will not decode a file the first one
    could not.
    """

    def __init__(self, providers: Sequence[P], label: str = 'provider'):
        self.providers = [p for p in providers if getattr(p, 'available', True)]
        self.label = label

    async def attempt(self, call: Callable[[P], Awaitable[T]]) -> Tuple[P, T]:
        if not self.providers:
            raise ProviderError(f"No {self.label} configured", retryable=False)
        last_quota: Optional[ProviderQuotaExceeded] = None
        for provider in self.providers:
            name = getattr(provider, 'name', type(provider).__name__)
            try:
                logger.info("%s ladder: trying %s", self.label, name)
                return provider, await call(provider)
            except ProviderQuotaExceeded as e:
                logger.warning("%s ladder: %s quota exceeded, moving on", self.label, name)
                last_quota = e
        raise last_quota
