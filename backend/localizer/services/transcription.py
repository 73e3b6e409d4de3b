"""
Transcription engine: provider calls, subtitle standardisation and persistence.

Each selected provider is asked for a timestamped transcript of the full
extracted audio. Raw segments are clipped to the video, made non-overlapping,
split to the maximum subtitle duration and scored; the first provider that
succeeds becomes the active segment set and every successful result is kept so
the user can switch model source later.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from localizer.ai.base import ProviderLadder, RawTranscript, SpeechToTextProvider
from localizer.core.config import Settings, get_settings
from localizer.core.errors import (
    InvalidState, NotFound, PipelineError, ProviderError, ProviderQuotaExceeded, UnsupportedFormat, classify_error,
)
from localizer.models.transcription import TranscriptionSegment, Translation
from localizer.models.video import Video, VideoStatus
from localizer.services.languages import DEFAULT_LANGUAGE, normalize_language
from localizer.services.media import MediaExtractor
from localizer.services.standards import enhanced_confidence, split_long_segment, validate_segment

logger = logging.getLogger(__name__)

FALLBACK_MODEL_SOURCE = 'fallback-service'
FALLBACK_SEGMENT_CAP = 0.75
FALLBACK_FLAT_CONFIDENCE = 0.65
FLAT_TEXT_CONFIDENCE = 0.75
DEFAULT_RAW_CONFIDENCE = 0.85


@dataclass
class SegmentDraft:
    text: str
    start: float
    end: float
    confidence: float
    model_source: str
    speaker_id: Optional[str] = None
    speaker_name: Optional[str] = None


class TranscriptionOutcome(NamedTuple):
    segments: List[TranscriptionSegment]
    model_source: str
    language: str
    speaker_count: Optional[int]
    alternatives: Dict[str, List[dict]]

    def video_values(self) -> dict:
        # a fresh segment set always needs a fresh review
        return dict(
            source_confirmed=False,
            active_model_source=self.model_source,
            source_language=self.language,
            speaker_count=self.speaker_count,
            alternatives_json=json.dumps(self.alternatives),
        )


def standardize(raw: RawTranscript, model_source: str, duration: Optional[float],
                max_duration: float = 7.0, confidence_cap: Optional[float] = None,
                flat_confidence: float = FLAT_TEXT_CONFIDENCE) -> List[SegmentDraft]:
    """Turn a provider transcript into ordered, non-overlapping, length-limited segments.

    Flat-text results (no usable segments) become one whole-duration segment,
    split like any other, at ``flat_confidence``.

    Pieces never exceed ``max_duration`` except when a long segment has fewer
    words than pieces needed; split_long_segment then emits one piece per word
    (and logs a warning). That is the only path producing over-long segments.
    """
    drafts: List[SegmentDraft] = []
    prev_end = 0.0
    for seg in sorted(raw.segments, key=lambda s: (s.start, s.end)):
        text = (seg.text or '').strip()
        start = max(float(seg.start), prev_end, 0.0)
        end = float(seg.end)
        if duration:
            end = min(end, duration)
        if not text or end <= start:
            logger.debug("Dropping unusable %s segment %.2f-%.2f", model_source, seg.start, seg.end)
            continue
        raw_conf = seg.confidence if seg.confidence is not None else DEFAULT_RAW_CONFIDENCE
        for piece in split_long_segment(text, start, end, max_duration):
            quality = validate_segment(piece.text, piece.start, piece.end)
            confidence = enhanced_confidence(raw_conf, model_source, quality.quality_score,
                                             len(piece.text), piece.end - piece.start)
            if confidence_cap is not None:
                confidence = min(confidence, confidence_cap)
            drafts.append(SegmentDraft(piece.text, piece.start, piece.end, round(confidence, 4), model_source,
                                       seg.speaker_id, seg.speaker_name))
        prev_end = end

    if drafts:
        return drafts

    text = (raw.text or '').strip()
    if not text or not duration:
        return []
    logger.info("%s returned flat text only; synthesising whole-duration segments", model_source)
    confidence = flat_confidence if confidence_cap is None else min(flat_confidence, confidence_cap)
    return [SegmentDraft(piece.text, piece.start, piece.end, confidence, model_source)
            for piece in split_long_segment(text, 0.0, duration, max_duration)]


def _speaker_count(drafts: Sequence[SegmentDraft]) -> Optional[int]:
    speakers = {d.speaker_id for d in drafts if d.speaker_id}
    return len(speakers) or None


def _combined_failure(failures: Sequence[PipelineError]) -> PipelineError:
    if not failures:
        return ProviderError("No transcription provider produced any segments", retryable=False)
    for kind in (ProviderQuotaExceeded, UnsupportedFormat):
        for failure in failures:
            if isinstance(failure, kind):
                return failure
    return failures[-1]


class TranscriptionEngine:
    def __init__(self, session_factory: async_sessionmaker, extractor: MediaExtractor,
                 providers: Dict[str, SpeechToTextProvider], settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.extractor = extractor
        self.providers = providers
        self.settings = settings or get_settings()

    async def _video(self, video_id: int) -> Video:
        async with self.session_factory() as db:
            video = (await db.execute(select(Video).where(Video.id == video_id))).scalar_one_or_none()
        if video is None:
            raise NotFound(f"Video {video_id} not found")
        return video

    async def ensure_duration(self, video: Video) -> float:
        if video.duration:
            return video.duration
        duration = await self.extractor.get_duration(video.source)
        async with self.session_factory() as db:
            row = await db.get(Video, video.id)
            row.duration = duration
            await db.commit()
        video.duration = duration
        return duration

    def resolve_models(self, video: Video, selected: Optional[Sequence[str]]) -> List[str]:
        names = list(selected or [])
        if not names and video.selected_models:
            names = json.loads(video.selected_models)
        if not names:
            names = list(self.settings.transcription_models)
        known = [n for n in names if n in self.providers]
        for n in set(names) - set(known):
            logger.warning("Ignoring unknown transcription model %r", n)
        if not known:
            raise ProviderError(f"None of the selected models {names} is available", retryable=False)
        return known

    async def transcribe(self, video_id: int, selected_models: Optional[Sequence[str]] = None) -> TranscriptionOutcome:
        video = await self._video(video_id)
        models = self.resolve_models(video, selected_models)
        duration = await self.ensure_duration(video)
        results: Dict[str, List[SegmentDraft]] = {}
        languages: Dict[str, Optional[str]] = {}
        failures: List[PipelineError] = []

        async with await self.extractor.extract_audio(video.source) as audio:
            for name in models:
                provider = self.providers[name]
                try:
                    raw = await provider.transcribe(audio.path, video.source_language)
                except Exception as e:
                    err = classify_error(e)
                    logger.warning("Transcription with %s failed for video %s: %s", name, video_id, err)
                    failures.append(err)
                    continue
                drafts = standardize(raw, provider.model_source, duration, self.settings.max_segment_seconds)
                if not drafts:
                    failures.append(ProviderError(f"{name} returned no speech", provider=name, retryable=False))
                    continue
                results[provider.model_source] = drafts
                languages[provider.model_source] = normalize_language(raw.language)
                logger.info("Video %s: %s produced %d segments", video_id, provider.model_source, len(drafts))

        if not results:
            raise _combined_failure(failures)
        active, drafts = next(iter(results.items()))
        language = video.source_language or languages.get(active) or DEFAULT_LANGUAGE
        segments = await self._replace_segments(video_id, language, drafts)
        alternatives = {source: [asdict(d) for d in ds] for source, ds in results.items()}
        return TranscriptionOutcome(segments, active, language, _speaker_count(drafts), alternatives)

    async def transcribe_with_fallback(self, video_id: int) -> TranscriptionOutcome:
        """Explicit second-chance path: walk the fallback providers on quota errors only."""
        video = await self._video(video_id)
        duration = await self.ensure_duration(video)
        chain = [self.providers[n] for n in self.settings.fallback_providers if n in self.providers]
        ladder: ProviderLadder = ProviderLadder(chain, label='fallback transcription')

        async with await self.extractor.extract_audio(video.source) as audio:
            provider, raw = await ladder.attempt(lambda p: p.transcribe(audio.path, video.source_language))

        drafts = standardize(raw, FALLBACK_MODEL_SOURCE, duration, self.settings.max_segment_seconds,
                             confidence_cap=FALLBACK_SEGMENT_CAP, flat_confidence=FALLBACK_FLAT_CONFIDENCE)
        if not drafts:
            raise ProviderError(f"Fallback provider {provider.name} returned no speech", provider=provider.name,
                                retryable=False)
        logger.info("Video %s: fallback via %s produced %d segments", video_id, provider.name, len(drafts))
        language = video.source_language or normalize_language(raw.language) or DEFAULT_LANGUAGE
        segments = await self._replace_segments(video_id, language, drafts)
        return TranscriptionOutcome(segments, FALLBACK_MODEL_SOURCE, language, _speaker_count(drafts),
                                    {FALLBACK_MODEL_SOURCE: [asdict(d) for d in drafts]})

    async def _replace_segments(self, video_id: int, language: str,
                                drafts: Sequence[SegmentDraft]) -> List[TranscriptionSegment]:
        async with self.session_factory() as db:
            await self._delete_segments(db, video_id)
            rows = [
                TranscriptionSegment(video_id=video_id, language=language, text=d.text, start_time=d.start,
                                     end_time=d.end, confidence=d.confidence, model_source=d.model_source,
                                     speaker_id=d.speaker_id, speaker_name=d.speaker_name, is_original=True)
                for d in drafts
            ]
            db.add_all(rows)
            await db.commit()
            for row in rows:
                await db.refresh(row)
        return rows

    @staticmethod
    async def _delete_segments(db: AsyncSession, video_id: int) -> None:
        # translations first: SQLite does not enforce ON DELETE CASCADE by default
        segment_ids = select(TranscriptionSegment.id).where(TranscriptionSegment.video_id == video_id)
        await db.execute(delete(Translation).where(Translation.segment_id.in_(segment_ids)))
        await db.execute(delete(TranscriptionSegment).where(TranscriptionSegment.video_id == video_id))

    async def select_model_source(self, video_id: int, model_source: str) -> List[TranscriptionSegment]:
        """Make a stored alternative the active segment set."""
        video = await self._video(video_id)
        if video.status != VideoStatus.COMPLETED.value:
            raise InvalidState(f"Video {video_id} is {video.status}; model source can change only after transcription")
        alternatives = json.loads(video.alternatives_json or '{}')
        if model_source not in alternatives:
            raise NotFound(f"No {model_source!r} transcription stored for video {video_id}")
        if model_source == video.active_model_source:
            return await self.list_segments(video_id)
        drafts = [SegmentDraft(**d) for d in alternatives[model_source]]
        segments = await self._replace_segments(video_id, video.source_language or DEFAULT_LANGUAGE, drafts)
        async with self.session_factory() as db:
            row = await db.get(Video, video_id)
            row.active_model_source = model_source
            row.speaker_count = _speaker_count(drafts)
            await db.commit()
        logger.info("Video %s: switched active model source to %s", video_id, model_source)
        return segments

    async def list_segments(self, video_id: int) -> List[TranscriptionSegment]:
        async with self.session_factory() as db:
            rows = await db.execute(
                select(TranscriptionSegment)
                .where(TranscriptionSegment.video_id == video_id)
                .order_by(TranscriptionSegment.start_time)
            )
            return list(rows.scalars().all())
