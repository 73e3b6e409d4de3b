"""
Top-level coordinator for a video's localization lifecycle.

Analysis (duration probe + language detection on a short sample) and
transcription run as background tasks under a bounded wait; their outcomes go
through the state machine. Confirmation, segment edits and model switching
are synchronous operations that gate the per-language translation and dubbing
engines hanging off this object.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Set

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from localizer.ai import ElevenLabsDubber, default_transcribers, default_translators
from localizer.ai.base import DubbingProvider, SpeechToTextProvider, TranslationProvider
from localizer.core.config import Settings, get_settings
from localizer.core.errors import InvalidState, NotFound, Timeout
from localizer.db.database import SessionLocal
from localizer.models.transcription import TranscriptionSegment
from localizer.models.video import Video, VideoStatus
from localizer.schemas.segments import SourceSegment, TimedSegment
from localizer.services.dubbing import DubbingOrchestrator
from localizer.services.language_detection import LanguageDetector
from localizer.services.media import MediaExtractor
from localizer.services.standards import validate_segment
from localizer.services.state_machine import Stage, VideoStateMachine
from localizer.services.status_stream import StatusBroadcaster
from localizer.services.tasks import TaskRunner, bounded
from localizer.services.transcription import TranscriptionEngine
from localizer.services.translation import TranslationEngine

logger = logging.getLogger(__name__)

S = VideoStatus

_STAGE_BY_STATUS = {
    S.PENDING.value: Stage.EXTRACTION,
    S.ANALYZING.value: Stage.DETECTION,
    S.ANALYZED.value: Stage.DETECTION,
    S.PROCESSING.value: Stage.TRANSCRIPTION,
    S.TRANSCRIBING.value: Stage.TRANSCRIPTION,
}


class LocalizationPipeline:
    def __init__(self, session_factory: async_sessionmaker, states: VideoStateMachine, extractor: MediaExtractor,
                 detector: LanguageDetector, transcription: TranscriptionEngine, translation: TranslationEngine,
                 dubbing: DubbingOrchestrator, runner: TaskRunner, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.states = states
        self.extractor = extractor
        self.detector = detector
        self.transcription = transcription
        self.translation = translation
        self.dubbing = dubbing
        self.runner = runner
        self.settings = settings or get_settings()
        self._in_flight: Set[int] = set()

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self.states.broadcaster

    # videos

    async def create_video(self, original_name: str, source: str, filename: Optional[str] = None,
                           file_size: Optional[int] = None, models: Optional[Sequence[str]] = None) -> Video:
        async with self.session_factory() as db:
            video = Video(original_name=original_name, source=source, filename=filename, file_size=file_size,
                          status=S.PENDING.value, selected_models=json.dumps(list(models)) if models else None)
            db.add(video)
            await db.commit()
            await db.refresh(video)
        logger.info("Video %s registered from %s", video.id, source)
        return video

    async def get_video(self, video_id: int) -> Video:
        return await self.states.get(video_id)

    async def list_videos(self) -> List[Video]:
        async with self.session_factory() as db:
            rows = await db.execute(select(Video).order_by(Video.created_at.desc(), Video.id.desc()))
            return list(rows.scalars().all())

    # lifecycle

    def _ensure_idle(self, video_id: int) -> None:
        if video_id in self._in_flight:
            raise InvalidState(f"Video {video_id} is already being processed")

    def _launch(self, video_id: int, work, label: str) -> None:
        self._in_flight.add(video_id)
        inner = self.runner.spawn(work, name=f"{label}-{video_id}")
        inner.add_done_callback(lambda _: self._in_flight.discard(video_id))
        self.runner.spawn(self._supervise(video_id, inner, label), name=f"{label}-watch-{video_id}")

    async def _supervise(self, video_id: int, inner: asyncio.Task, label: str) -> None:
        try:
            await bounded(inner, self.settings.processing_timeout_seconds, f"{label} of video {video_id}")
        except Timeout as e:
            video = await self.states.get(video_id)
            await self.states.fail(video_id, e, _STAGE_BY_STATUS.get(video.status, Stage.TRANSCRIPTION))

    async def analyze(self, video_id: int) -> Video:
        """pending -> analyzing -> analyzed, without transcribing."""
        self._ensure_idle(video_id)
        video = await self.states.transition(video_id, S.ANALYZING, expected=[S.PENDING])
        self._launch(video_id, self._run(video_id, transcribe=False), 'analysis')
        return video

    async def start_processing(self, video_id: int, models: Optional[Sequence[str]] = None,
                               reprocess: bool = False) -> Video:
        video = await self.states.get(video_id)
        self._ensure_idle(video_id)
        status = S(video.status)
        if status == S.COMPLETED and not reprocess:
            raise InvalidState(f"Video {video_id} is already transcribed; pass reprocess to run it again")
        if status == S.FAILED:
            raise InvalidState(f"Video {video_id} failed; use retry")
        if status not in (S.PENDING, S.ANALYZED, S.COMPLETED):
            raise InvalidState(f"Video {video_id} is already {status.value}")
        if models:
            self.transcription.resolve_models(video, models)
            async with self.session_factory() as db:
                row = await db.get(Video, video_id)
                row.selected_models = json.dumps(list(models))
                await db.commit()

        if status == S.ANALYZED:
            video = await self.states.transition(video_id, S.PROCESSING, expected=[S.ANALYZED])
            self._launch(video_id, self._run_transcription(video_id), 'transcription')
        else:
            video = await self.states.transition(video_id, S.ANALYZING, expected=[status],
                                                 source_confirmed=False)
            self._launch(video_id, self._run(video_id, transcribe=True), 'processing')
        return video

    async def retry(self, video_id: int) -> Video:
        """Clear the error and re-run from the stage that failed."""
        self._ensure_idle(video_id)
        video, stage = await self.states.reset_for_retry(video_id)
        logger.info("Video %s: retrying from %s", video_id, stage.value)
        if video.status == S.PROCESSING.value:
            self._launch(video_id, self._run_transcription(video_id), 'transcription')
        else:
            video = await self.states.transition(video_id, S.ANALYZING, expected=[S.PENDING])
            self._launch(video_id, self._run(video_id, transcribe=True), 'processing')
        return video

    async def run_fallback(self, video_id: int) -> Video:
        """Explicit fallback transcription through the secondary/tertiary providers."""
        self._ensure_idle(video_id)
        video = await self.states.get(video_id)
        if video.status == S.FAILED.value and video.duration is None:
            raise InvalidState(f"Video {video_id} failed before extraction; use retry")
        video = await self.states.transition(video_id, S.PROCESSING, expected=[S.FAILED, S.ANALYZED],
                                             error_code=None, error_message=None, error_retryable=None,
                                             error_at=None, failed_stage=None)
        self._launch(video_id, self._run_transcription(video_id, fallback=True), 'fallback')
        return video

    async def _run(self, video_id: int, transcribe: bool) -> None:
        if not await self._run_analysis(video_id) or not transcribe:
            return
        await self.states.advance(video_id, S.PROCESSING, expected=[S.ANALYZED])
        await self._run_transcription(video_id)

    async def _run_analysis(self, video_id: int) -> bool:
        stage = Stage.EXTRACTION
        try:
            video = await self.states.get(video_id)
            duration = await self.extractor.get_duration(video.source)
            await self.states.report_stage_result(video_id, Stage.EXTRACTION, {'duration': duration})
            stage = Stage.DETECTION
            sample_seconds = self.settings.detection_sample_seconds
            async with await self.extractor.extract_audio(video.source, max_seconds=sample_seconds) as sample:
                detected = await self.detector.detect(sample.path)
            await self.states.report_stage_result(video_id, Stage.DETECTION, {
                'source_language': detected.code,
                'source_language_confidence': detected.confidence,
            })
            return True
        except Exception as e:
            await self.states.report_stage_result(video_id, stage, error=e)
            return False

    async def _run_transcription(self, video_id: int, fallback: bool = False) -> None:
        stage = Stage.FALLBACK if fallback else Stage.TRANSCRIPTION
        try:
            await self.states.advance(video_id, S.TRANSCRIBING, expected=[S.PROCESSING])
            if fallback:
                outcome = await self.transcription.transcribe_with_fallback(video_id)
            else:
                outcome = await self.transcription.transcribe(video_id)
            await self.states.report_stage_result(video_id, stage, outcome.video_values())
        except Exception as e:
            await self.states.report_stage_result(video_id, stage, error=e)

    async def sweep_stuck(self, older_than_seconds: Optional[float] = None) -> List[int]:
        if older_than_seconds is None:
            older_than_seconds = self.settings.processing_timeout_seconds
        return await self.states.sweep_stuck(older_than_seconds)

    # confirmation and edits

    async def _segment_count(self, video_id: int) -> int:
        async with self.session_factory() as db:
            return await db.scalar(
                select(func.count(TranscriptionSegment.id)).where(TranscriptionSegment.video_id == video_id)
            ) or 0

    async def confirm_source(self, video_id: int) -> Video:
        video = await self.states.get(video_id)
        # segments of a running or failed run may be replaced before anyone reviews them
        if video.status != S.COMPLETED.value or video_id in self._in_flight:
            raise InvalidState(f"Video {video_id} is {video.status}; only a finished transcription can be confirmed")
        if not await self._segment_count(video_id):
            raise InvalidState(f"Video {video_id} has no transcription segments to confirm")
        async with self.session_factory() as db:
            stale = await self.translation.mark_stale(db, video_id=video_id)
            await db.commit()
        if stale:
            logger.info("Video %s: %d translations flagged stale on confirmation", video_id, stale)
        return await self.states.set_confirmed(video_id, True)

    async def unconfirm_source(self, video_id: int) -> Video:
        return await self.states.set_confirmed(video_id, False)

    async def update_segment(self, segment_id: int, text: str) -> TranscriptionSegment:
        async with self.session_factory() as db:
            segment = await db.get(TranscriptionSegment, segment_id)
            if segment is None:
                raise NotFound(f"Segment {segment_id} not found")
            video = await db.get(Video, segment.video_id)
            if text == segment.text:
                return segment
            segment.text = text
            segment.text_updated_at = datetime.now(timezone.utc)
            await self.translation.mark_stale(db, segment_id=segment_id)
            revoke = bool(video.source_confirmed) and segment.language == (video.source_language or segment.language)
            await db.commit()
            await db.refresh(segment)
        if revoke:
            logger.info("Video %s: source edited after confirmation, confirmation revoked", segment.video_id)
            await self.unconfirm_source(segment.video_id)
        return segment

    async def select_model_source(self, video_id: int, model_source: str) -> List[TranscriptionSegment]:
        self._ensure_idle(video_id)
        segments = await self.transcription.select_model_source(video_id, model_source)
        await self.unconfirm_source(video_id)
        return segments

    # reads

    async def source_segments(self, video_id: int) -> List[SourceSegment]:
        await self.states.get(video_id)
        rows = await self.transcription.list_segments(video_id)
        return [
            SourceSegment.model_validate(row).model_copy(
                update={'quality': validate_segment(row.text, row.start_time, row.end_time)}
            )
            for row in rows
        ]

    async def export_segments(self, video_id: int, language: Optional[str] = None) -> List[TimedSegment]:
        """Segments for export in the source language or a target language.

        Segments without a translation keep their source text.
        """
        video = await self.states.get(video_id)
        rows = await self.transcription.list_segments(video_id)
        if not rows:
            raise NotFound(f"Video {video_id} has no transcription")
        source = [TimedSegment(start_time=r.start_time, end_time=r.end_time, text=r.text) for r in rows]
        if not language or language == video.source_language:
            return source
        translated = {t.segment_id: t.text for t in await self.translation.translated_segments(video_id, language)}
        return [
            TimedSegment(start_time=r.start_time, end_time=r.end_time, text=translated.get(r.id, r.text))
            for r in rows
        ]


def build_pipeline(session_factory: Optional[async_sessionmaker] = None,
                   extractor: Optional[MediaExtractor] = None,
                   transcribers: Optional[dict[str, SpeechToTextProvider]] = None,
                   translators: Optional[dict[str, TranslationProvider]] = None,
                   dubber: Optional[DubbingProvider] = None,
                   detector: Optional[LanguageDetector] = None,
                   broadcaster: Optional[StatusBroadcaster] = None,
                   settings: Optional[Settings] = None) -> LocalizationPipeline:
    """Wire the engines; every collaborator can be swapped (tests pass fakes)."""
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    extractor = extractor or MediaExtractor()
    runner = TaskRunner()
    states = VideoStateMachine(session_factory, broadcaster or StatusBroadcaster())
    transcription = TranscriptionEngine(session_factory, extractor,
                                        transcribers if transcribers is not None else default_transcribers(), settings)
    translation = TranslationEngine(session_factory,
                                    translators if translators is not None else default_translators(), settings)
    dubbing = DubbingOrchestrator(session_factory, extractor, dubber or ElevenLabsDubber(), runner, settings)
    return LocalizationPipeline(session_factory, states, extractor, detector or LanguageDetector(),
                                transcription, translation, dubbing, runner, settings)
