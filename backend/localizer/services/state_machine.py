"""
Video lifecycle state machine.

    pending -> analyzing -> analyzed -> processing -> transcribing -> completed
                                  \\________ any non-terminal ________/-> failed

Every move is validated against TRANSITIONS and written as a compare-and-set
UPDATE on the video row, so the row's status is the lock between concurrent
callers. Retry (failed -> pending/processing) and re-processing
(completed -> analyzing) are the only backward moves.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from localizer.core.errors import ErrorCode, InvalidState, NotFound, PipelineError, Timeout, classify_error
from localizer.models.video import Video, VideoStatus
from localizer.schemas.video import StatusEvent
from localizer.services.status_stream import StatusBroadcaster

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    EXTRACTION = 'extraction'
    DETECTION = 'detection'
    TRANSCRIPTION = 'transcription'
    FALLBACK = 'fallback'


S = VideoStatus

TRANSITIONS = {
    S.PENDING: {S.ANALYZING, S.FAILED},
    S.ANALYZING: {S.ANALYZED, S.FAILED},
    S.ANALYZED: {S.PROCESSING, S.FAILED},
    S.PROCESSING: {S.TRANSCRIBING, S.FAILED},
    S.TRANSCRIBING: {S.COMPLETED, S.FAILED},
    S.COMPLETED: {S.ANALYZING},
    S.FAILED: {S.PENDING, S.PROCESSING},
}

ACTIVE_STATUSES = {S.ANALYZING, S.PROCESSING, S.TRANSCRIBING}
NON_TERMINAL_STATUSES = {S.PENDING, S.ANALYZED} | ACTIVE_STATUSES

# status a stage runs in -> status its success moves to
STAGE_OUTCOME = {
    Stage.EXTRACTION: (S.ANALYZING, S.ANALYZING),
    Stage.DETECTION: (S.ANALYZING, S.ANALYZED),
    Stage.TRANSCRIPTION: (S.TRANSCRIBING, S.COMPLETED),
    Stage.FALLBACK: (S.TRANSCRIBING, S.COMPLETED),
}

CLEARED_ERROR = dict(error_code=None, error_message=None, error_retryable=None, error_at=None, failed_stage=None)


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VideoStateMachine:
    def __init__(self, session_factory: async_sessionmaker, broadcaster: Optional[StatusBroadcaster] = None):
        self.session_factory = session_factory
        self.broadcaster = broadcaster or StatusBroadcaster()

    async def _load(self, db: AsyncSession, video_id: int) -> Video:
        video = (await db.execute(select(Video).where(Video.id == video_id))).scalar_one_or_none()
        if video is None:
            raise NotFound(f"Video {video_id} not found")
        return video

    async def get(self, video_id: int) -> Video:
        async with self.session_factory() as db:
            return await self._load(db, video_id)

    def _publish(self, video: Video) -> None:
        self.broadcaster.publish(StatusEvent(
            video_id=video.id, status=video.status, source_confirmed=bool(video.source_confirmed),
            error_code=video.error_code, error_message=video.error_message, error_retryable=video.error_retryable,
        ))

    async def _compare_and_set(self, video_id: int, expected: Iterable[VideoStatus], extra_where=(), **values) -> Optional[Video]:
        async with self.session_factory() as db:
            stmt = (update(Video)
                    .where(Video.id == video_id, Video.status.in_([s.value for s in expected]), *extra_where)
                    .values(**values))
            res = await db.execute(stmt)
            if res.rowcount != 1:
                await db.rollback()
                return None
            await db.commit()
            video = await self._load(db, video_id)
        self._publish(video)
        return video

    async def transition(self, video_id: int, target: VideoStatus,
                         expected: Optional[Iterable[VideoStatus]] = None, **values) -> Video:
        """Move a video to ``target``; raises InvalidState on an illegal or raced move."""
        video = await self.get(video_id)
        current = VideoStatus(video.status)
        if expected is not None and current not in set(expected):
            raise InvalidState(f"Video {video_id} is {current.value}, cannot move to {target.value}")
        if current != target and not can_transition(current, target):
            raise InvalidState(f"Illegal transition {current.value} -> {target.value} for video {video_id}")
        values['status'] = target.value
        updated = await self._compare_and_set(video_id, [current], **values)
        if updated is None:
            raise InvalidState(f"Video {video_id} changed status concurrently (was {current.value})")
        logger.info("Video %s: %s -> %s", video_id, current.value, target.value)
        return updated

    async def advance(self, video_id: int, target: VideoStatus, expected: Iterable[VideoStatus]) -> Optional[Video]:
        """Like transition(), but a run that already timed out keeps going quietly.

        Returns None when the video is failed with TIMEOUT so that the late run can
        still deliver its result through report_stage_result.
        """
        try:
            return await self.transition(video_id, target, expected=expected)
        except InvalidState:
            video = await self.get(video_id)
            if video.status == S.FAILED.value and video.error_code == ErrorCode.TIMEOUT:
                logger.info("Video %s timed out earlier; continuing late run towards %s", video_id, target.value)
                return None
            raise

    async def fail(self, video_id: int, error: BaseException, stage: Stage) -> Optional[Video]:
        err: PipelineError = classify_error(error)
        values = dict(
            status=S.FAILED.value,
            error_code=err.code,
            error_message=err.message[:2000],
            error_retryable=err.retryable,
            error_at=_now(),
            failed_stage=stage.value,
        )
        video = await self._compare_and_set(video_id, NON_TERMINAL_STATUSES, **values)
        if video is None:
            logger.warning("Video %s: %s failure after leaving the stage ignored: %s", video_id, stage.value, err)
            return None
        logger.error("Video %s failed during %s: %s", video_id, stage.value, err)
        return video

    async def report_stage_result(self, video_id: int, stage: Stage, result: Optional[dict] = None,
                                  error: Optional[BaseException] = None) -> Optional[Video]:
        """Advance on success, or persist the classified error and move to failed.

        A success arriving after the video was failed with TIMEOUT is accepted:
        the error is cleared and the stage's outcome status is applied.
        """
        if error is not None:
            return await self.fail(video_id, error, stage)
        source, target = STAGE_OUTCOME[stage]
        values = dict(result or {})
        try:
            return await self.transition(video_id, target, expected=[source], **values)
        except InvalidState:
            video = await self.get(video_id)
            if video.status != S.FAILED.value or video.error_code != ErrorCode.TIMEOUT:
                raise
        values.update(CLEARED_ERROR)
        values['status'] = target.value
        reconciled = await self._compare_and_set(video_id, [S.FAILED], extra_where=(Video.error_code == ErrorCode.TIMEOUT,),
                                                 **values)
        if reconciled is None:
            raise InvalidState(f"Video {video_id} changed while reconciling a late {stage.value} result")
        logger.info("Video %s: late %s result reconciled after timeout -> %s", video_id, stage.value, target.value)
        return reconciled

    async def reset_for_retry(self, video_id: int) -> Tuple[Video, Stage]:
        """failed -> pending (analysis failures) or processing (transcription failures), errors cleared."""
        video = await self.get(video_id)
        if video.status != S.FAILED.value:
            raise InvalidState(f"Video {video_id} is {video.status}; only failed videos can be retried")
        stage = Stage(video.failed_stage) if video.failed_stage else Stage.EXTRACTION
        if stage in (Stage.TRANSCRIPTION, Stage.FALLBACK) and video.source_language:
            target = S.PROCESSING
        else:
            stage = Stage.EXTRACTION
            target = S.PENDING
        video = await self.transition(video_id, target, expected=[S.FAILED], **CLEARED_ERROR)
        return video, stage

    async def set_confirmed(self, video_id: int, confirmed: bool) -> Video:
        async with self.session_factory() as db:
            video = await self._load(db, video_id)
            video.source_confirmed = confirmed
            await db.commit()
            await db.refresh(video)
        self._publish(video)
        return video

    async def sweep_stuck(self, older_than_seconds: float) -> List[int]:
        """Fail videos left in an in-flight status longer than ``older_than_seconds``."""
        cutoff = (_now() - timedelta(seconds=older_than_seconds)).replace(tzinfo=None)
        async with self.session_factory() as db:
            rows = await db.execute(
                select(Video.id, Video.status)
                .where(Video.status.in_([s.value for s in ACTIVE_STATUSES]), Video.updated_at <= cutoff)
            )
            stuck = rows.all()
        swept = []
        for video_id, status in stuck:
            stage = Stage.TRANSCRIPTION if status in (S.PROCESSING.value, S.TRANSCRIBING.value) else Stage.DETECTION
            if await self.fail(video_id, Timeout(f"Stuck in {status} for more than {int(older_than_seconds)}s"), stage):
                swept.append(video_id)
        if swept:
            logger.warning("Marked %d stuck videos as failed: %s", len(swept), swept)
        return swept
