"""
Dubbing job orchestration.

One provider job per (video, language) covers the whole original audio track.
Jobs start in ``processing``; submission runs in the background and status is
reconciled from the provider each time it is read. Retries create a new row so
failed attempts stay in the history.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from localizer.ai.base import DubbingProvider
from localizer.core.config import Settings, get_settings
from localizer.core.errors import ErrorCode, InvalidState, NotConfirmed, NotFound, classify_error
from localizer.models.dubbing import DubbingJob, DubbingStatus
from localizer.models.transcription import TranscriptionSegment
from localizer.models.video import Video
from localizer.services.languages import normalize_language
from localizer.services.media import MediaExtractor
from localizer.services.tasks import TaskRunner
from localizer.services.voices import assign_voices

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = (DubbingStatus.QUEUED.value, DubbingStatus.PROCESSING.value)


def _age_seconds(created_at: Optional[datetime]) -> float:
    if created_at is None:
        return 0.0
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - created_at).total_seconds()


class DubbingOrchestrator:
    def __init__(self, session_factory: async_sessionmaker, extractor: MediaExtractor, provider: DubbingProvider,
                 runner: TaskRunner, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.extractor = extractor
        self.provider = provider
        self.runner = runner
        self.settings = settings or get_settings()

    async def suggest_speaker_count(self, video_id: int) -> int:
        async with self.session_factory() as db:
            count = await db.scalar(
                select(func.count(func.distinct(TranscriptionSegment.speaker_id)))
                .where(TranscriptionSegment.video_id == video_id, TranscriptionSegment.speaker_id.is_not(None))
            )
        return max(1, count or 0)

    async def start_dubbing(self, video_id: int, language: str, speaker_count: Optional[int] = None,
                            voice_ids: Sequence[str] = ()) -> DubbingJob:
        target = normalize_language(language)
        if not target:
            raise NotFound(f"Unsupported dubbing language {language!r}")
        async with self.session_factory() as db:
            video = await db.get(Video, video_id)
            if video is None:
                raise NotFound(f"Video {video_id} not found")
            if not video.source_confirmed:
                raise NotConfirmed(f"Source transcription of video {video_id} must be confirmed before dubbing")
        if speaker_count is None:
            speaker_count = await self.suggest_speaker_count(video_id)
        if speaker_count < 1:
            raise InvalidState("speaker_count must be at least 1")
        voices = assign_voices(target, speaker_count, voice_ids)

        async with self.session_factory() as db:
            active = await db.scalar(
                select(DubbingJob.id).where(DubbingJob.video_id == video_id, DubbingJob.language == target,
                                            DubbingJob.status.in_(ACTIVE_JOB_STATUSES))
            )
            if active is not None:
                raise InvalidState(f"Dubbing job {active} for {target} is still running")
            job = DubbingJob(video_id=video_id, language=target, status=DubbingStatus.PROCESSING.value,
                             speaker_count=speaker_count, voice_ids=json.dumps(voices))
            db.add(job)
            await db.commit()
            await db.refresh(job)

        logger.info("Dubbing job %s: video %s -> %s, %d speakers", job.id, video_id, target, speaker_count)
        self.runner.spawn(self._submit(job.id, video.source, video.source_language, target, voices),
                          name=f"dubbing-submit-{job.id}")
        return job

    async def _submit(self, job_id: int, source: str, source_language: Optional[str], target: str,
                      voices: List[str]) -> None:
        try:
            async with await self.extractor.extract_audio(source) as audio:
                provider_job_id = await self.provider.submit_dubbing_job(audio.path, source_language, target, voices)
        except Exception as e:
            err = classify_error(e)
            logger.error("Dubbing job %s submission failed: %s", job_id, err)
            await self._update(job_id, status=DubbingStatus.FAILED.value, error_code=err.code,
                               error_message=err.message[:2000])
            return
        await self._update(job_id, provider_job_id=provider_job_id)

    async def _update(self, job_id: int, **values) -> DubbingJob:
        async with self.session_factory() as db:
            job = await db.get(DubbingJob, job_id)
            for key, value in values.items():
                setattr(job, key, value)
            await db.commit()
            await db.refresh(job)
            return job

    async def get_job(self, job_id: int) -> DubbingJob:
        async with self.session_factory() as db:
            job = await db.get(DubbingJob, job_id)
        if job is None:
            raise NotFound(f"Dubbing job {job_id} not found")
        return job

    async def get_dubbing_status(self, job_id: int) -> DubbingJob:
        """Read a job, reconciling it with the provider when it is not settled yet.

        A job failed for TIMEOUT is still polled: if the provider finishes late
        the job becomes completed.
        """
        job = await self.get_job(job_id)
        timed_out = job.status == DubbingStatus.FAILED.value and job.error_code == ErrorCode.TIMEOUT
        if job.status not in ACTIVE_JOB_STATUSES and not timed_out:
            return job
        if not job.provider_job_id:
            if not timed_out and _age_seconds(job.created_at) > self.settings.dubbing_timeout_seconds:
                return await self._time_out(job)
            return job

        try:
            poll = await self.provider.poll_job(job.provider_job_id, job.language)
        except Exception as e:
            logger.warning("Polling dubbing job %s failed: %s", job_id, classify_error(e))
            return job

        if poll.status == 'completed':
            if not poll.output_url:
                return await self._update(job_id, status=DubbingStatus.FAILED.value,
                                          error_code=ErrorCode.PROVIDER_ERROR,
                                          error_message="Provider reported the job done but returned no audio")
            dest = os.path.join(self.settings.work_dir, 'dubbing', f"video_{job.video_id}_{job.language}_{job.id}.mp3")
            try:
                path = await self.provider.download(poll.output_url, dest)
            except Exception as e:
                # job stays unsettled; the next status read downloads again
                logger.warning("Downloading dubbed audio for job %s failed: %s", job_id, classify_error(e))
                return job
            if timed_out:
                logger.info("Dubbing job %s completed after its timeout", job_id)
            return await self._update(job_id, status=DubbingStatus.COMPLETED.value, output_path=path,
                                      error_code=None, error_message=None, completed_at=datetime.now(timezone.utc))
        if poll.status == 'failed':
            return await self._update(job_id, status=DubbingStatus.FAILED.value, error_code=ErrorCode.PROVIDER_ERROR,
                                      error_message=(poll.error or 'Dubbing failed')[:2000])
        if not timed_out and _age_seconds(job.created_at) > self.settings.dubbing_timeout_seconds:
            return await self._time_out(job)
        return job

    async def _time_out(self, job: DubbingJob) -> DubbingJob:
        logger.warning("Dubbing job %s exceeded %ss", job.id, self.settings.dubbing_timeout_seconds)
        return await self._update(job.id, status=DubbingStatus.FAILED.value, error_code=ErrorCode.TIMEOUT,
                                  error_message=f"Dubbing did not finish within {int(self.settings.dubbing_timeout_seconds)}s; "
                                                "it may still complete")

    async def retry_dubbing(self, video_id: int, language: str, speaker_count: Optional[int] = None,
                            voice_ids: Sequence[str] = ()) -> DubbingJob:
        target = normalize_language(language) or language
        async with self.session_factory() as db:
            latest = (await db.execute(
                select(DubbingJob).where(DubbingJob.video_id == video_id, DubbingJob.language == target)
                .order_by(DubbingJob.id.desc()).limit(1)
            )).scalar_one_or_none()
        if latest is None:
            raise NotFound(f"No dubbing job for video {video_id} in {target}")
        if latest.status != DubbingStatus.FAILED.value:
            raise InvalidState(f"Latest {target} dubbing job {latest.id} is {latest.status}; only failed jobs are retried")
        if speaker_count is None:
            speaker_count = latest.speaker_count
        if not voice_ids and latest.voice_ids:
            voice_ids = json.loads(latest.voice_ids)
        return await self.start_dubbing(video_id, target, speaker_count, voice_ids)

    async def list_jobs(self, video_id: int) -> List[DubbingJob]:
        async with self.session_factory() as db:
            rows = await db.execute(select(DubbingJob).where(DubbingJob.video_id == video_id).order_by(DubbingJob.id))
            return list(rows.scalars().all())
