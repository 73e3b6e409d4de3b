import os
from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from localizer.api.deps import get_pipeline
from localizer.core.errors import InvalidState
from localizer.models.dubbing import DubbingStatus
from localizer.schemas.dubbing import DubbingJobOut, DubbingRequest
from localizer.services.pipeline import LocalizationPipeline
from localizer.services.voices import recommend_voices, voices_for_language

router = APIRouter(tags=["dubbing"])


@router.post('/videos/{video_id}/dubbing', response_model=DubbingJobOut)
async def start_dubbing(video_id: int, req: DubbingRequest, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.dubbing.start_dubbing(video_id, req.language, req.speaker_count, req.voice_ids)


@router.post('/videos/{video_id}/dubbing/retry', response_model=DubbingJobOut)
async def retry_dubbing(video_id: int, req: DubbingRequest, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.dubbing.retry_dubbing(video_id, req.language, req.speaker_count, req.voice_ids)


@router.get('/videos/{video_id}/dubbing', response_model=List[DubbingJobOut])
async def list_jobs(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.get_video(video_id)
    return await pipeline.dubbing.list_jobs(video_id)


@router.get('/dubbing/{job_id}', response_model=DubbingJobOut)
async def job_status(job_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.dubbing.get_dubbing_status(job_id)


@router.get('/dubbing/{job_id}/audio')
async def job_audio(job_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    job = await pipeline.dubbing.get_job(job_id)
    if job.status != DubbingStatus.COMPLETED.value or not job.output_path or not os.path.exists(job.output_path):
        raise InvalidState(f"Dubbing job {job_id} has no audio yet ({job.status})")
    return FileResponse(job.output_path, media_type='audio/mpeg',
                        filename=f"dubbed_{job.video_id}_{job.language}.mp3")


@router.get('/voices/{language}')
async def voices(language: str, speaker_count: int = 1):
    return {
        "language": language,
        "voices": voices_for_language(language),
        "recommended": recommend_voices(language, max(1, speaker_count)),
    }
