import logging
import os
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import PlainTextResponse, Response

from localizer.api.deps import get_pipeline
from localizer.schemas.segments import SourceSegment
from localizer.schemas.video import ModelSourceRequest, ProcessRequest, RemoteVideoRequest, VideoOut
from localizer.services.pipeline import LocalizationPipeline
from localizer.services.subtitles import render_pdf, render_srt, render_txt
from localizer.utils.file import save_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/videos", tags=["videos"])


@router.post('/upload', response_model=VideoOut)
async def upload(file: UploadFile = File(...), models: Optional[str] = Form(None),
                 pipeline: LocalizationPipeline = Depends(get_pipeline)):
    try:
        stored, path, size = save_upload(file)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    selected = [m.strip() for m in models.split(',') if m.strip()] if models else None
    video = await pipeline.create_video(file.filename or stored, path, filename=stored, file_size=size,
                                        models=selected)
    return await pipeline.analyze(video.id)


@router.post('/url', response_model=VideoOut)
async def from_url(req: RemoteVideoRequest, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    if not req.url.lower().startswith(('http://', 'https://')):
        raise HTTPException(status_code=400, detail="Only http(s) URLs are supported")
    video = await pipeline.create_video(req.name or req.url, req.url, models=req.models)
    return await pipeline.analyze(video.id)


@router.get('', response_model=List[VideoOut])
async def list_videos(pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.list_videos()


@router.get('/{video_id}', response_model=VideoOut)
async def get_video(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.get_video(video_id)


@router.post('/{video_id}/process', response_model=VideoOut)
async def process(video_id: int, req: Optional[ProcessRequest] = None,
                  pipeline: LocalizationPipeline = Depends(get_pipeline)):
    req = req or ProcessRequest()
    return await pipeline.start_processing(video_id, req.models, reprocess=req.reprocess)


@router.post('/{video_id}/retry', response_model=VideoOut)
async def retry(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.retry(video_id)


@router.post('/{video_id}/fallback', response_model=VideoOut)
async def fallback(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.run_fallback(video_id)


@router.post('/{video_id}/confirm', response_model=VideoOut)
async def confirm(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.confirm_source(video_id)


@router.post('/{video_id}/unconfirm', response_model=VideoOut)
async def unconfirm(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.unconfirm_source(video_id)


@router.post('/{video_id}/model-source', response_model=List[SourceSegment])
async def select_model_source(video_id: int, req: ModelSourceRequest,
                              pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.select_model_source(video_id, req.model_source)
    return await pipeline.source_segments(video_id)


@router.get('/{video_id}/segments', response_model=List[SourceSegment])
async def segments(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    return await pipeline.source_segments(video_id)


@router.get('/{video_id}/export/{fmt}')
async def export(video_id: int, fmt: Literal['srt', 'txt', 'pdf'], language: Optional[str] = None,
                 pipeline: LocalizationPipeline = Depends(get_pipeline)):
    video = await pipeline.get_video(video_id)
    segments = await pipeline.export_segments(video_id, language)
    base = os.path.splitext(video.original_name)[0] or f"video_{video_id}"
    suffix = f"_{language}" if language else ""
    filename = f"{base}{suffix}.{fmt}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if fmt == 'srt':
        return PlainTextResponse(render_srt(segments), headers=headers)
    if fmt == 'txt':
        return PlainTextResponse(render_txt(segments), headers=headers)
    return Response(render_pdf(segments, title=video.original_name), media_type='application/pdf', headers=headers)
