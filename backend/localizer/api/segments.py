from typing import List

from fastapi import APIRouter, Depends

from localizer.api.deps import get_pipeline
from localizer.schemas.segments import RetranslateRequest, SegmentEdit, SourceSegment, TranslatedSegment, TranslateRequest
from localizer.services.pipeline import LocalizationPipeline
from localizer.services.standards import validate_segment

router = APIRouter(tags=["segments"])


@router.patch('/segments/{segment_id}', response_model=SourceSegment)
async def edit_segment(segment_id: int, req: SegmentEdit, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    row = await pipeline.update_segment(segment_id, req.text)
    view = SourceSegment.model_validate(row)
    view.quality = validate_segment(row.text, row.start_time, row.end_time)
    return view


@router.post('/videos/{video_id}/translations', response_model=List[TranslatedSegment])
async def translate(video_id: int, req: TranslateRequest, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.translation.translate(video_id, req.target_language, req.model)
    return await pipeline.translation.translated_segments(video_id, req.target_language)


@router.get('/videos/{video_id}/translations', response_model=List[TranslatedSegment])
async def list_translations(video_id: int, language: str, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.get_video(video_id)
    return await pipeline.translation.translated_segments(video_id, language)


@router.get('/videos/{video_id}/translations/languages', response_model=List[str])
async def translation_languages(video_id: int, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.get_video(video_id)
    return await pipeline.translation.languages(video_id)


@router.post('/segments/{segment_id}/retranslate', response_model=TranslatedSegment)
async def retranslate(segment_id: int, req: RetranslateRequest, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    row = await pipeline.translation.retranslate_segment(segment_id, req.target_language, req.model)
    return await pipeline.translation.translated_segment(row.id)


@router.patch('/translations/{translation_id}', response_model=TranslatedSegment)
async def edit_translation(translation_id: int, req: SegmentEdit, pipeline: LocalizationPipeline = Depends(get_pipeline)):
    await pipeline.translation.update_translation(translation_id, req.text)
    return await pipeline.translation.translated_segment(translation_id)
