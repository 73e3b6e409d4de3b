"""
Segment shapes shared by the API and the exporters.

Source and translated segments share one time range base and carry a ``kind`` tag so
consumers (SRT export, editors) never need to probe for optional fields.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TimedSegment(BaseModel):
    start_time: float
    end_time: float
    text: str

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class SubtitleQuality(BaseModel):
    is_compliant: bool
    quality_score: int
    reading_speed: int
    line_count: int
    character_count: int
    violations: List[str] = []
    recommendations: List[str] = []


class SourceSegment(TimedSegment):
    kind: Literal['source'] = 'source'
    id: int
    video_id: int
    language: str
    confidence: Optional[float] = None
    model_source: Optional[str] = None
    speaker_id: Optional[str] = None
    speaker_name: Optional[str] = None
    is_original: bool = True
    quality: Optional[SubtitleQuality] = None

    model_config = ConfigDict(from_attributes=True)


class TranslatedSegment(TimedSegment):
    kind: Literal['translated'] = 'translated'
    id: int
    segment_id: int
    target_language: str
    confidence: Optional[float] = None
    model: str
    is_stale: bool = False
    is_user_edited: bool = False


class SegmentEdit(BaseModel):
    text: str = Field(min_length=1)


class TranslateRequest(BaseModel):
    target_language: str
    model: Optional[str] = None


class RetranslateRequest(BaseModel):
    target_language: str
    model: Optional[str] = None
