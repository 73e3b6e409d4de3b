from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
import json


class DubbingRequest(BaseModel):
    language: str
    speaker_count: Optional[int] = Field(default=None, ge=1)
    voice_ids: List[str] = []


class DubbingJobOut(BaseModel):
    id: int
    video_id: int
    language: str
    status: str
    speaker_count: int
    voice_ids: List[str] = []
    provider_job_id: Optional[str] = None
    output_path: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator('voice_ids', mode='before')
    @classmethod
    def _decode_voice_ids(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return json.loads(value)
        return value


class VoiceOut(BaseModel):
    voice_id: str
    name: str
    gender: Optional[str] = None
    accent: Optional[str] = None
    age: Optional[str] = None
