from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List


class VideoOut(BaseModel):
    id: int
    original_name: str
    source: str
    file_size: Optional[int] = None
    duration: Optional[float] = None
    status: str
    source_language: Optional[str] = None
    source_language_confidence: Optional[float] = None
    source_confirmed: bool = False
    speaker_count: Optional[int] = None
    active_model_source: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_retryable: Optional[bool] = None
    error_at: Optional[datetime] = None
    failed_stage: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RemoteVideoRequest(BaseModel):
    url: str
    name: Optional[str] = None
    models: Optional[List[str]] = None


class ProcessRequest(BaseModel):
    models: Optional[List[str]] = None
    reprocess: bool = False


class ModelSourceRequest(BaseModel):
    model_source: str


class StatusEvent(BaseModel):
    video_id: int
    status: str
    source_confirmed: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_retryable: Optional[bool] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(from_attributes=True)
