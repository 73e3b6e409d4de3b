import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Float, Boolean, func
from localizer.db.database import Base


class VideoStatus(str, enum.Enum):
    PENDING = 'pending'
    ANALYZING = 'analyzing'
    ANALYZED = 'analyzed'
    PROCESSING = 'processing'
    TRANSCRIBING = 'transcribing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Video(Base):
    __tablename__ = 'videos'
    id = Column(Integer, primary_key=True, index=True)
    original_name = Column(String, nullable=False)
    filename = Column(String, nullable=True)  # stored upload name, null for remote sources
    source = Column(String, nullable=False)  # local path or remote URL
    file_size = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)  # unknown until extraction succeeds
    status = Column(String, nullable=False, default=VideoStatus.PENDING.value)

    source_language = Column(String, nullable=True)
    source_language_confidence = Column(Float, nullable=True)
    source_confirmed = Column(Boolean, nullable=False, default=False)
    speaker_count = Column(Integer, nullable=True)

    selected_models = Column(Text, nullable=True)  # JSON list of provider names
    active_model_source = Column(String, nullable=True)
    alternatives_json = Column(Text, nullable=True)  # {model_source: [segment dicts]}

    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    error_retryable = Column(Boolean, nullable=True)
    error_at = Column(DateTime(timezone=True), nullable=True)
    failed_stage = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
