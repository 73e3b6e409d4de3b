import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, func
from localizer.db.database import Base


class DubbingStatus(str, enum.Enum):
    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class DubbingJob(Base):
    __tablename__ = 'dubbing_jobs'
    id = Column(Integer, primary_key=True, index=True)
    video_id = Column(Integer, ForeignKey('videos.id', ondelete='CASCADE'), nullable=False, index=True)
    language = Column(String, nullable=False)
    status = Column(String, nullable=False, default=DubbingStatus.QUEUED.value)
    speaker_count = Column(Integer, nullable=False, default=1)
    voice_ids = Column(Text, nullable=True)  # JSON list, index = speaker index
    provider_job_id = Column(String, nullable=True)
    output_path = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
