from sqlalchemy import Column, Integer, String, DateTime, Text, Float, Boolean, ForeignKey, UniqueConstraint, func
from localizer.db.database import Base


class TranscriptionSegment(Base):
    __tablename__ = 'transcription_segments'
    id = Column(Integer, primary_key=True, index=True)
    video_id = Column(Integer, ForeignKey('videos.id', ondelete='CASCADE'), nullable=False, index=True)
    language = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)
    confidence = Column(Float, nullable=True)
    model_source = Column(String, nullable=True)
    speaker_id = Column(String, nullable=True)
    speaker_name = Column(String, nullable=True)
    is_original = Column(Boolean, nullable=False, default=True)
    text_updated_at = Column(DateTime(timezone=True), nullable=True)  # set on user edits
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Translation(Base):
    __tablename__ = 'translations'
    __table_args__ = (UniqueConstraint('segment_id', 'target_language', name='uq_translation_segment_language'),)
    id = Column(Integer, primary_key=True, index=True)
    segment_id = Column(Integer, ForeignKey('transcription_segments.id', ondelete='CASCADE'), nullable=False, index=True)
    target_language = Column(String, nullable=False)
    translated_text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=True)
    model = Column(String, nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)
    is_user_edited = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
