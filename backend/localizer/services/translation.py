"""
Per-language translation of confirmed source segments.

All segments of a video go to the provider in one batched request per target
language (SEGMENT_n markers keep the mapping), and results are upserted on
(segment_id, target_language). Source edits and re-confirmation only flag
existing rows stale; regeneration is always an explicit call.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from localizer.ai.base import TranslationProvider
from localizer.core.config import Settings, get_settings
from localizer.core.errors import InvalidState, NotConfirmed, NotFound, ProviderError
from localizer.models.transcription import TranscriptionSegment, Translation
from localizer.models.video import Video
from localizer.schemas.segments import TranslatedSegment
from localizer.services.languages import normalize_language
from localizer.services.tasks import bounded

logger = logging.getLogger(__name__)


def segment_key(index: int) -> str:
    return f"SEGMENT_{index + 1}"


def _view(tr: Translation, seg: TranscriptionSegment) -> TranslatedSegment:
    return TranslatedSegment(id=tr.id, segment_id=seg.id, target_language=tr.target_language,
                             start_time=seg.start_time, end_time=seg.end_time, text=tr.translated_text,
                             confidence=tr.confidence, model=tr.model, is_stale=tr.is_stale,
                             is_user_edited=tr.is_user_edited)


class TranslationEngine:
    def __init__(self, session_factory: async_sessionmaker, providers: Dict[str, TranslationProvider],
                 settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.providers = providers
        self.settings = settings or get_settings()

    def provider_for(self, model_choice: Optional[str]) -> TranslationProvider:
        choice = model_choice or self.settings.translation_model
        for name, provider in self.providers.items():
            if choice in (name, provider.model):
                return provider
        raise NotFound(f"Translation model {choice!r} is not configured")

    @staticmethod
    def target_code(target_language: str) -> str:
        code = normalize_language(target_language)
        if not code:
            raise NotFound(f"Unsupported target language {target_language!r}")
        return code

    async def _confirmed_video(self, db: AsyncSession, video_id: int) -> Video:
        video = (await db.execute(select(Video).where(Video.id == video_id))).scalar_one_or_none()
        if video is None:
            raise NotFound(f"Video {video_id} not found")
        if not video.source_confirmed:
            raise NotConfirmed(f"Source transcription of video {video_id} must be confirmed before translation")
        return video

    async def translate(self, video_id: int, target_language: str,
                        model_choice: Optional[str] = None) -> List[Translation]:
        target = self.target_code(target_language)
        provider = self.provider_for(model_choice)
        async with self.session_factory() as db:
            video = await self._confirmed_video(db, video_id)
            rows = await db.execute(
                select(TranscriptionSegment)
                .where(TranscriptionSegment.video_id == video_id)
                .order_by(TranscriptionSegment.start_time)
            )
            segments = list(rows.scalars().all())
        if not segments:
            raise InvalidState(f"Video {video_id} has no segments to translate")
        # the upsert happens inside the bounded work so a late reply still lands
        return await bounded(
            self._translate_and_store(segments, video.source_language, target, provider),
            self.settings.translation_timeout_seconds,
            f"Translation of video {video_id} to {target}",
        )

    async def _translate_and_store(self, segments: Sequence[TranscriptionSegment], source_language: Optional[str],
                                   target: str, provider: TranslationProvider) -> List[Translation]:
        items = [(segment_key(i), seg.text) for i, seg in enumerate(segments)]
        translated = await provider.translate_batch(items, source_language, target)
        missing = [(k, t) for k, t in items if not translated.get(k)]
        if missing:
            # models occasionally drop lines from long batches; ask once more for just those
            logger.warning("%s translation missed %d of %d segments; requesting them again",
                           provider.name, len(missing), len(items))
            translated.update(await provider.translate_batch(missing, source_language, target))
        still_missing = [k for k, _ in items if not translated.get(k)]
        if still_missing:
            raise ProviderError(f"{provider.name} returned no translation for {len(still_missing)} segments",
                                provider=provider.name)
        pairs = [(seg.id, translated[segment_key(i)].strip()) for i, seg in enumerate(segments)]
        stored = await self._upsert_all(pairs, target, provider)
        logger.info("Stored %d %s translations by %s", len(stored), target, provider.model)
        return stored

    async def _upsert_all(self, pairs: Sequence[Tuple[int, str]], target: str,
                          provider: TranslationProvider) -> List[Translation]:
        for attempt in (1, 2):
            async with self.session_factory() as db:
                try:
                    stored = [await self._upsert(db, segment_id, text, target, provider) for segment_id, text in pairs]
                    await db.commit()
                except IntegrityError:
                    # a concurrent run inserted the same (segment, language); second pass updates
                    await db.rollback()
                    if attempt == 2:
                        raise
                    continue
                for row in stored:
                    await db.refresh(row)
                return stored
        return []

    @staticmethod
    async def _upsert(db: AsyncSession, segment_id: int, text: str, target: str,
                      provider: TranslationProvider) -> Translation:
        row = (await db.execute(
            select(Translation).where(Translation.segment_id == segment_id, Translation.target_language == target)
        )).scalar_one_or_none()
        if row is None:
            row = Translation(segment_id=segment_id, target_language=target)
            db.add(row)
        row.translated_text = text
        row.confidence = provider.confidence
        row.model = provider.model
        row.is_stale = False
        row.is_user_edited = False
        await db.flush()
        return row

    async def retranslate_segment(self, segment_id: int, target_language: str,
                                  model_choice: Optional[str] = None) -> Translation:
        target = self.target_code(target_language)
        provider = self.provider_for(model_choice)
        async with self.session_factory() as db:
            segment = await db.get(TranscriptionSegment, segment_id)
            if segment is None:
                raise NotFound(f"Segment {segment_id} not found")
            video = await self._confirmed_video(db, segment.video_id)
        translated = await bounded(
            provider.translate_batch([(segment_key(0), segment.text)], video.source_language, target),
            self.settings.translation_timeout_seconds,
            f"Retranslation of segment {segment_id}",
        )
        text = translated.get(segment_key(0))
        if not text:
            raise ProviderError(f"{provider.name} returned no translation for segment {segment_id}",
                                provider=provider.name)
        stored = await self._upsert_all([(segment_id, text.strip())], target, provider)
        return stored[0]

    async def update_translation(self, translation_id: int, text: str) -> Translation:
        """User override: kept as-is until an explicit re-translate."""
        async with self.session_factory() as db:
            row = await db.get(Translation, translation_id)
            if row is None:
                raise NotFound(f"Translation {translation_id} not found")
            row.translated_text = text
            row.is_user_edited = True
            row.is_stale = False
            await db.commit()
            await db.refresh(row)
            return row

    @staticmethod
    async def mark_stale(db: AsyncSession, *, video_id: Optional[int] = None, segment_id: Optional[int] = None) -> int:
        """Flag machine translations of a video or of one segment as stale; user edits are left alone."""
        stmt = update(Translation).where(Translation.is_user_edited.is_(False))
        if segment_id is not None:
            stmt = stmt.where(Translation.segment_id == segment_id)
        elif video_id is not None:
            ids = select(TranscriptionSegment.id).where(TranscriptionSegment.video_id == video_id)
            stmt = stmt.where(Translation.segment_id.in_(ids))
        else:
            raise ValueError("video_id or segment_id is required")
        res = await db.execute(stmt.values(is_stale=True).execution_options(synchronize_session=False))
        return res.rowcount or 0

    async def translated_segments(self, video_id: int, target_language: str) -> List[TranslatedSegment]:
        target = self.target_code(target_language)
        async with self.session_factory() as db:
            rows = await db.execute(
                select(Translation, TranscriptionSegment)
                .join(TranscriptionSegment, Translation.segment_id == TranscriptionSegment.id)
                .where(TranscriptionSegment.video_id == video_id, Translation.target_language == target)
                .order_by(TranscriptionSegment.start_time)
            )
            return [_view(tr, seg) for tr, seg in rows.all()]

    async def translated_segment(self, translation_id: int) -> TranslatedSegment:
        async with self.session_factory() as db:
            row = (await db.execute(
                select(Translation, TranscriptionSegment)
                .join(TranscriptionSegment, Translation.segment_id == TranscriptionSegment.id)
                .where(Translation.id == translation_id)
            )).first()
        if row is None:
            raise NotFound(f"Translation {translation_id} not found")
        return _view(*row)

    async def languages(self, video_id: int) -> List[str]:
        async with self.session_factory() as db:
            rows = await db.execute(
                select(Translation.target_language)
                .join(TranscriptionSegment, Translation.segment_id == TranscriptionSegment.id)
                .where(TranscriptionSegment.video_id == video_id)
                .distinct()
            )
            return sorted(rows.scalars().all())
