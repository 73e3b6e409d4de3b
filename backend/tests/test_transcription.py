import asyncio
import json
import os
import pytest

from localizer.ai.base import RawSegment, RawTranscript
from localizer.core.errors import (
    DurationUnavailable, ErrorCode, InvalidState, NotFound, ProviderQuotaExceeded, UnsupportedFormat,
)
from localizer.services.transcription import (
    FALLBACK_MODEL_SOURCE, FLAT_TEXT_CONFIDENCE, standardize,
)

from conftest import wait_for_status


def assert_partition(segments, max_duration=7.0):
    starts = [s.start_time for s in segments]
    assert starts == sorted(starts)
    for seg in segments:
        assert seg.start_time < seg.end_time
        assert seg.end_time - seg.start_time <= max_duration + 1e-6
    for a, b in zip(segments, segments[1:]):
        assert a.end_time <= b.start_time + 1e-9


def test_standardize_splits_long_segments_and_orders():
    raw = RawTranscript(text='', segments=[
        RawSegment("Second bit.", 20.0, 24.0, 0.8),
        RawSegment("One. Two words here. Three more words. Four is the last sentence.", 0.0, 20.0, 0.9),
    ])
    drafts = standardize(raw, 'openai-whisper', 30.0, max_duration=7.0)
    assert len(drafts) >= 4
    assert drafts[0].start == 0.0
    assert drafts[-1].end == 24.0
    for d in drafts:
        assert d.end - d.start <= 7.0 + 1e-6
        assert 0.0 <= d.confidence <= 1.0


def test_standardize_overlong_only_when_too_few_words():
    raw = RawTranscript(text='', segments=[
        RawSegment("Hello there", 0.0, 30.0, 0.9),
        RawSegment("Plenty of words in this one so it can be cut into short pieces.", 30.0, 50.0, 0.9),
    ])
    drafts = standardize(raw, 'openai-whisper', 60.0, max_duration=7.0)
    sparse = [d for d in drafts if d.end <= 30.0]
    assert [d.text for d in sparse] == ["Hello", "there"]
    assert sparse[0].start == 0.0 and sparse[-1].end == 30.0
    assert any(d.end - d.start > 7.0 for d in sparse)
    assert all(d.end - d.start <= 7.0 + 1e-6 for d in drafts if d.start >= 30.0)


def test_standardize_clips_overlaps_and_drops_empty():
    raw = RawTranscript(text='', segments=[
        RawSegment("First part of speech.", 0.0, 4.0),
        RawSegment("Overlapping second part.", 3.0, 6.0),
        RawSegment("   ", 6.0, 7.0),
        RawSegment("Runs past the end.", 9.0, 12.0),
    ])
    drafts = standardize(raw, 'gemini-2.5-pro', 10.0)
    assert [d.text for d in drafts] == ["First part of speech.", "Overlapping second part.", "Runs past the end."]
    assert drafts[1].start == 4.0
    assert drafts[-1].end == 10.0


def test_standardize_flat_text_never_yields_zero_segments():
    raw = RawTranscript(text="Only flat text came back. No timing at all. Still useful.", segments=[])
    drafts = standardize(raw, 'gemini-2.5-pro', 15.0)
    assert len(drafts) >= 1
    assert drafts[0].start == 0.0 and drafts[-1].end == 15.0
    assert all(d.confidence == FLAT_TEXT_CONFIDENCE for d in drafts)


def test_standardize_empty_result():
    assert standardize(RawTranscript(text='', segments=[]), 'x', 10.0) == []


@pytest.mark.anyio
async def test_happy_path_transcription(pipeline, make_completed_video, extractor):
    video = await make_completed_video()
    assert video.status == 'completed'
    assert video.duration == 15.0
    assert video.source_language == 'bn'
    assert video.active_model_source == 'openai-whisper'
    segments = await pipeline.transcription.list_segments(video.id)
    assert [(s.start_time, s.end_time) for s in segments] == [(0.0, 5.0), (5.0, 10.0), (10.0, 15.0)]
    assert all(s.confidence >= 0.7 for s in segments)
    assert all(s.is_original and s.model_source == 'openai-whisper' for s in segments)
    assert_partition(segments)
    # every extracted audio file (detection sample and full track) is released
    assert extractor.extracted and not any(os.path.exists(p) for p in extractor.extracted)


@pytest.mark.anyio
async def test_flat_text_provider_still_produces_segments(pipeline, transcribers):
    transcribers['primary'].segments = []
    transcribers['primary'].text = "Just words. Nothing else was returned. The end."
    video = await pipeline.create_video('flat.mp4', '/media/flat.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    segments = await pipeline.transcription.list_segments(video.id)
    assert len(segments) >= 1
    assert_partition(segments)
    assert all(s.confidence == FLAT_TEXT_CONFIDENCE for s in segments)


@pytest.mark.anyio
async def test_quota_error_fails_video_without_silent_fallback(pipeline, transcribers, extractor):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota", provider='primary')
    video = await pipeline.create_video('q.mp4', '/media/q.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    failed = await pipeline.get_video(video.id)
    assert failed.status == 'failed'
    assert failed.error_code == ErrorCode.PROVIDER_QUOTA_EXCEEDED
    assert failed.error_retryable is True
    assert failed.failed_stage == 'transcription'
    assert transcribers['secondary'].calls == 0
    assert not any(os.path.exists(p) for p in extractor.extracted)


@pytest.mark.anyio
async def test_explicit_fallback_caps_confidence(pipeline, transcribers):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota")
    transcribers['secondary'].error = ProviderQuotaExceeded("secondary quota")
    video = await pipeline.create_video('q.mp4', '/media/q.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()

    await pipeline.run_fallback(video.id)
    await pipeline.runner.drain()
    done = await pipeline.get_video(video.id)
    assert done.status == 'completed'
    assert done.error_code is None
    assert done.active_model_source == FALLBACK_MODEL_SOURCE
    segments = await pipeline.transcription.list_segments(video.id)
    assert len(segments) == 3
    assert all(s.model_source == FALLBACK_MODEL_SOURCE for s in segments)
    assert all(s.confidence <= 0.75 for s in segments)
    assert transcribers['tertiary'].calls == 1


@pytest.mark.anyio
async def test_fallback_flat_text_confidence(pipeline, transcribers):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota")
    transcribers['secondary'].segments = []
    transcribers['secondary'].text = "Flat fallback text. Two sentences only."
    video = await pipeline.create_video('q.mp4', '/media/q.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    await pipeline.run_fallback(video.id)
    await pipeline.runner.drain()
    segments = await pipeline.transcription.list_segments(video.id)
    assert segments
    assert all(s.confidence == 0.65 for s in segments)
    assert transcribers['tertiary'].calls == 0


@pytest.mark.anyio
async def test_fallback_stops_on_unsupported_format(pipeline, transcribers):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota")
    transcribers['secondary'].error = UnsupportedFormat("cannot decode")
    video = await pipeline.create_video('q.mp4', '/media/q.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    await pipeline.run_fallback(video.id)
    await pipeline.runner.drain()
    failed = await pipeline.get_video(video.id)
    assert failed.status == 'failed'
    assert failed.error_code == ErrorCode.UNSUPPORTED_FORMAT
    assert failed.error_retryable is False
    assert transcribers['tertiary'].calls == 0


@pytest.mark.anyio
async def test_retry_after_failure_runs_transcription_again(pipeline, transcribers):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota")
    video = await pipeline.create_video('q.mp4', '/media/q.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    transcribers['primary'].error = None
    retried = await pipeline.retry(video.id)
    assert retried.status == 'processing'
    assert retried.error_code is None
    await pipeline.runner.drain()
    assert (await pipeline.get_video(video.id)).status == 'completed'
    assert len(await pipeline.transcription.list_segments(video.id)) == 3


@pytest.mark.anyio
async def test_extraction_failure_is_retryable(pipeline, extractor):
    extractor.duration_error = DurationUnavailable("no duration")
    video = await pipeline.create_video('d.mp4', '/media/d.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    failed = await pipeline.get_video(video.id)
    assert failed.error_code == ErrorCode.DURATION_UNAVAILABLE
    assert failed.failed_stage == 'extraction'
    assert failed.duration is None
    extractor.duration_error = None
    await pipeline.retry(video.id)
    await pipeline.runner.drain()
    assert (await pipeline.get_video(video.id)).status == 'completed'


@pytest.mark.anyio
async def test_processing_is_not_reentrant(pipeline, transcribers):
    gate = asyncio.Event()
    transcribers['primary'].gate = gate
    video = await pipeline.create_video('g.mp4', '/media/g.mp4')
    await pipeline.start_processing(video.id)
    await wait_for_status(pipeline, video.id, 'transcribing')
    with pytest.raises(InvalidState):
        await pipeline.start_processing(video.id)
    gate.set()
    await pipeline.runner.drain()
    assert len(await pipeline.transcription.list_segments(video.id)) == 3


@pytest.mark.anyio
async def test_timeout_then_late_completion_is_reconciled(pipeline, transcribers, settings):
    settings.processing_timeout_seconds = 0.5
    gate = asyncio.Event()
    transcribers['primary'].gate = gate
    video = await pipeline.create_video('slow.mp4', '/media/slow.mp4')
    await pipeline.start_processing(video.id)
    failed = await wait_for_status(pipeline, video.id, 'failed')
    assert failed.error_code == ErrorCode.TIMEOUT
    # the original run is still going; a retry must not start a second one
    with pytest.raises(InvalidState):
        await pipeline.retry(video.id)
    gate.set()
    await pipeline.runner.drain()
    done = await pipeline.get_video(video.id)
    assert done.status == 'completed'
    assert done.error_code is None
    assert len(await pipeline.transcription.list_segments(video.id)) == 3


@pytest.mark.anyio
async def test_multi_model_alternatives_and_switch(pipeline, transcribers):
    transcribers['secondary'].segments = [
        RawSegment("Gemini heard the first half of it.", 0.0, 7.0, 0.8),
        RawSegment("Gemini heard the second half too.", 7.0, 14.0, 0.8),
    ]
    video = await pipeline.create_video('m.mp4', '/media/m.mp4')
    await pipeline.start_processing(video.id, models=['primary', 'secondary'])
    await pipeline.runner.drain()
    video = await pipeline.get_video(video.id)
    assert video.active_model_source == 'openai-whisper'
    assert set(json.loads(video.alternatives_json)) == {'openai-whisper', 'gemini-2.5-pro'}

    await pipeline.confirm_source(video.id)
    segments = await pipeline.select_model_source(video.id, 'gemini-2.5-pro')
    assert [s.text for s in segments] == ["Gemini heard the first half of it.", "Gemini heard the second half too."]
    video = await pipeline.get_video(video.id)
    assert video.active_model_source == 'gemini-2.5-pro'
    assert video.source_confirmed is False
    with pytest.raises(NotFound):
        await pipeline.select_model_source(video.id, 'elevenlabs-stt')


@pytest.mark.anyio
async def test_one_failed_model_does_not_sink_the_others(pipeline, transcribers):
    transcribers['primary'].error = ProviderQuotaExceeded("primary quota")
    video = await pipeline.create_video('m.mp4', '/media/m.mp4')
    await pipeline.start_processing(video.id, models=['primary', 'secondary'])
    await pipeline.runner.drain()
    video = await pipeline.get_video(video.id)
    assert video.status == 'completed'
    assert video.active_model_source == 'gemini-2.5-pro'


@pytest.mark.anyio
async def test_speaker_count_recorded(pipeline, transcribers):
    transcribers['primary'].segments = [
        RawSegment("Hello from the first speaker.", 0.0, 4.0, 0.9, speaker_id='speaker_0'),
        RawSegment("And a reply from the second.", 4.0, 8.0, 0.9, speaker_id='speaker_1'),
        RawSegment("First speaker again here.", 8.0, 12.0, 0.9, speaker_id='speaker_0'),
    ]
    video = await pipeline.create_video('s.mp4', '/media/s.mp4')
    await pipeline.start_processing(video.id)
    await pipeline.runner.drain()
    assert (await pipeline.get_video(video.id)).speaker_count == 2
    assert await pipeline.dubbing.suggest_speaker_count(video.id) == 2
