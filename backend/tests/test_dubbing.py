import json
import os
import httpx
import pytest

from localizer.core.errors import ErrorCode, InvalidState, NotConfirmed, NotFound, ProviderQuotaExceeded
from localizer.services.voices import LANGUAGE_VOICES, assign_voices, recommend_voices


async def confirmed_video(pipeline, make_completed_video):
    video = await make_completed_video()
    await pipeline.confirm_source(video.id)
    return video


@pytest.mark.anyio
async def test_dubbing_requires_confirmation(pipeline, make_completed_video, dubber):
    video = await make_completed_video()
    with pytest.raises(NotConfirmed):
        await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    assert dubber.submitted == []


@pytest.mark.anyio
async def test_dubbing_happy_path(pipeline, make_completed_video, dubber, extractor):
    video = await confirmed_video(pipeline, make_completed_video)
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    assert job.status == 'processing'
    await pipeline.runner.drain()
    assert dubber.submitted == [('en', [LANGUAGE_VOICES['en'][0].voice_id])]

    done = await pipeline.dubbing.get_dubbing_status(job.id)
    assert done.status == 'completed'
    assert done.provider_job_id == 'dub-1'
    assert done.output_path and os.path.exists(done.output_path)
    assert done.completed_at is not None
    # the extracted track is only needed for the upload
    assert not any(os.path.exists(p) for p in extractor.extracted)


@pytest.mark.anyio
async def test_second_job_for_same_language_rejected_while_active(pipeline, make_completed_video, dubber):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.poll_status = 'processing'
    await pipeline.dubbing.start_dubbing(video.id, 'hi', 1)
    await pipeline.runner.drain()
    with pytest.raises(InvalidState):
        await pipeline.dubbing.start_dubbing(video.id, 'hi', 1)
    other = await pipeline.dubbing.start_dubbing(video.id, 'ta', 1)
    assert other.language == 'ta'
    await pipeline.runner.drain()


@pytest.mark.anyio
async def test_failed_job_retry_creates_new_row(pipeline, make_completed_video, dubber):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.poll_status = 'failed'
    first = await pipeline.dubbing.start_dubbing(video.id, 'en', 2)
    await pipeline.runner.drain()
    failed = await pipeline.dubbing.get_dubbing_status(first.id)
    assert failed.status == 'failed'
    assert failed.error_code == ErrorCode.PROVIDER_ERROR
    assert failed.error_message == 'voice synthesis failed'

    dubber.poll_status = 'completed'
    second = await pipeline.dubbing.retry_dubbing(video.id, 'en')
    assert second.id != first.id
    assert second.speaker_count == 2
    assert json.loads(second.voice_ids) == json.loads(first.voice_ids)
    await pipeline.runner.drain()
    assert (await pipeline.dubbing.get_dubbing_status(second.id)).status == 'completed'
    assert (await pipeline.dubbing.get_job(first.id)).status == 'failed'
    assert [j.id for j in await pipeline.dubbing.list_jobs(video.id)] == [first.id, second.id]


@pytest.mark.anyio
async def test_retry_only_for_failed_jobs(pipeline, make_completed_video):
    video = await confirmed_video(pipeline, make_completed_video)
    with pytest.raises(NotFound):
        await pipeline.dubbing.retry_dubbing(video.id, 'en')
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    await pipeline.runner.drain()
    await pipeline.dubbing.get_dubbing_status(job.id)
    with pytest.raises(InvalidState):
        await pipeline.dubbing.retry_dubbing(video.id, 'en')


@pytest.mark.anyio
async def test_submission_error_fails_job(pipeline, make_completed_video, dubber):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.submit_error = ProviderQuotaExceeded("character quota used up", provider='elevenlabs')
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    await pipeline.runner.drain()
    failed = await pipeline.dubbing.get_dubbing_status(job.id)
    assert failed.status == 'failed'
    assert failed.error_code == ErrorCode.PROVIDER_QUOTA_EXCEEDED
    assert failed.provider_job_id is None


@pytest.mark.anyio
async def test_timeout_then_late_completion(pipeline, make_completed_video, dubber, settings):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.poll_status = 'processing'
    settings.dubbing_timeout_seconds = -1
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    await pipeline.runner.drain()
    timed_out = await pipeline.dubbing.get_dubbing_status(job.id)
    assert timed_out.status == 'failed'
    assert timed_out.error_code == ErrorCode.TIMEOUT

    dubber.poll_status = 'completed'
    late = await pipeline.dubbing.get_dubbing_status(job.id)
    assert late.status == 'completed'
    assert late.error_code is None


@pytest.mark.anyio
async def test_speaker_count_defaults_from_transcript(pipeline, make_completed_video):
    video = await confirmed_video(pipeline, make_completed_video)
    job = await pipeline.dubbing.start_dubbing(video.id, 'en')
    assert job.speaker_count == 1
    with pytest.raises(InvalidState):
        await pipeline.dubbing.start_dubbing(video.id, 'hi', 0)
    await pipeline.runner.drain()


def test_assign_voices_uses_requested_then_defaults():
    defaults = [v.voice_id for v in recommend_voices('en', 3)]
    assert assign_voices('en', 3, ['custom-a']) == ['custom-a'] + defaults[1:]
    assert assign_voices('en', 1, ['a', 'b', 'c']) == ['a']
    assert assign_voices('en', 2, []) == defaults[:2]


def test_recommend_voices_alternates_and_cycles():
    voices = recommend_voices('hi', 5)
    assert [v.gender for v in voices[:2]] == ['female', 'male']
    assert len(voices) == 5
    assert voices[3] == voices[0]
    # unknown languages use the English catalogue
    assert recommend_voices('xx', 1)[0] in LANGUAGE_VOICES['en']


@pytest.mark.anyio
async def test_download_failure_keeps_job_pending_until_next_read(pipeline, make_completed_video, dubber):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.download_error = httpx.ConnectError("connection reset")
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    await pipeline.runner.drain()
    unsettled = await pipeline.dubbing.get_dubbing_status(job.id)
    assert unsettled.status == 'processing'
    assert unsettled.output_path is None

    dubber.download_error = None
    done = await pipeline.dubbing.get_dubbing_status(job.id)
    assert done.status == 'completed'
    assert os.path.exists(done.output_path)


@pytest.mark.anyio
async def test_completed_without_audio_fails_job(pipeline, make_completed_video, dubber):
    video = await confirmed_video(pipeline, make_completed_video)
    dubber.poll_status = 'no-audio'
    job = await pipeline.dubbing.start_dubbing(video.id, 'en', 1)
    await pipeline.runner.drain()
    failed = await pipeline.dubbing.get_dubbing_status(job.id)
    assert failed.status == 'failed'
    assert failed.error_code == ErrorCode.PROVIDER_ERROR
    assert failed.output_path is None
