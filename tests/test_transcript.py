"""Tests for video submission, transcription and reset."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone

import pytest

from video_clipper.core.refinement import RefinementEngine
from video_clipper.core.transcript import ResetStep, TranscriptPipeline, transcription_progress_message
from video_clipper.errors import (
    ConflictError,
    ErrorCode,
    ExternalFailureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from video_clipper.models import (
    CacheReference,
    RefinedSentence,
    RefinedTranscription,
    Transcription,
    Video,
    VideoStatus,
)


def _echo(prompt: str) -> str:
    indices = [int(i) for i in re.findall(r"^\[(\d+)\] \[", prompt, re.MULTILINE)]
    return json.dumps(
        {
            "sentences": [
                {"text": f"w{i}。", "startTimeSeconds": i, "endTimeSeconds": i + 1, "originalSegmentIndices": [i]}
                for i in indices
            ]
        }
    )


@pytest.fixture
def clock():
    return [0.0]


@pytest.fixture
def make_pipeline(repos, cache_manager, origin, cache, media, config, dictionary, work_root, clock,
                  generator_factory, speech_factory):
    def factory(speech=None, responses=(), refine=True):
        speech = speech or speech_factory()
        engine = RefinementEngine(generator_factory(list(responses))) if refine else None
        pipeline = TranscriptPipeline(
            repos, cache_manager, origin, cache, media, speech, config,
            engine=engine,
            dictionary=dictionary if refine else None,
            work_root=work_root,
            clock=lambda: clock[0],
        )
        return pipeline, speech
    return factory


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_video(make_pipeline, repos):
    """Test a share URL registers a pending video with origin metadata."""
    pipeline, _ = make_pipeline()

    video = await pipeline.submit_video("origin://src1", description="Diet session")

    assert video.status == VideoStatus.PENDING
    assert video.source_file_id == "src1"
    assert video.title == "talk.mp4"
    assert video.file_size_bytes == 16
    assert video.description == "Diet session"
    assert repos.videos.get(video.id).source_url == "origin://src1"


@pytest.mark.asyncio
async def test_submit_video_rejects_invalid_and_duplicate(make_pipeline):
    """Test malformed URLs and repeated submissions are rejected."""
    pipeline, _ = make_pipeline()

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.submit_video("https://example.com/watch?v=1")
    assert exc_info.value.code == ErrorCode.INVALID_URL

    await pipeline.submit_video("origin://src1")
    with pytest.raises(ConflictError) as exc_info:
        await pipeline.submit_video("origin://src1")
    assert exc_info.value.code == ErrorCode.DUPLICATE_VIDEO


@pytest.mark.asyncio
async def test_submit_video_unreachable_source(make_pipeline, repos):
    """Test a file the origin cannot describe is not registered."""
    pipeline, _ = make_pipeline()

    with pytest.raises(ExternalFailureError) as exc_info:
        await pipeline.submit_video("origin://nofile")

    assert exc_info.value.code == ErrorCode.SOURCE_UNAVAILABLE
    assert repos.videos.list() == []


# ---------------------------------------------------------------------------
# Transcribe
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_transcript_full_pipeline(make_pipeline, repos, cache, media):
    """Test caching, audio extraction, transcription and refinement in order."""
    pipeline, speech = make_pipeline(responses=[_echo])
    video = await pipeline.submit_video("origin://src1")

    transcription = await pipeline.create_transcript(video.id)

    assert len(transcription.segments) == 10
    assert transcription.duration_seconds == 120.0
    assert media.audio_inputs == [f"https://cache.example/videos/{video.id}/source.mp4?minutes=60"]
    assert speech.calls == [f"cache://videos/{video.id}/audio.flac"]
    assert f"cache://videos/{video.id}/audio.flac" in cache.blobs

    stored = repos.videos.get(video.id)
    assert stored.status == VideoStatus.TRANSCRIBED
    assert stored.transcription_phase is None
    assert stored.progress_message is None
    assert stored.audio_cache_uri == f"cache://videos/{video.id}/audio.flac"
    assert stored.cache_ref.uri == f"cache://videos/{video.id}/source.mp4"
    assert stored.duration_seconds == 120.0

    [refined] = repos.refined_transcriptions.find_by(transcription_id=transcription.id)
    assert len(refined.sentences) == 10


@pytest.mark.asyncio
async def test_create_transcript_without_refinement(make_pipeline, repos):
    """Test refine=False stops after the raw transcript."""
    pipeline, _ = make_pipeline(responses=[_echo])
    video = await pipeline.submit_video("origin://src1")

    await pipeline.create_transcript(video.id, refine=False)

    assert repos.refined_transcriptions.list() == []
    assert repos.videos.get(video.id).status == VideoStatus.TRANSCRIBED


@pytest.mark.asyncio
async def test_create_transcript_refinement_failure_is_not_fatal(make_pipeline, repos):
    """Test a failed refinement keeps the raw transcript and the transcribed status."""
    pipeline, _ = make_pipeline(responses=["not json"])
    video = await pipeline.submit_video("origin://src1")

    await pipeline.create_transcript(video.id)

    assert len(repos.transcriptions.find_by(video_id=video.id)) == 1
    assert repos.refined_transcriptions.list() == []
    stored = repos.videos.get(video.id)
    assert stored.status == VideoStatus.TRANSCRIBED
    assert stored.error_message is None


@pytest.mark.asyncio
async def test_create_transcript_speech_failure_fails_video(make_pipeline, repos, speech_factory):
    """Test a speech-to-text failure marks the video failed with its message."""
    error = ExternalFailureError(ErrorCode.TRANSCRIPTION_FAILED, "speech service returned 503")
    pipeline, _ = make_pipeline(speech=speech_factory(error=error))
    video = await pipeline.submit_video("origin://src1")

    with pytest.raises(ExternalFailureError):
        await pipeline.create_transcript(video.id)

    stored = repos.videos.get(video.id)
    assert stored.status == VideoStatus.FAILED
    assert stored.error_message == "speech service returned 503"
    assert stored.transcription_phase is None
    assert stored.progress_message is None
    assert repos.transcriptions.list() == []


@pytest.mark.asyncio
async def test_create_transcript_cache_failure_fails_video(make_pipeline, repos, cache):
    """Test a source that cannot be cached fails the video."""
    cache.fail_puts = True
    pipeline, _ = make_pipeline()
    video = await pipeline.submit_video("origin://src1")

    with pytest.raises(ExternalFailureError) as exc_info:
        await pipeline.create_transcript(video.id)

    assert exc_info.value.code == ErrorCode.CACHE_FAILURE
    assert repos.videos.get(video.id).status == VideoStatus.FAILED


@pytest.mark.asyncio
async def test_create_transcript_replaces_stale_transcription(make_pipeline, repos):
    """Test a leftover transcription of the same video is replaced."""
    pipeline, _ = make_pipeline(refine=False)
    video = await pipeline.submit_video("origin://src1")
    stale = repos.transcriptions.save(Transcription(video_id=video.id, full_text="old"))

    transcription = await pipeline.create_transcript(video.id)

    assert [t.id for t in repos.transcriptions.find_by(video_id=video.id)] == [transcription.id]
    assert transcription.id != stale.id


@pytest.mark.asyncio
async def test_create_transcript_rejects_missing_or_busy_video(make_pipeline, repos):
    """Test only known videos in a startable status can be transcribed."""
    pipeline, _ = make_pipeline()

    with pytest.raises(NotFoundError):
        await pipeline.create_transcript("missing")

    video = repos.videos.save(Video(source_file_id="src1", source_url="origin://src1", status=VideoStatus.TRANSCRIBED))
    with pytest.raises(InvalidTransitionError):
        await pipeline.create_transcript(video.id)


@pytest.mark.parametrize(
    "status",
    [VideoStatus.TRANSCRIBING, VideoStatus.TRANSCRIBED, VideoStatus.EXTRACTING, VideoStatus.COMPLETED],
)
def test_start_transcript_rejects_invalid_edge(make_pipeline, repos, status):
    """Test starting is refused synchronously and leaves the video untouched."""
    pipeline, _ = make_pipeline()
    video = repos.videos.save(Video(source_file_id="src1", source_url="origin://src1", status=status))

    with pytest.raises(InvalidTransitionError):
        pipeline.start_transcript(video.id)

    assert repos.videos.get(video.id).status == status


@pytest.mark.asyncio
async def test_start_then_run_transcript(make_pipeline, repos):
    """Test the persisted transcribing snapshot is picked up by the run step."""
    pipeline, _ = make_pipeline(refine=False)
    video = await pipeline.submit_video("origin://src1")

    started = pipeline.start_transcript(video.id)
    assert started.status == VideoStatus.TRANSCRIBING
    assert repos.videos.get(video.id).status == VideoStatus.TRANSCRIBING

    await pipeline.run_transcript(video.id, refine=False)

    assert repos.videos.get(video.id).status == VideoStatus.TRANSCRIBED


@pytest.mark.asyncio
async def test_progress_callback_throttles_updates(make_pipeline, repos, clock):
    """Test speech progress is written at most once per interval."""
    pipeline, _ = make_pipeline()
    video = await pipeline.submit_video("origin://src1")
    on_progress = pipeline._progress_callback(video.id)

    await on_progress(-5)
    assert repos.videos.get(video.id).progress_message == "Transcribing... 5s elapsed"

    clock[0] = 1.0
    await on_progress(-6)
    assert repos.videos.get(video.id).progress_message == "Transcribing... 5s elapsed"

    clock[0] = 6.0
    await on_progress(50)
    assert repos.videos.get(video.id).progress_message == "Transcribing... 50%"


@pytest.mark.parametrize("value,expected", [(-12.7, "Transcribing... 12s elapsed"), (42.4, "Transcribing... 42%")])
def test_transcription_progress_message(value, expected):
    """Test elapsed seconds and percentages are rendered differently."""
    assert transcription_progress_message(value) == expected


# ---------------------------------------------------------------------------
# Reset and progress
# ---------------------------------------------------------------------------


def _transcribed_video(repos) -> tuple[Video, Transcription]:
    video = repos.videos.save(
        Video(
            source_file_id="src1",
            source_url="origin://src1",
            status=VideoStatus.COMPLETED,
            cache_ref=CacheReference(uri="cache://videos/v/source.mp4", expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc)),
            audio_cache_uri="cache://videos/v/audio.flac",
        )
    )
    transcription = repos.transcriptions.save(Transcription(video_id=video.id, full_text="w0"))
    sentence = RefinedSentence(text="w0。", start_time_seconds=0, end_time_seconds=1, original_segment_indices=[0])
    repos.refined_transcriptions.save(RefinedTranscription.create(transcription.id, "w0。", [sentence], "1.0.0"))
    return video, transcription


def test_reset_refine_keeps_raw_transcript(make_pipeline, repos):
    """Test resetting refinement drops only the refined transcript."""
    pipeline, _ = make_pipeline()
    video, transcription = _transcribed_video(repos)

    reset = pipeline.reset_video(video.id, "refine")

    assert reset.status == VideoStatus.TRANSCRIBED
    assert repos.transcriptions.get(transcription.id) is not None
    assert repos.refined_transcriptions.list() == []
    assert reset.cache_ref is not None


@pytest.mark.parametrize(
    "step,audio_kept,cache_kept",
    [
        (ResetStep.TRANSCRIBE, True, True),
        (ResetStep.AUDIO, False, True),
        (ResetStep.CACHE, False, False),
        (ResetStep.ALL, False, False),
    ],
)
def test_reset_to_pending(make_pipeline, repos, step, audio_kept, cache_kept):
    """Test deeper resets drop transcripts and progressively more cached state."""
    pipeline, _ = make_pipeline()
    video, _ = _transcribed_video(repos)

    reset = pipeline.reset_video(video.id, step)

    assert reset.status == VideoStatus.PENDING
    assert repos.transcriptions.list() == []
    assert repos.refined_transcriptions.list() == []
    assert (reset.audio_cache_uri is not None) is audio_kept
    assert (reset.cache_ref is not None) is cache_kept
    assert repos.videos.get(video.id).status == VideoStatus.PENDING


def test_reset_rejects_unknown_step_and_active_video(make_pipeline, repos):
    """Test unknown steps and videos mid-operation cannot be reset."""
    pipeline, _ = make_pipeline()
    video, _ = _transcribed_video(repos)

    with pytest.raises(ValidationError) as exc_info:
        pipeline.reset_video(video.id, "everything")
    assert exc_info.value.code == ErrorCode.INVALID_RESET_STEP

    busy = repos.videos.save(Video(source_file_id="f2", source_url="origin://f2", status=VideoStatus.TRANSCRIBING))
    with pytest.raises(InvalidTransitionError):
        pipeline.reset_video(busy.id, ResetStep.ALL)


def test_get_progress(make_pipeline, repos):
    """Test the progress snapshot reflects the stored video."""
    pipeline, _ = make_pipeline()
    video = repos.videos.save(
        Video(source_file_id="src1", source_url="origin://src1", status=VideoStatus.FAILED, error_message="boom")
    )

    progress = pipeline.get_progress(video.id)

    assert progress == {
        "video_id": video.id,
        "status": "failed",
        "transcription_phase": None,
        "progress_message": None,
        "error_message": "boom",
    }
    with pytest.raises(NotFoundError):
        pipeline.get_progress("missing")
