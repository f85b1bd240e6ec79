"""Tests for the entity status transition tables."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from video_clipper.core.lifecycle import (
    CLIP_TRANSITIONS,
    COMPOSED_VIDEO_TRANSITIONS,
    JOB_TRANSITIONS,
    VIDEO_TRANSITIONS,
    can_transition,
    confirm_subtitle,
    edit_subtitle,
    reset_composed_video,
    reset_video_to,
    transition,
)
from video_clipper.errors import ConflictError, ErrorCode, InvalidTransitionError, ValidationError
from video_clipper.models import (
    Clip,
    ClipStatus,
    ClipSubtitle,
    ClipSubtitleStatus,
    ComposedVideo,
    ComposedVideoStatus,
    ProcessingJob,
    ProcessingJobStatus,
    SubtitleSegment,
    TranscriptionPhase,
    Video,
    VideoStatus,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2025, 1, 1, 0, 5, tzinfo=timezone.utc)


def _video(status=VideoStatus.PENDING, **fields):
    return Video(source_file_id="f1", source_url="origin://f1", status=status, **fields)


def _job(status=ProcessingJobStatus.PENDING, **fields):
    return ProcessingJob(video_id="v1", clip_instructions="cut the intro", status=status, **fields)


def _clip(status=ClipStatus.PENDING):
    return Clip(video_id="v1", start_time_seconds=0, end_time_seconds=10, duration_seconds=10, status=status)


def _composed(status=ComposedVideoStatus.PENDING):
    return ComposedVideo(project_id="p1", script_id="s1", status=status)


FACTORIES = [
    (VIDEO_TRANSITIONS, VideoStatus, _video),
    (JOB_TRANSITIONS, ProcessingJobStatus, _job),
    (CLIP_TRANSITIONS, ClipStatus, _clip),
    (COMPOSED_VIDEO_TRANSITIONS, ComposedVideoStatus, _composed),
]


def _edges(allowed: bool):
    for table, status_enum, factory in FACTORIES:
        for current in status_enum:
            for target in status_enum:
                if (target in table[current]) == allowed:
                    yield pytest.param(factory, current, target, id=f"{status_enum.__name__}:{current.value}->{target.value}")


def test_tables_cover_every_status():
    """Test each table has a row for every status of its entity."""
    for table, status_enum, _ in FACTORIES:
        assert set(table) == set(status_enum)


@pytest.mark.parametrize("factory,current,target", list(_edges(allowed=True)))
def test_listed_edges_are_accepted(factory, current, target):
    """Test every edge in a table produces a snapshot in the target status."""
    entity = factory(current)
    moved = transition(entity, target, error_message="boom")

    assert moved.status == target
    assert entity.status == current  # original snapshot untouched
    assert can_transition(entity, target)


@pytest.mark.parametrize("factory,current,target", list(_edges(allowed=False)))
def test_unlisted_edges_are_rejected(factory, current, target):
    """Test every edge missing from a table raises and changes nothing."""
    entity = factory(current)

    with pytest.raises(InvalidTransitionError) as exc_info:
        transition(entity, target)

    assert exc_info.value.code == ErrorCode.INVALID_STATE_TRANSITION
    assert not can_transition(entity, target)
    assert entity.status == current


def test_error_message_only_kept_on_failure():
    """Test error_message is set on failed and cleared on any other target."""
    failed = transition(_video(VideoStatus.TRANSCRIBING), VideoStatus.FAILED, "speech service down")
    assert failed.error_message == "speech service down"

    ok = transition(_video(VideoStatus.TRANSCRIBING, error_message="stale"), VideoStatus.TRANSCRIBED, "ignored")
    assert ok.error_message is None


def test_video_phase_cleared_when_leaving_transcribing():
    """Test the transcription phase only survives while transcribing."""
    video = transition(_video(), VideoStatus.TRANSCRIBING, transcription_phase=TranscriptionPhase.DOWNLOADING)
    assert video.transcription_phase == TranscriptionPhase.DOWNLOADING

    done = transition(video, VideoStatus.TRANSCRIBED)
    assert done.transcription_phase is None


def test_job_timestamps():
    """Test started_at is stamped once and completed_at on finish."""
    job = transition(_job(), ProcessingJobStatus.ANALYZING, now=T0)
    assert job.started_at == T0
    assert job.completed_at is None

    job = transition(job, ProcessingJobStatus.EXTRACTING, now=T1)
    assert job.started_at == T0

    job = transition(job, ProcessingJobStatus.FAILED, "no clips", now=T1)
    assert job.completed_at == T1
    assert job.error_message == "no clips"

    retried = transition(job, ProcessingJobStatus.PENDING)
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.error_message is None


def test_transition_applies_extra_changes():
    """Test extra fields land in the same snapshot as the status change."""
    clip = transition(_clip(ClipStatus.PROCESSING), ClipStatus.COMPLETED, file_id="abc", file_url="https://x/abc")

    assert clip.file_id == "abc"
    assert clip.file_url == "https://x/abc"


def test_transition_stamps_updated_at():
    """Test updated_at is set to the given time."""
    clip = transition(_clip(), ClipStatus.PROCESSING, now=T1)
    assert clip.updated_at == T1


@pytest.mark.parametrize("current", [VideoStatus.COMPLETED, VideoStatus.FAILED, VideoStatus.TRANSCRIBED])
@pytest.mark.parametrize("target", [VideoStatus.TRANSCRIBED, VideoStatus.PENDING])
def test_reset_video_allowed(current, target):
    """Test resets from finished checkpoints clear the progress fields."""
    video = _video(current, error_message="old", progress_message="50%")

    reset = reset_video_to(video, target, cache_ref=None)

    assert reset.status == target
    assert reset.error_message is None
    assert reset.progress_message is None
    assert reset.transcription_phase is None


@pytest.mark.parametrize(
    "current",
    [VideoStatus.PENDING, VideoStatus.PROCESSING, VideoStatus.TRANSCRIBING, VideoStatus.EXTRACTING],
)
def test_reset_video_rejected_while_active(current):
    """Test a video cannot be reset while it has not reached a checkpoint."""
    with pytest.raises(InvalidTransitionError):
        reset_video_to(_video(current), VideoStatus.PENDING)


def test_reset_video_rejects_other_targets():
    """Test resets only go to transcribed or pending."""
    with pytest.raises(InvalidTransitionError):
        reset_video_to(_video(VideoStatus.FAILED), VideoStatus.EXTRACTING)


@pytest.mark.parametrize("current", [ComposedVideoStatus.COMPLETED, ComposedVideoStatus.FAILED])
def test_reset_composed_video(current):
    """Test finished compositions return to pending without their output."""
    composed = _composed(current).model_copy(update={"file_url": "cache://x.mp4", "duration_seconds": 12.0})

    reset = reset_composed_video(composed)

    assert reset.status == ComposedVideoStatus.PENDING
    assert reset.file_url is None
    assert reset.duration_seconds is None


@pytest.mark.parametrize("current", [ComposedVideoStatus.PENDING, ComposedVideoStatus.PROCESSING])
def test_reset_composed_video_rejected_when_not_finished(current):
    """Test a composition in progress cannot be reset."""
    with pytest.raises(InvalidTransitionError):
        reset_composed_video(_composed(current))


def _subtitle():
    segments = [SubtitleSegment(index=0, lines=["こんにちは"], start_time_seconds=0.0, end_time_seconds=1.0)]
    return ClipSubtitle.create("c1", segments)


def test_confirm_subtitle_once():
    """Test a draft can be confirmed, but not twice."""
    confirmed = confirm_subtitle(_subtitle())
    assert confirmed.status == ClipSubtitleStatus.CONFIRMED

    with pytest.raises(ConflictError) as exc_info:
        confirm_subtitle(confirmed)
    assert exc_info.value.code == ErrorCode.ALREADY_CONFIRMED


def test_edit_subtitle_reverts_to_draft():
    """Test any edit of a confirmed subtitle returns it to draft."""
    confirmed = confirm_subtitle(_subtitle())
    segments = [SubtitleSegment(index=0, lines=["さようなら"], start_time_seconds=0.0, end_time_seconds=2.0)]

    edited = edit_subtitle(confirmed, segments)

    assert edited.status == ClipSubtitleStatus.DRAFT
    assert edited.segments == segments


def test_edit_subtitle_validates_segments():
    """Test edits must satisfy the display constraints."""
    bad = [SubtitleSegment(index=0, lines=["あ" * 17], start_time_seconds=0.0, end_time_seconds=1.0)]

    with pytest.raises(ValidationError) as exc_info:
        edit_subtitle(_subtitle(), bad)
    assert exc_info.value.code == ErrorCode.LINE_TOO_LONG
