"""Tests for entity construction invariants."""

from __future__ import annotations

import pytest

from video_clipper.errors import ErrorCode, ValidationError
from video_clipper.models import (
    Clip,
    ClipStatus,
    ClipSubtitle,
    ClipSubtitleStatus,
    ProcessingJob,
    ProcessingJobStatus,
    RefinedSentence,
    RefinedTranscription,
    SubtitleSegment,
    validate_time_range,
)


@pytest.mark.parametrize(
    "start,end,ok",
    [
        (0, 5, True),  # exactly min
        (0, 4.999, False),
        (10, 610, True),  # exactly max
        (10, 610.001, False),
        (100, 160, True),
    ],
)
def test_clip_duration_bounds_are_inclusive(start, end, ok):
    """Test clip durations at the configured bounds are accepted."""
    if ok:
        clip = Clip.create("v1", start, end, min_seconds=5, max_seconds=600)
        assert clip.duration_seconds == pytest.approx(end - start)
        assert clip.status == ClipStatus.PENDING
    else:
        with pytest.raises(ValidationError) as exc_info:
            Clip.create("v1", start, end, min_seconds=5, max_seconds=600)
        assert exc_info.value.code == ErrorCode.INVALID_DURATION


@pytest.mark.parametrize("start,end", [(-1, 10), (10, 10), (20, 10)])
def test_clip_rejects_invalid_time_range(start, end):
    """Test negative starts and non-increasing ranges are rejected."""
    with pytest.raises(ValidationError) as exc_info:
        Clip.create("v1", start, end, min_seconds=5, max_seconds=600)
    assert exc_info.value.code == ErrorCode.INVALID_TIME_RANGE


def test_validate_time_range_accepts_zero_start():
    """Test a range starting at zero is valid."""
    validate_time_range(0, 0.1)


def test_processing_job_requires_instructions():
    """Test blank instructions are rejected and others are trimmed."""
    with pytest.raises(ValidationError) as exc_info:
        ProcessingJob.create("v1", "   ")
    assert exc_info.value.code == ErrorCode.EMPTY_INSTRUCTIONS

    job = ProcessingJob.create("v1", "  best moments  ")
    assert job.clip_instructions == "best moments"
    assert job.status == ProcessingJobStatus.PENDING


def _sentence(text="こんにちは。"):
    return RefinedSentence(text=text, start_time_seconds=0.0, end_time_seconds=1.0, original_segment_indices=[0])


@pytest.mark.parametrize(
    "full_text,sentences,version,code",
    [
        ("", [_sentence()], "1.0.0", ErrorCode.EMPTY_TEXT),
        ("text", [], "1.0.0", ErrorCode.EMPTY_SENTENCES),
        ("text", [_sentence()], " ", ErrorCode.INVALID_DICTIONARY_VERSION),
    ],
)
def test_refined_transcription_invariants(full_text, sentences, version, code):
    """Test refined transcriptions need text, sentences and a dictionary version."""
    with pytest.raises(ValidationError) as exc_info:
        RefinedTranscription.create("t1", full_text, sentences, version)
    assert exc_info.value.code == code


def _segment(index, lines, start=0.0, end=1.0):
    return SubtitleSegment(index=index, lines=lines, start_time_seconds=start, end_time_seconds=end)


def test_clip_subtitle_accepts_limits_exactly():
    """Test 16 characters and 2 lines are within the limits."""
    subtitle = ClipSubtitle.create("c1", [_segment(0, ["あ" * 16, "い" * 16])])

    assert subtitle.status == ClipSubtitleStatus.DRAFT
    assert len(subtitle.segments) == 1


@pytest.mark.parametrize(
    "segments,code",
    [
        ([], ErrorCode.EMPTY_SEGMENTS),
        ([_segment(0, ["a"]), _segment(2, ["b"], 1.0, 2.0)], ErrorCode.INVALID_SEGMENT_ORDER),
        ([_segment(1, ["a"])], ErrorCode.INVALID_SEGMENT_ORDER),
        ([_segment(0, ["a"], 1.0, 1.0)], ErrorCode.INVALID_TIME_RANGE),
        ([_segment(0, [])], ErrorCode.EMPTY_LINES),
        ([_segment(0, ["a", "b", "c"])], ErrorCode.TOO_MANY_LINES),
        ([_segment(0, ["あ" * 17])], ErrorCode.LINE_TOO_LONG),
    ],
)
def test_clip_subtitle_constraints(segments, code):
    """Test every subtitle display constraint is enforced."""
    with pytest.raises(ValidationError) as exc_info:
        ClipSubtitle.create("c1", segments)
    assert exc_info.value.code == code


def test_clip_subtitle_custom_limits():
    """Test the limits are parameters, not constants."""
    with pytest.raises(ValidationError):
        ClipSubtitle.create("c1", [_segment(0, ["abcdef"])], max_chars=5, max_lines=1)

    ClipSubtitle.create("c1", [_segment(0, ["abcde"])], max_chars=5, max_lines=1)
