"""Data models for video-clipper.

Entities are frozen pydantic snapshots. A change produces a new snapshot via
``model_copy(update=...)``; nothing is mutated in place. Factories named
``create`` enforce the construction invariants and raise
``ValidationError`` from :mod:`video_clipper.errors`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Callable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorCode, ValidationError

IdFactory = Callable[[], str]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque entity id."""
    return uuid4().hex


class Entity(BaseModel):
    """Common fields for persisted entities."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class VideoStatus(str, Enum):
    """Video pipeline status."""

    PENDING = "pending"
    PROCESSING = "processing"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptionPhase(str, Enum):
    """Sub-step reported while a video is transcribing."""

    DOWNLOADING = "downloading"
    EXTRACTING_AUDIO = "extracting_audio"
    TRANSCRIBING = "transcribing"
    REFINING = "refining"


class ProcessingJobStatus(str, Enum):
    """AI extraction job status."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class ClipStatus(str, Enum):
    """Clip status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ClipSubtitleStatus(str, Enum):
    """Subtitle review status."""

    DRAFT = "draft"
    CONFIRMED = "confirmed"


class ComposedVideoStatus(str, Enum):
    """Composition status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Shared validation
# ---------------------------------------------------------------------------


def validate_time_range(start: float, end: float, label: str = "time range") -> None:
    """Reject negative starts and ranges where end does not follow start."""
    if start < 0:
        raise ValidationError(ErrorCode.INVALID_TIME_RANGE, f"Invalid {label}: start must be >= 0")
    if end <= start:
        raise ValidationError(
            ErrorCode.INVALID_TIME_RANGE,
            f"Invalid {label}: end ({end}) must be greater than start ({start})",
        )


def validate_clip_duration(start: float, end: float, min_seconds: float, max_seconds: float) -> float:
    """Check a clip range against the duration bounds (inclusive) and return its duration."""
    validate_time_range(start, end, "clip time range")
    duration = end - start
    if duration < min_seconds or duration > max_seconds:
        raise ValidationError(
            ErrorCode.INVALID_DURATION,
            f"Clip duration must be between {min_seconds} and {max_seconds} seconds, got {duration:g}",
        )
    return duration


# ---------------------------------------------------------------------------
# Video
# ---------------------------------------------------------------------------


class CacheReference(BaseModel):
    """Locator of a cached blob plus its expiry."""

    model_config = ConfigDict(frozen=True)

    uri: str
    expires_at: datetime


class Video(Entity):
    """A submitted source video."""

    source_file_id: str
    source_url: str
    title: str | None = None
    description: str | None = None
    file_size_bytes: int | None = None
    duration_seconds: float | None = None
    status: VideoStatus = VideoStatus.PENDING
    transcription_phase: TranscriptionPhase | None = None
    cache_ref: CacheReference | None = None
    audio_cache_uri: str | None = None
    progress_message: str | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Processing job
# ---------------------------------------------------------------------------


class ProcessingJob(Entity):
    """An AI-driven multi-clip extraction request."""

    video_id: str
    clip_instructions: str
    status: ProcessingJobStatus = ProcessingJobStatus.PENDING
    ai_response: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    @classmethod
    def create(cls, video_id: str, clip_instructions: str, id_factory: IdFactory = new_id) -> ProcessingJob:
        if not clip_instructions or not clip_instructions.strip():
            raise ValidationError(ErrorCode.EMPTY_INSTRUCTIONS, "Clip instructions are required")
        return cls(id=id_factory(), video_id=video_id, clip_instructions=clip_instructions.strip())


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


class TranscriptionSegment(BaseModel):
    """Smallest transcribed unit."""

    model_config = ConfigDict(frozen=True)

    text: str
    start_time_seconds: float
    end_time_seconds: float
    confidence: float = 0.0


class Transcription(Entity):
    """Raw speech-to-text output for a video."""

    video_id: str
    full_text: str
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    language_code: str = "ja-JP"
    duration_seconds: float = 0.0


class RefinedSentence(BaseModel):
    """A corrected sentence referencing its source segments."""

    model_config = ConfigDict(frozen=True)

    text: str
    start_time_seconds: float
    end_time_seconds: float
    original_segment_indices: list[int] = Field(default_factory=list)


class RefinedTranscription(Entity):
    """Sentence-level transcript produced by the refinement engine."""

    transcription_id: str
    full_text: str
    sentences: list[RefinedSentence]
    dictionary_version: str

    @classmethod
    def create(
        cls,
        transcription_id: str,
        full_text: str,
        sentences: list[RefinedSentence],
        dictionary_version: str,
        id_factory: IdFactory = new_id,
    ) -> RefinedTranscription:
        if not full_text or not full_text.strip():
            raise ValidationError(ErrorCode.EMPTY_TEXT, "Refined transcription text cannot be empty")
        if not sentences:
            raise ValidationError(ErrorCode.EMPTY_SENTENCES, "Refined transcription must have sentences")
        if not dictionary_version or not dictionary_version.strip():
            raise ValidationError(ErrorCode.INVALID_DICTIONARY_VERSION, "Dictionary version is required")
        return cls(
            id=id_factory(),
            transcription_id=transcription_id,
            full_text=full_text,
            sentences=sentences,
            dictionary_version=dictionary_version,
        )


# ---------------------------------------------------------------------------
# Clip
# ---------------------------------------------------------------------------


class Clip(Entity):
    """A short extracted segment of a video."""

    video_id: str
    start_time_seconds: float
    end_time_seconds: float
    duration_seconds: float
    title: str | None = None
    transcript: str | None = None
    status: ClipStatus = ClipStatus.PENDING
    file_id: str | None = None
    file_url: str | None = None
    error_message: str | None = None

    @classmethod
    def create(
        cls,
        video_id: str,
        start_time_seconds: float,
        end_time_seconds: float,
        *,
        min_seconds: float,
        max_seconds: float,
        title: str | None = None,
        transcript: str | None = None,
        id_factory: IdFactory = new_id,
    ) -> Clip:
        duration = validate_clip_duration(start_time_seconds, end_time_seconds, min_seconds, max_seconds)
        return cls(
            id=id_factory(),
            video_id=video_id,
            start_time_seconds=start_time_seconds,
            end_time_seconds=end_time_seconds,
            duration_seconds=duration,
            title=title,
            transcript=transcript,
        )


class SubtitleSegment(BaseModel):
    """One on-screen subtitle block, timed relative to the clip start."""

    model_config = ConfigDict(frozen=True)

    index: int
    lines: list[str]
    start_time_seconds: float
    end_time_seconds: float


def validate_subtitle_segments(segments: list[SubtitleSegment], max_chars: int, max_lines: int) -> None:
    """Enforce the display constraints on a subtitle segment list."""
    if not segments:
        raise ValidationError(ErrorCode.EMPTY_SEGMENTS, "Subtitle must have at least one segment")

    for position, segment in enumerate(segments):
        if segment.index != position:
            raise ValidationError(
                ErrorCode.INVALID_SEGMENT_ORDER,
                f"Segment index {segment.index} at position {position}; indices must be 0, 1, 2...",
            )
        if segment.end_time_seconds <= segment.start_time_seconds:
            raise ValidationError(
                ErrorCode.INVALID_TIME_RANGE,
                f"Segment {position}: end time must be greater than start time",
            )
        if not segment.lines:
            raise ValidationError(ErrorCode.EMPTY_LINES, f"Segment {position} has no lines")
        if len(segment.lines) > max_lines:
            raise ValidationError(
                ErrorCode.TOO_MANY_LINES,
                f"Segment {position} has {len(segment.lines)} lines (max {max_lines})",
            )
        for line in segment.lines:
            if len(line) > max_chars:
                raise ValidationError(
                    ErrorCode.LINE_TOO_LONG,
                    f"Segment {position} line '{line}' has {len(line)} characters (max {max_chars})",
                )


class ClipSubtitle(Entity):
    """Subtitle track for a single clip."""

    clip_id: str
    segments: list[SubtitleSegment]
    status: ClipSubtitleStatus = ClipSubtitleStatus.DRAFT

    @classmethod
    def create(
        cls,
        clip_id: str,
        segments: list[SubtitleSegment],
        *,
        max_chars: int = 16,
        max_lines: int = 2,
        id_factory: IdFactory = new_id,
    ) -> ClipSubtitle:
        validate_subtitle_segments(segments, max_chars, max_lines)
        return cls(id=id_factory(), clip_id=clip_id, segments=segments)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class ComposedVideo(Entity):
    """Scene-based short rendered for a script."""

    project_id: str
    script_id: str
    file_url: str | None = None
    duration_seconds: float | None = None
    status: ComposedVideoStatus = ComposedVideoStatus.PENDING
    bgm_key: str | None = None
    error_message: str | None = None


class VisualKind(str, Enum):
    """How a scene fills the canvas."""

    IMAGE = "image"
    STOCK_VIDEO = "stock_video"
    SOLID_COLOR = "solid_color"


class SceneVisual(BaseModel):
    """Visual source of a scene."""

    model_config = ConfigDict(frozen=True)

    kind: VisualKind
    uri: str | None = None
    color: str | None = None


class Scene(BaseModel):
    """A composition input; not persisted."""

    model_config = ConfigDict(frozen=True)

    id: str
    order: int
    visual: SceneVisual
    voice_uri: str | None = None
    duration_ms: int | None = None
    silence_duration_ms: int | None = None
    subtitle_image_uris: list[str] = Field(default_factory=list)
