"""Status transition tables for the long-lived entities.

``transition`` is pure: it checks the edge against the entity's table and
returns a new snapshot with the status-dependent fields (timestamps, error
message, phase) set. Edges that are not in a table are rejected with
``InvalidTransitionError``; nothing is coerced.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from ..errors import ConflictError, ErrorCode, InvalidTransitionError
from ..models import (
    Clip,
    ClipStatus,
    ClipSubtitle,
    ClipSubtitleStatus,
    ComposedVideo,
    ComposedVideoStatus,
    ProcessingJob,
    ProcessingJobStatus,
    SubtitleSegment,
    Video,
    VideoStatus,
    utcnow,
    validate_subtitle_segments,
)

V = VideoStatus
J = ProcessingJobStatus
C = ClipStatus
CV = ComposedVideoStatus

VIDEO_TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    V.PENDING: frozenset({V.PROCESSING, V.TRANSCRIBING, V.FAILED}),
    V.PROCESSING: frozenset({V.TRANSCRIBING, V.FAILED}),
    V.TRANSCRIBING: frozenset({V.TRANSCRIBED, V.FAILED}),
    V.TRANSCRIBED: frozenset({V.EXTRACTING, V.FAILED}),
    V.EXTRACTING: frozenset({V.COMPLETED, V.TRANSCRIBED, V.FAILED}),
    V.COMPLETED: frozenset({V.EXTRACTING}),
    V.FAILED: frozenset(),
}

# Corrective resets, outside the normal table.
VIDEO_RESETS: dict[VideoStatus, frozenset[VideoStatus]] = {
    V.COMPLETED: frozenset({V.TRANSCRIBED, V.PENDING}),
    V.FAILED: frozenset({V.TRANSCRIBED, V.PENDING}),
    V.TRANSCRIBED: frozenset({V.TRANSCRIBED, V.PENDING}),
}

JOB_TRANSITIONS: dict[ProcessingJobStatus, frozenset[ProcessingJobStatus]] = {
    J.PENDING: frozenset({J.ANALYZING, J.FAILED}),
    J.ANALYZING: frozenset({J.EXTRACTING, J.FAILED}),
    J.EXTRACTING: frozenset({J.UPLOADING, J.FAILED}),
    J.UPLOADING: frozenset({J.COMPLETED, J.FAILED}),
    J.COMPLETED: frozenset(),
    J.FAILED: frozenset({J.PENDING}),
}

CLIP_TRANSITIONS: dict[ClipStatus, frozenset[ClipStatus]] = {
    C.PENDING: frozenset({C.PROCESSING, C.FAILED}),
    C.PROCESSING: frozenset({C.COMPLETED, C.FAILED}),
    C.COMPLETED: frozenset(),
    C.FAILED: frozenset(),
}

COMPOSED_VIDEO_TRANSITIONS: dict[ComposedVideoStatus, frozenset[ComposedVideoStatus]] = {
    CV.PENDING: frozenset({CV.PROCESSING, CV.FAILED}),
    CV.PROCESSING: frozenset({CV.COMPLETED, CV.FAILED}),
    CV.COMPLETED: frozenset({CV.PROCESSING}),
    CV.FAILED: frozenset({CV.PROCESSING}),
}

_JOB_ACTIVE = frozenset({J.ANALYZING, J.EXTRACTING, J.UPLOADING})
_JOB_FINISHED = frozenset({J.COMPLETED, J.FAILED})

TRANSITION_TABLES: dict[type, dict[Any, frozenset[Any]]] = {
    Video: VIDEO_TRANSITIONS,
    ProcessingJob: JOB_TRANSITIONS,
    Clip: CLIP_TRANSITIONS,
    ComposedVideo: COMPOSED_VIDEO_TRANSITIONS,
}

E = TypeVar("E", Video, ProcessingJob, Clip, ComposedVideo)


def _table_for(entity: Any) -> dict[Any, frozenset[Any]]:
    table = TRANSITION_TABLES.get(type(entity))
    if table is None:
        raise TypeError(f"No transition table for {type(entity).__name__}")
    return table


def allowed_targets(entity: Any) -> frozenset[Enum]:
    """Statuses reachable from the entity's current status."""
    return _table_for(entity)[entity.status]


def can_transition(entity: Any, target: Enum) -> bool:
    """Whether ``target`` is an edge from the entity's current status."""
    return target in allowed_targets(entity)


def transition(
    entity: E,
    target: Enum,
    error_message: str | None = None,
    now: datetime | None = None,
    **changes: Any,
) -> E:
    """
    Move an entity to ``target`` along its transition table.

    Args:
        entity: Video, ProcessingJob, Clip or ComposedVideo snapshot
        target: Target status (the entity's own status enum)
        error_message: Recorded when the target is ``failed``
        now: Timestamp to stamp; defaults to the current UTC time
        **changes: Extra fields applied in the same snapshot (e.g. ``file_url``)

    Returns:
        A new snapshot in the target status

    Raises:
        InvalidTransitionError: If the edge is not in the table
    """
    table = _table_for(entity)
    current = entity.status
    if target not in table[current]:
        raise InvalidTransitionError(type(entity).__name__, current.value, getattr(target, "value", str(target)))

    now = now or utcnow()
    failed = getattr(target, "value", None) == "failed"
    update: dict[str, Any] = {
        "status": target,
        "updated_at": now,
        "error_message": error_message if failed else None,
    }

    if isinstance(entity, Video):
        if target != V.TRANSCRIBING:
            update["transcription_phase"] = None
    elif isinstance(entity, ProcessingJob):
        if target in _JOB_ACTIVE and entity.started_at is None:
            update["started_at"] = now
        if target in _JOB_FINISHED:
            update["completed_at"] = now
        if target == J.PENDING:
            update["started_at"] = None
            update["completed_at"] = None

    update.update(changes)
    return entity.model_copy(update=update)


def reset_video_to(video: Video, target: VideoStatus, now: datetime | None = None, **changes: Any) -> Video:
    """
    Corrective reset of a video to a checkpoint.

    Only finished (or transcribed) videos can be reset, and only to
    ``transcribed`` or ``pending``.
    """
    allowed = VIDEO_RESETS.get(video.status, frozenset())
    if target not in allowed:
        raise InvalidTransitionError("Video", video.status.value, target.value)
    update: dict[str, Any] = {
        "status": target,
        "updated_at": now or utcnow(),
        "error_message": None,
        "progress_message": None,
        "transcription_phase": None,
    }
    update.update(changes)
    return video.model_copy(update=update)


def reset_composed_video(composed: ComposedVideo, now: datetime | None = None) -> ComposedVideo:
    """Return a finished composition to ``pending`` for regeneration."""
    if composed.status not in (CV.COMPLETED, CV.FAILED):
        raise InvalidTransitionError("ComposedVideo", composed.status.value, "pending")
    return composed.model_copy(
        update={
            "status": CV.PENDING,
            "file_url": None,
            "duration_seconds": None,
            "error_message": None,
            "updated_at": now or utcnow(),
        }
    )


def confirm_subtitle(subtitle: ClipSubtitle, now: datetime | None = None) -> ClipSubtitle:
    """Mark a draft subtitle as confirmed."""
    if subtitle.status == ClipSubtitleStatus.CONFIRMED:
        raise ConflictError(ErrorCode.ALREADY_CONFIRMED, "Subtitle is already confirmed")
    return subtitle.model_copy(update={"status": ClipSubtitleStatus.CONFIRMED, "updated_at": now or utcnow()})


def edit_subtitle(
    subtitle: ClipSubtitle,
    segments: list[SubtitleSegment],
    *,
    max_chars: int = 16,
    max_lines: int = 2,
    now: datetime | None = None,
) -> ClipSubtitle:
    """Replace the segments; any edit reverts the subtitle to draft."""
    validate_subtitle_segments(segments, max_chars, max_lines)
    return subtitle.model_copy(
        update={
            "segments": segments,
            "status": ClipSubtitleStatus.DRAFT,
            "updated_at": now or utcnow(),
        }
    )
