"""Error taxonomy for video-clipper.

Every failure that leaves the pipeline is a ``PipelineError`` carrying a
closed ``ErrorCode`` and a plain-text message. The ``kind`` attribute lets
callers (and the HTTP layer) branch without inspecting message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Broad error categories."""

    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    EXTERNAL_FAILURE = "external_failure"
    PARSE_FAILURE = "parse_failure"


class ErrorCode(str, Enum):
    """Closed set of error codes."""

    # Not found
    VIDEO_NOT_FOUND = "VIDEO_NOT_FOUND"
    CLIP_NOT_FOUND = "CLIP_NOT_FOUND"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    TRANSCRIPTION_NOT_FOUND = "TRANSCRIPTION_NOT_FOUND"
    REFINED_TRANSCRIPTION_NOT_FOUND = "REFINED_TRANSCRIPTION_NOT_FOUND"
    SUBTITLE_NOT_FOUND = "SUBTITLE_NOT_FOUND"
    COMPOSED_VIDEO_NOT_FOUND = "COMPOSED_VIDEO_NOT_FOUND"
    ASSET_NOT_FOUND = "ASSET_NOT_FOUND"

    # Validation
    INVALID_URL = "INVALID_URL"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"
    INVALID_DURATION = "INVALID_DURATION"
    EXCEEDS_VIDEO_DURATION = "EXCEEDS_VIDEO_DURATION"
    EMPTY_INSTRUCTIONS = "EMPTY_INSTRUCTIONS"
    EMPTY_SEGMENTS = "EMPTY_SEGMENTS"
    EMPTY_LINES = "EMPTY_LINES"
    TOO_MANY_LINES = "TOO_MANY_LINES"
    LINE_TOO_LONG = "LINE_TOO_LONG"
    INVALID_SEGMENT_ORDER = "INVALID_SEGMENT_ORDER"
    EMPTY_TEXT = "EMPTY_TEXT"
    EMPTY_SENTENCES = "EMPTY_SENTENCES"
    INVALID_DICTIONARY_VERSION = "INVALID_DICTIONARY_VERSION"
    INVALID_CHUNK_PARAMETERS = "INVALID_CHUNK_PARAMETERS"
    INVALID_RESET_STEP = "INVALID_RESET_STEP"
    SCENE_MISSING_VOICE = "SCENE_MISSING_VOICE"
    NO_SCENES = "NO_SCENES"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"

    # Conflict
    DUPLICATE_VIDEO = "DUPLICATE_VIDEO"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"

    # External
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    CACHE_FAILURE = "CACHE_FAILURE"
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    MEDIA_FAILURE = "MEDIA_FAILURE"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    TEXT_MODEL_FAILURE = "TEXT_MODEL_FAILURE"

    # Parse
    MALFORMED_MODEL_OUTPUT = "MALFORMED_MODEL_OUTPUT"


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.EXTERNAL_FAILURE

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Serialize for API responses."""
        return {"code": self.code.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}: {self.message})"


class NotFoundError(PipelineError):
    """Referenced entity is absent."""

    kind = ErrorKind.NOT_FOUND


class ValidationError(PipelineError):
    """Input is outside domain invariants."""

    kind = ErrorKind.VALIDATION


class ConflictError(PipelineError):
    """Operation would violate a uniqueness or state invariant."""

    kind = ErrorKind.CONFLICT


class InvalidTransitionError(ConflictError):
    """Requested status change is not an edge of the transition table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            ErrorCode.INVALID_STATE_TRANSITION,
            f"Cannot transition {entity} from '{current}' to '{target}'",
        )
        self.entity = entity
        self.current = current
        self.target = target


class ExternalFailureError(PipelineError):
    """A collaborator call (origin, cache, model, media tool) failed."""

    kind = ErrorKind.EXTERNAL_FAILURE


class ParseFailureError(ExternalFailureError):
    """Text-model output did not match the expected schema."""

    kind = ErrorKind.PARSE_FAILURE

    def __init__(self, code: ErrorCode, message: str, raw_text: str = ""):
        super().__init__(code, message)
        self.raw_text = raw_text


class RefinementParseError(ParseFailureError):
    """A refinement chunk returned unparseable output."""

    def __init__(self, chunk_index: int, reason: str, raw_text: str = ""):
        super().__init__(
            ErrorCode.MALFORMED_MODEL_OUTPUT,
            f"Chunk {chunk_index}: {reason}",
            raw_text,
        )
        self.chunk_index = chunk_index
