"""Collaborator interfaces consumed by the pipeline.

The core only depends on these Protocols; concrete adapters live in
:mod:`video_clipper.clients` and are wired in :mod:`video_clipper.services`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, TypeVar, Union

from pydantic import BaseModel, Field

from ..models import CacheReference, Scene, TranscriptionSegment

ByteSource = Union[bytes, Path, AsyncIterator[bytes]]
ProgressCallback = Callable[[float], Awaitable[None]]

M = TypeVar("M", bound=BaseModel)


class FileMetadata(BaseModel):
    """Origin-store file metadata."""

    name: str
    size: int | None = None
    parent_folder: str | None = None
    mime_type: str | None = None


class UploadedFile(BaseModel):
    """Reference to a file written to the origin store."""

    id: str
    public_link: str


class TranscriptionResult(BaseModel):
    """Speech-to-text output."""

    full_text: str
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    language_code: str
    duration_seconds: float


class ComposeResult(BaseModel):
    """Rendered composition on local disk."""

    output_path: Path
    duration_seconds: float


class OriginStore(Protocol):
    """Slow, quota-limited store holding source videos and uploaded clips."""

    def extract_file_id(self, url: str) -> str | None:
        """Return the file id if ``url`` is a share URL of this store."""
        ...

    async def get_metadata(self, file_id: str) -> FileMetadata: ...

    def read_stream(self, file_id: str) -> AsyncIterator[bytes]: ...

    async def write(
        self,
        source: ByteSource,
        name: str,
        parent_folder: str | None,
        mime_type: str = "application/octet-stream",
    ) -> UploadedFile: ...

    async def find_or_create_folder(self, name: str, parent: str | None) -> str: ...


class CacheStore(Protocol):
    """Fast blob store with expiring entries."""

    async def put(
        self,
        source: ByteSource,
        key: str,
        content_type: str = "application/octet-stream",
        ttl_days: float | None = None,
    ) -> CacheReference: ...

    async def exists(self, uri: str) -> bool: ...

    def read_stream(self, uri: str) -> AsyncIterator[bytes]: ...

    async def issue_read_url(self, uri: str, minutes: int = 60) -> str: ...


class SpeechToText(Protocol):
    """Long-form transcription."""

    async def transcribe_long(
        self,
        audio_uri: str,
        on_progress: ProgressCallback | None = None,
    ) -> TranscriptionResult: ...


class TextGenerator(Protocol):
    """Prompt-in, text-out model."""

    async def generate(self, prompt: str) -> str: ...


class MediaGateway(Protocol):
    """Opaque media-processing capabilities."""

    async def extract_audio(self, input_uri: str, output_path: Path, fmt: str = "flac") -> Path: ...

    async def extract_subrange(self, input_path: Path, output_path: Path, start: float, end: float) -> Path: ...

    async def probe_duration(self, path: Path) -> float: ...

    async def compose_scenes(
        self,
        scenes: list[ResolvedScene],
        output_path: Path,
        width: int,
        height: int,
        bgm_path: Path | None = None,
    ) -> ComposeResult: ...


class SubtitleOverlay(BaseModel):
    """Subtitle image shown during part of a scene."""

    path: Path
    start_ms: int
    end_ms: int


class ResolvedScene(BaseModel):
    """A scene whose assets are available on local disk."""

    scene: Scene
    duration_ms: int
    visual_path: Path | None = None
    voice_path: Path | None = None
    subtitles: list[SubtitleOverlay] = Field(default_factory=list)


class Repository(Protocol[M]):
    """Persistence for one entity kind."""

    def get(self, entity_id: str) -> M | None: ...

    def save(self, entity: M) -> M: ...

    def delete(self, entity_id: str) -> bool: ...

    def find_by(self, **fields: Any) -> list[M]: ...

    def list(self) -> list[M]: ...
