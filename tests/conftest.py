"""Pytest configuration with in-process fakes for every collaborator."""

from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from video_clipper.config.settings import DEFAULT_PIPELINE_CONFIG, PipelineConfig
from video_clipper.core.cache import BlobCacheManager
from video_clipper.core.gateways import (
    ComposeResult,
    FileMetadata,
    TranscriptionResult,
    UploadedFile,
)
from video_clipper.core.refinement import DictionaryEntry, ProperNounDictionary
from video_clipper.core.store import Repositories
from video_clipper.models import CacheReference, TranscriptionSegment

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def event_loop_policy():
    """Use default event loop policy."""
    return asyncio.DefaultEventLoopPolicy()


def pytest_configure(config):
    """Configure pytest-asyncio markers."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


async def _read_source(source) -> bytes:
    if isinstance(source, bytes):
        return source
    if isinstance(source, Path):
        return source.read_bytes()
    chunks = []
    async for chunk in source:
        chunks.append(chunk)
    return b"".join(chunks)


class FakeOrigin:
    """Origin store keeping files in memory."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.metadata: dict[str, FileMetadata] = {}
        self.writes: list[dict] = []
        self.folders: dict[str, str] = {}
        self.read_count = 0
        self.fail_reads = False
        self.fail_writes_named: set[str] = set()

    def add_file(self, file_id: str, data: bytes, name: str = "source.mp4", parent_folder: str = "parent-1"):
        self.files[file_id] = data
        self.metadata[file_id] = FileMetadata(name=name, size=len(data), parent_folder=parent_folder, mime_type="video/mp4")

    def extract_file_id(self, url: str) -> str | None:
        match = re.match(r"^origin://([a-zA-Z0-9_-]+)$", url)
        return match.group(1) if match else None

    async def get_metadata(self, file_id: str) -> FileMetadata:
        if file_id not in self.metadata:
            raise FileNotFoundError(file_id)
        return self.metadata[file_id]

    async def read_stream(self, file_id: str):
        self.read_count += 1
        if self.fail_reads:
            raise ConnectionError("origin unavailable")
        data = self.files[file_id]
        for i in range(0, len(data), 4):
            yield data[i:i + 4]

    async def write(self, source, name, parent_folder, mime_type="application/octet-stream") -> UploadedFile:
        if name in self.fail_writes_named:
            raise ConnectionError(f"upload rejected: {name}")
        data = await _read_source(source)
        file_id = uuid.uuid4().hex[:8]
        self.writes.append({"id": file_id, "name": name, "parent": parent_folder, "data": data, "mime_type": mime_type})
        return UploadedFile(id=file_id, public_link=f"https://origin.example/{file_id}")

    async def find_or_create_folder(self, name: str, parent: str | None) -> str:
        key = f"{parent}/{name}"
        self.folders.setdefault(key, f"folder-{len(self.folders) + 1}")
        return self.folders[key]


class FakeCache:
    """Cache store keeping blobs in memory."""

    def __init__(self, clock=lambda: NOW, ttl_days: float = 7):
        self.blobs: dict[str, bytes] = {}
        self.clock = clock
        self.ttl_days = ttl_days
        self.put_count = 0
        self.fail_puts = False
        self.fail_reads = False

    async def put(self, source, key, content_type="application/octet-stream", ttl_days=None) -> CacheReference:
        if self.fail_puts:
            raise ConnectionError("cache write rejected")
        self.put_count += 1
        uri = f"cache://{key}"
        self.blobs[uri] = await _read_source(source)
        return CacheReference(uri=uri, expires_at=self.clock() + timedelta(days=ttl_days or self.ttl_days))

    async def exists(self, uri: str) -> bool:
        return uri in self.blobs

    async def read_stream(self, uri: str):
        if self.fail_reads:
            raise ConnectionError("cache read failed")
        if uri not in self.blobs:
            raise FileNotFoundError(uri)
        yield self.blobs[uri]

    async def issue_read_url(self, uri: str, minutes: int = 60) -> str:
        return f"https://cache.example/{uri.removeprefix('cache://')}?minutes={minutes}"


class FakeMedia:
    """Media gateway that writes placeholder files."""

    def __init__(self, duration: float = 120.0):
        self.duration = duration
        self.subranges: list[tuple[float, float]] = []
        self.audio_inputs: list[str] = []
        self.composed: list[dict] = []
        self.fail_starts: set[float] = set()

    async def extract_audio(self, input_uri, output_path, fmt="flac"):
        self.audio_inputs.append(input_uri)
        Path(output_path).write_bytes(b"audio")
        return Path(output_path)

    async def extract_subrange(self, input_path, output_path, start, end):
        if start in self.fail_starts:
            raise RuntimeError(f"transcode failed at {start}")
        self.subranges.append((start, end))
        Path(output_path).write_bytes(Path(input_path).read_bytes()[:4] or b"clip")
        return Path(output_path)

    async def probe_duration(self, path):
        return self.duration

    async def compose_scenes(self, scenes, output_path, width, height, bgm_path=None):
        self.composed.append({"scenes": scenes, "width": width, "height": height, "bgm_path": bgm_path})
        Path(output_path).write_bytes(b"composed")
        total_ms = sum(s.duration_ms for s in scenes)
        return ComposeResult(output_path=Path(output_path), duration_seconds=total_ms / 1000)


class FakeGenerator:
    """Text generator returning queued responses and recording prompts."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class FakeSpeech:
    """Speech-to-text returning a fixed result."""

    def __init__(self, segments=None, duration: float = 120.0, error: Exception | None = None):
        self.segments = segments if segments is not None else make_segments(10)
        self.duration = duration
        self.error = error
        self.calls: list[str] = []

    async def transcribe_long(self, audio_uri, on_progress=None):
        self.calls.append(audio_uri)
        if on_progress is not None:
            await on_progress(-5)
            await on_progress(100)
        if self.error:
            raise self.error
        return TranscriptionResult(
            full_text="".join(s.text for s in self.segments),
            segments=self.segments,
            language_code="ja-JP",
            duration_seconds=self.duration,
        )


def make_segments(n: int, seconds_each: float = 1.0) -> list[TranscriptionSegment]:
    """Build ``n`` consecutive one-word segments."""
    return [
        TranscriptionSegment(
            text=f"w{i}",
            start_time_seconds=i * seconds_each,
            end_time_seconds=(i + 1) * seconds_each,
            confidence=0.9,
        )
        for i in range(n)
    ]


@pytest.fixture
def pipeline_dirs(tmp_path, monkeypatch):
    """Point every configured directory at a temporary location."""
    dirs = {
        "config_dir": tmp_path / "config",
        "data_dir": tmp_path / "data",
        "work_dir": tmp_path / "work",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("VIDEO_CLIPPER_CONFIG_DIR", str(dirs["config_dir"]))
    monkeypatch.setenv("VIDEO_CLIPPER_DATA_DIR", str(dirs["data_dir"]))
    monkeypatch.setenv("VIDEO_CLIPPER_WORK_DIR", str(dirs["work_dir"]))
    return dirs


@pytest.fixture
def config():
    """Pipeline configuration with default values."""
    return PipelineConfig(**DEFAULT_PIPELINE_CONFIG)


@pytest.fixture
def repos(tmp_path):
    """JSON repositories under a temporary directory."""
    return Repositories(tmp_path / "records")


@pytest.fixture
def work_root(tmp_path):
    """Root directory for operation workspaces."""
    path = tmp_path / "work"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def origin():
    """In-memory origin store with one source file."""
    store = FakeOrigin()
    store.add_file("src1", b"0123456789abcdef", name="talk.mp4")
    return store


@pytest.fixture
def cache():
    """In-memory cache store."""
    return FakeCache()


@pytest.fixture
def media():
    """Placeholder media gateway."""
    return FakeMedia()


@pytest.fixture
def cache_manager(origin, cache, repos, config):
    """Blob cache manager over the fakes, with a fixed clock."""
    return BlobCacheManager(origin, cache, repos.videos, config, clock=lambda: NOW)


@pytest.fixture
def dictionary():
    """Small proper-noun dictionary."""
    return ProperNounDictionary(
        version="1.0.0",
        entries=[DictionaryEntry(correct="国会", wrong_patterns=["こっかい"])],
    )


@pytest.fixture
def segment_factory():
    """Factory for consecutive transcription segments."""
    return make_segments


@pytest.fixture
def generator_factory():
    """Factory for text generators with queued responses."""
    return FakeGenerator


@pytest.fixture
def speech_factory():
    """Factory for fake speech-to-text clients."""
    return FakeSpeech
