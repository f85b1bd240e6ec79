"""Tiered blob caching for source media.

Source videos live in a slow, quota-limited origin store. Before any
transcoding step the pipeline asks :class:`BlobCacheManager` for a local
copy, which tries, in order:

1. the video's cache reference, if it expires later than now + buffer
2. an existence check against the cache store (handles external purges)
3. re-caching from origin, persisting the new reference immediately
4. streaming directly from origin when the cache store refuses the write
5. materializing the cache blob locally, falling back to (4) on failure

Only failure of the direct tier is raised to the caller.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Callable

from pydantic import BaseModel

from ..config import PipelineConfig
from ..errors import ErrorCode, ExternalFailureError, NotFoundError
from ..models import CacheReference, Video, utcnow
from .gateways import CacheStore, OriginStore
from .store import JsonRepository

logger = logging.getLogger(__name__)

DEFAULT_BUFFER = timedelta(minutes=5)


def is_cache_valid(
    ref: CacheReference | None,
    now: datetime | None = None,
    buffer: timedelta = DEFAULT_BUFFER,
) -> bool:
    """True iff ``ref`` exists and ``now + buffer < ref.expires_at``."""
    if ref is None:
        return False
    now = now or utcnow()
    return now + buffer < ref.expires_at


def format_bytes(num: float) -> str:
    """Human-readable byte count (e.g. ``256MB``, ``1.2GB``)."""
    if num < 1024:
        return f"{int(num)}B"
    for unit in ("KB", "MB", "GB"):
        num /= 1024
        if num < 1024 or unit == "GB":
            return f"{num:.1f}{unit}" if num < 10 else f"{num:.0f}{unit}"
    return f"{num:.0f}GB"


class ProgressThrottler:
    """
    Decides when a transfer progress update is worth persisting.

    An update is emitted when ``interval`` seconds have passed since the
    last one, or when the percentage advanced by at least ``step`` points.
    """

    def __init__(
        self,
        total_bytes: int | None,
        interval: float = 5.0,
        step: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = total_bytes or None
        self.interval = interval
        self.step = step
        self.clock = clock
        self._last_time = clock()
        self._last_percent = 0.0

    def update(self, transferred: int) -> str | None:
        """Return a progress message if one should be published now."""
        now = self.clock()
        percent = transferred / self.total_bytes * 100 if self.total_bytes else None

        due = now - self._last_time >= self.interval
        if percent is not None and percent - self._last_percent >= self.step:
            due = True
        if not due:
            return None

        self._last_time = now
        if percent is None:
            return f"Downloading... {format_bytes(transferred)}"
        self._last_percent = percent
        return f"Downloading... {format_bytes(transferred)} / {format_bytes(self.total_bytes)} ({percent:.0f}%)"


class SourceTier(str, Enum):
    """Which tier produced the local copy."""

    CACHED = "cached"
    RECACHED = "recached"
    DIRECT = "direct"


class PreparedSource(BaseModel):
    """Local copy of a source video, plus the latest video snapshot."""

    local_path: Path
    video: Video
    tier: SourceTier


class CacheResult(BaseModel):
    """Outcome of a standalone cache operation."""

    video_id: str
    uri: str
    expires_at: datetime
    cached: bool


def _source_suffix(video: Video) -> str:
    if video.title:
        suffix = PurePosixPath(video.title).suffix
        if suffix and len(suffix) <= 5:
            return suffix.lower()
    return ".mp4"


async def write_stream(stream: AsyncIterator[bytes], dest: Path) -> int:
    """Write an async byte stream to ``dest``; returns bytes written."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(dest, "wb") as f:
        async for chunk in stream:
            f.write(chunk)
            written += len(chunk)
    return written


class BlobCacheManager:
    """Keeps source media reachable while minimizing origin transfers."""

    def __init__(
        self,
        origin: OriginStore,
        cache: CacheStore,
        videos: JsonRepository[Video],
        config: PipelineConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.origin = origin
        self.cache = cache
        self.videos = videos
        self.config = config
        self.clock = clock

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.config.cache_buffer_minutes)

    def cache_key(self, video: Video) -> str:
        return f"videos/{video.id}/source{_source_suffix(video)}"

    async def verified_cache_ref(self, video: Video) -> tuple[CacheReference | None, Video]:
        """
        Tiers 1 and 2: return the cache reference if it can be trusted.

        A reference that passes the expiry check but is missing from the
        cache store is cleared on the persisted video.
        """
        ref = video.cache_ref
        if not is_cache_valid(ref, self.clock(), self.buffer):
            if ref is not None:
                logger.info(f"Cache for video {video.id} expired or expiring soon ({ref.expires_at})")
            return None, video

        try:
            present = await self.cache.exists(ref.uri)
        except Exception as e:
            logger.warning(f"Cache existence check failed for {ref.uri}: {e}")
            present = False

        if present:
            return ref, video

        logger.warning(f"Cached blob {ref.uri} for video {video.id} is gone, invalidating")
        video = self.videos.save(video.model_copy(update={"cache_ref": None, "updated_at": self.clock()}))
        return None, video

    async def _recache(self, video: Video, report_progress: bool = False) -> Video:
        """Tier 3: stream origin into the cache store and persist the new reference."""
        stream = self.origin.read_stream(video.source_file_id)
        if report_progress:
            stream = self._with_progress(video, stream)

        ref = await self.cache.put(
            stream,
            self.cache_key(video),
            content_type="video/mp4",
            ttl_days=self.config.cache_ttl_days,
        )
        logger.info(f"Cached video {video.id} at {ref.uri} (expires {ref.expires_at})")
        current = self.videos.get(video.id) or video
        return self.videos.save(
            current.model_copy(update={"cache_ref": ref, "progress_message": None, "updated_at": self.clock()})
        )

    async def _with_progress(self, video: Video, stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        throttler = ProgressThrottler(video.file_size_bytes)
        transferred = 0
        async for chunk in stream:
            transferred += len(chunk)
            message = throttler.update(transferred)
            if message:
                current = self.videos.get(video.id) or video
                self.videos.save(current.model_copy(update={"progress_message": message, "updated_at": self.clock()}))
            yield chunk

    async def _download_direct(self, video: Video, dest: Path) -> Path:
        """Tier 4: stream origin to a local file, bypassing the cache store."""
        try:
            size = await write_stream(self.origin.read_stream(video.source_file_id), dest)
        except Exception as e:
            raise ExternalFailureError(
                ErrorCode.SOURCE_UNAVAILABLE,
                f"Failed to download source for video {video.id}: {e}",
            ) from e
        logger.info(f"Downloaded video {video.id} directly from origin ({format_bytes(size)})")
        return dest

    async def prepare_source(self, video: Video, workdir: Path) -> PreparedSource:
        """
        Make the video's source bytes available as a local file.

        Args:
            video: Current video snapshot
            workdir: Operation workspace that will own the local file

        Returns:
            PreparedSource with the local path, the latest video snapshot
            (with any new cache reference) and the tier that served it

        Raises:
            ExternalFailureError: SOURCE_UNAVAILABLE when even the direct
                download from origin fails
        """
        dest = Path(workdir) / f"source{_source_suffix(video)}"

        ref, video = await self.verified_cache_ref(video)
        tier = SourceTier.CACHED

        if ref is None:
            try:
                video = await self._recache(video)
                ref = video.cache_ref
                tier = SourceTier.RECACHED
            except Exception as e:
                logger.warning(f"Re-caching video {video.id} failed, falling back to direct download: {e}")
                await self._download_direct(video, dest)
                return PreparedSource(local_path=dest, video=video, tier=SourceTier.DIRECT)

        try:
            await write_stream(self.cache.read_stream(ref.uri), dest)
        except Exception as e:
            logger.warning(f"Reading cached blob {ref.uri} failed, falling back to direct download: {e}")
            await self._download_direct(video, dest)
            return PreparedSource(local_path=dest, video=video, tier=SourceTier.DIRECT)

        logger.info(f"Prepared source for video {video.id} from cache ({tier.value})")
        return PreparedSource(local_path=dest, video=video, tier=tier)

    async def cache_video(self, video_id: str) -> CacheResult:
        """
        Ensure a video has a trusted cache reference.

        Publishes throttled download progress on the video record.

        Raises:
            NotFoundError: If the video does not exist
            ExternalFailureError: CACHE_FAILURE if the transfer fails
        """
        video = self.videos.get(video_id)
        if video is None:
            raise NotFoundError(ErrorCode.VIDEO_NOT_FOUND, f"Video not found: {video_id}")

        ref, video = await self.verified_cache_ref(video)
        if ref is not None:
            logger.info(f"Video {video_id} already cached at {ref.uri}")
            return CacheResult(video_id=video_id, uri=ref.uri, expires_at=ref.expires_at, cached=True)

        try:
            video = await self._recache(video, report_progress=True)
        except Exception as e:
            raise ExternalFailureError(ErrorCode.CACHE_FAILURE, f"Failed to cache video {video_id}: {e}") from e

        return CacheResult(
            video_id=video_id,
            uri=video.cache_ref.uri,
            expires_at=video.cache_ref.expires_at,
            cached=False,
        )

    async def issue_read_url(self, ref: CacheReference | str, minutes: int | None = None) -> str:
        """Issue a time-boxed read URL for a cached blob."""
        uri = ref.uri if isinstance(ref, CacheReference) else ref
        return await self.cache.issue_read_url(uri, minutes or self.config.read_url_minutes)
