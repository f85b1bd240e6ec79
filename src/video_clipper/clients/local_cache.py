"""Cache store backed by a local directory.

Blobs are addressed as ``cache://<key>``. Every blob has a ``.meta.json``
sidecar with its expiry; expired blobs are removed by ``purge_expired``,
which the cleanup scheduler runs periodically.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from ..core.gateways import ByteSource
from ..errors import ErrorCode, NotFoundError
from ..models import CacheReference, utcnow
from .local_origin import READ_CHUNK_SIZE, write_source

logger = logging.getLogger(__name__)

SCHEME = "cache://"
META_SUFFIX = ".meta.json"


class LocalCacheStore:
    """Expiring blob store on the local file system."""

    def __init__(
        self,
        root: Path,
        default_ttl_days: float = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.root = Path(root)
        self.default_ttl_days = default_ttl_days
        self.clock = clock

    def _path(self, uri: str) -> Path:
        if not uri.startswith(SCHEME):
            raise NotFoundError(ErrorCode.CACHE_FAILURE, f"Not a cache URI: {uri}")
        key = uri[len(SCHEME):]
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise NotFoundError(ErrorCode.CACHE_FAILURE, f"Invalid cache key: {key}")
        return path

    async def put(
        self,
        source: ByteSource,
        key: str,
        content_type: str = "application/octet-stream",
        ttl_days: float | None = None,
    ) -> CacheReference:
        uri = f"{SCHEME}{key}"
        path = self._path(uri)
        size = await write_source(source, path)
        expires_at = self.clock() + timedelta(days=ttl_days or self.default_ttl_days)
        meta = {"content_type": content_type, "size": size, "expires_at": expires_at.isoformat()}
        with open(path.with_name(path.name + META_SUFFIX), "w") as f:
            json.dump(meta, f, indent=2)
        logger.debug(f"Cached {uri} ({size} bytes, expires {expires_at})")
        return CacheReference(uri=uri, expires_at=expires_at)

    async def exists(self, uri: str) -> bool:
        try:
            return self._path(uri).is_file()
        except NotFoundError:
            return False

    async def read_stream(self, uri: str) -> AsyncIterator[bytes]:
        path = self._path(uri)
        if not path.is_file():
            raise NotFoundError(ErrorCode.CACHE_FAILURE, f"Cached blob not found: {uri}")
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(READ_CHUNK_SIZE), b""):
                yield chunk

    async def issue_read_url(self, uri: str, minutes: int = 60) -> str:
        """Local blobs are readable directly; the path stands in for a signed URL."""
        path = self._path(uri)
        if not path.is_file():
            raise NotFoundError(ErrorCode.CACHE_FAILURE, f"Cached blob not found: {uri}")
        return str(path)

    def purge_expired(self) -> dict[str, Any]:
        """Delete blobs whose expiry has passed."""
        now = self.clock()
        deleted = 0
        freed = 0
        errors = []

        if not self.root.exists():
            return {"success": True, "deleted_count": 0, "freed_bytes": 0, "errors": []}

        for meta_file in self.root.rglob(f"*{META_SUFFIX}"):
            blob = meta_file.with_name(meta_file.name[: -len(META_SUFFIX)])
            try:
                with open(meta_file) as f:
                    expires_at = datetime.fromisoformat(json.load(f)["expires_at"])
                if expires_at > now:
                    continue
                if blob.exists():
                    freed += blob.stat().st_size
                    blob.unlink()
                meta_file.unlink()
                deleted += 1
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to purge {blob}: {e}")
                errors.append({"blob": str(blob), "error": str(e)})

        return {"success": True, "deleted_count": deleted, "freed_bytes": freed, "errors": errors}
