"""Origin store backed by a local directory.

Layout under ``root``::

    files/<file_id>/<name>       file contents
    files/<file_id>/meta.json    name, size, parent folder, mime type
    folders.json                 {"<parent>/<name>": folder_id}
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator

from ..core.gateways import ByteSource, FileMetadata, UploadedFile
from ..errors import ErrorCode, NotFoundError

logger = logging.getLogger(__name__)

SHARE_URL_PATTERNS = [
    re.compile(r"^https://drive\.google\.com/file/d/([a-zA-Z0-9_-]+)"),
    re.compile(r"^origin://([a-zA-Z0-9_-]+)$"),
]

READ_CHUNK_SIZE = 1024 * 1024


async def _iter_source(source: ByteSource) -> AsyncIterator[bytes]:
    if isinstance(source, bytes):
        yield source
    elif isinstance(source, Path):
        with open(source, "rb") as f:
            for chunk in iter(lambda: f.read(READ_CHUNK_SIZE), b""):
                yield chunk
    else:
        async for chunk in source:
            yield chunk


async def write_source(source: ByteSource, dest: Path) -> int:
    """Write bytes, a file or an async byte stream to ``dest``."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(source, Path):
        await asyncio.to_thread(shutil.copyfile, source, dest)
        return dest.stat().st_size
    written = 0
    with open(dest, "wb") as f:
        async for chunk in _iter_source(source):
            f.write(chunk)
            written += len(chunk)
    return written


class LocalOriginStore:
    """Origin store on the local file system."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.files_dir = self.root / "files"

    def extract_file_id(self, url: str) -> str | None:
        for pattern in SHARE_URL_PATTERNS:
            match = pattern.match(url)
            if match:
                return match.group(1)
        return None

    def _file_dir(self, file_id: str) -> Path:
        return self.files_dir / file_id

    def _load_meta(self, file_id: str) -> dict:
        meta_file = self._file_dir(file_id) / "meta.json"
        if not meta_file.exists():
            raise NotFoundError(ErrorCode.SOURCE_UNAVAILABLE, f"Origin file not found: {file_id}")
        with open(meta_file) as f:
            return json.load(f)

    async def get_metadata(self, file_id: str) -> FileMetadata:
        return FileMetadata(**self._load_meta(file_id))

    async def read_stream(self, file_id: str) -> AsyncIterator[bytes]:
        meta = self._load_meta(file_id)
        path = self._file_dir(file_id) / meta["name"]
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(READ_CHUNK_SIZE), b""):
                yield chunk

    async def write(
        self,
        source: ByteSource,
        name: str,
        parent_folder: str | None,
        mime_type: str = "application/octet-stream",
    ) -> UploadedFile:
        file_id = uuid.uuid4().hex
        file_dir = self._file_dir(file_id)
        size = await write_source(source, file_dir / name)
        meta = {"name": name, "size": size, "parent_folder": parent_folder, "mime_type": mime_type}
        with open(file_dir / "meta.json", "w") as f:
            json.dump(meta, f, indent=2, ensure_ascii=False)
        logger.debug(f"Wrote origin file {file_id} ({name}, {size} bytes)")
        return UploadedFile(id=file_id, public_link=(file_dir / name).resolve().as_uri())

    async def find_or_create_folder(self, name: str, parent: str | None) -> str:
        index_file = self.root / "folders.json"
        index: dict[str, str] = {}
        if index_file.exists():
            with open(index_file) as f:
                index = json.load(f)

        key = f"{parent or ''}/{name}"
        if key not in index:
            index[key] = uuid.uuid4().hex
            index_file.parent.mkdir(parents=True, exist_ok=True)
            with open(index_file, "w") as f:
                json.dump(index, f, indent=2, ensure_ascii=False)
            logger.info(f"Created origin folder '{name}' under {parent or 'root'}")
        return index[key]

    async def import_file(self, path: Path, parent_folder: str | None = None) -> UploadedFile:
        """Copy a local file into the store (used to seed source videos)."""
        path = Path(path)
        return await self.write(path, path.name, parent_folder, "video/mp4")
