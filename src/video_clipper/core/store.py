"""JSON-file entity repository."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from ..models import (
    Clip,
    ClipSubtitle,
    ComposedVideo,
    ProcessingJob,
    RefinedTranscription,
    Transcription,
    Video,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ENTITY_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


class JsonRepository(Generic[M]):
    """
    Stores one entity kind as ``<root>/<kind>/<id>.json``.

    Writes go to a temporary file first and are renamed into place so a
    crash never leaves a half-written record.
    """

    def __init__(self, root: Path, kind: str, model: type[M]):
        self.root = Path(root) / kind
        self.kind = kind
        self.model = model

    def _path(self, entity_id: str) -> Path | None:
        if not ENTITY_ID_PATTERN.fullmatch(entity_id):
            return None
        return self.root / f"{entity_id}.json"

    def get(self, entity_id: str) -> M | None:
        """Load an entity by id; malformed ids and unreadable records count as missing."""
        path = self._path(entity_id)
        if path is None or not path.exists():
            return None
        try:
            with open(path) as f:
                return self.model.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Unreadable {self.kind} record {path.name}: {e}")
            return None

    def save(self, entity: M) -> M:
        """Persist an entity snapshot, replacing any previous one."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(entity.id)
        if path is None:
            raise ValueError(f"Invalid {self.kind} id: {entity.id!r}")
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(entity.model_dump(mode="json"), f, indent=2, ensure_ascii=False, default=str)
        os.replace(tmp_path, path)
        return entity

    def delete(self, entity_id: str) -> bool:
        """Delete an entity; returns False when it did not exist."""
        path = self._path(entity_id)
        if path is None:
            return False
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def list(self) -> list[M]:
        """Load every entity of this kind, oldest first."""
        if not self.root.exists():
            return []
        entities = []
        for path in self.root.glob("*.json"):
            try:
                with open(path) as f:
                    entities.append(self.model.model_validate(json.load(f)))
            except (OSError, json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Skipping unreadable {self.kind} record {path.name}: {e}")
        entities.sort(key=lambda e: getattr(e, "created_at", 0))
        return entities

    def find_by(self, **fields: Any) -> list[M]:
        """Return entities whose attributes equal every given value."""
        return [
            entity
            for entity in self.list()
            if all(getattr(entity, name, None) == value for name, value in fields.items())
        ]

    def find_one(self, **fields: Any) -> M | None:
        """Return the first entity matching ``fields``, if any."""
        matches = self.find_by(**fields)
        return matches[0] if matches else None


class Repositories:
    """All entity repositories rooted at one directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.videos: JsonRepository[Video] = JsonRepository(self.root, "videos", Video)
        self.jobs: JsonRepository[ProcessingJob] = JsonRepository(self.root, "jobs", ProcessingJob)
        self.transcriptions: JsonRepository[Transcription] = JsonRepository(
            self.root, "transcriptions", Transcription
        )
        self.refined_transcriptions: JsonRepository[RefinedTranscription] = JsonRepository(
            self.root, "refined_transcriptions", RefinedTranscription
        )
        self.clips: JsonRepository[Clip] = JsonRepository(self.root, "clips", Clip)
        self.subtitles: JsonRepository[ClipSubtitle] = JsonRepository(self.root, "subtitles", ClipSubtitle)
        self.composed_videos: JsonRepository[ComposedVideo] = JsonRepository(
            self.root, "composed_videos", ComposedVideo
        )
