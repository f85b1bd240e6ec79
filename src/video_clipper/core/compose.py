"""Scene-based composition of shorts."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict

from ..config import PipelineConfig
from ..errors import ErrorCode, NotFoundError, ValidationError
from ..models import ComposedVideo, ComposedVideoStatus, Scene, VisualKind
from .cache import write_stream
from .gateways import CacheStore, MediaGateway, ResolvedScene, SubtitleOverlay
from .isolation import BatchResult, run_isolated
from .lifecycle import can_transition, reset_composed_video, transition
from .store import Repositories
from .workspace import operation_workspace

logger = logging.getLogger(__name__)


class CompositionResult(BaseModel):
    """A finished composition and the per-scene outcomes."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    composed: ComposedVideo
    batch: BatchResult


def even_subtitle_timing(paths: list[Path], duration_ms: int) -> list[SubtitleOverlay]:
    """Spread subtitle images evenly across a scene."""
    count = len(paths)
    return [
        SubtitleOverlay(
            path=path,
            start_ms=duration_ms * i // count,
            end_ms=duration_ms * (i + 1) // count,
        )
        for i, path in enumerate(paths)
    ]


class Composer:
    """Renders scene lists into composed videos."""

    def __init__(
        self,
        repos: Repositories,
        cache: CacheStore,
        media: MediaGateway,
        config: PipelineConfig,
        bgm_library: dict[str, str] | None = None,
        asset_root: Path | None = None,
        work_root: Path | None = None,
    ):
        self.repos = repos
        self.cache = cache
        self.media = media
        self.config = config
        self.bgm_library = bgm_library or {}
        self.asset_root = asset_root
        self.work_root = work_root

    async def _resolve_asset(self, uri: str, workdir: Path) -> Path:
        """
        Cache-store URIs are downloaded into the workspace. Local paths pass
        through only when they resolve inside the asset root.
        """
        if "://" not in uri:
            if self.asset_root is None:
                raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Local assets are not enabled: {uri}")
            root = self.asset_root.resolve()
            path = (root / uri).resolve()
            if not path.is_relative_to(root):
                raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Asset path outside the asset directory: {uri}")
            if not path.is_file():
                raise NotFoundError(ErrorCode.ASSET_NOT_FOUND, f"Asset not found: {uri}")
            return path
        if not uri.startswith("cache://"):
            raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Unsupported asset uri: {uri}")

        name = PurePosixPath(uri.split("://", 1)[1]).name or "asset"
        dest = workdir / "assets" / f"{uuid.uuid4().hex[:8]}_{name}"
        await write_stream(self.cache.read_stream(uri), dest)
        return dest

    async def _resolve_scene(self, scene: Scene, workdir: Path) -> ResolvedScene:
        voice_path = None
        if scene.voice_uri:
            voice_path = await self._resolve_asset(scene.voice_uri, workdir)
            duration_ms = scene.duration_ms or int(await self.media.probe_duration(voice_path) * 1000)
        elif scene.silence_duration_ms:
            duration_ms = scene.silence_duration_ms
        else:
            raise ValidationError(ErrorCode.SCENE_MISSING_VOICE, f"Scene {scene.id} has neither voice nor silence duration")

        visual_path = None
        if scene.visual.kind in (VisualKind.IMAGE, VisualKind.STOCK_VIDEO):
            if not scene.visual.uri:
                raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Scene {scene.id} visual has no uri")
            visual_path = await self._resolve_asset(scene.visual.uri, workdir)

        subtitle_paths = [await self._resolve_asset(uri, workdir) for uri in scene.subtitle_image_uris]

        return ResolvedScene(
            scene=scene,
            duration_ms=duration_ms,
            visual_path=visual_path,
            voice_path=voice_path,
            subtitles=even_subtitle_timing(subtitle_paths, duration_ms),
        )

    def _start(self, project_id: str, script_id: str, bgm_key: str | None) -> ComposedVideo:
        composed = self.repos.composed_videos.find_one(script_id=script_id)
        if composed is None:
            composed = ComposedVideo(project_id=project_id, script_id=script_id)
        return self.repos.composed_videos.save(transition(composed, ComposedVideoStatus.PROCESSING, bgm_key=bgm_key))

    async def compose(
        self,
        project_id: str,
        script_id: str,
        scenes: list[Scene],
        bgm_key: str | None = None,
    ) -> CompositionResult:
        """
        Compose a script's scenes into one video.

        Scenes whose assets cannot be resolved are skipped and reported in
        the batch result. No resolvable scene at all, or an unknown BGM
        key, fails the composition.
        """
        composed = self._start(project_id, script_id, bgm_key)
        logger.info(f"Composing {len(scenes)} scenes for script {script_id}")

        try:
            if not scenes:
                raise ValidationError(ErrorCode.NO_SCENES, f"Script {script_id} has no scenes")

            async with operation_workspace("compose", self.work_root) as workdir:
                bgm_path = None
                if bgm_key:
                    bgm_uri = self.bgm_library.get(bgm_key)
                    if bgm_uri is None:
                        raise NotFoundError(ErrorCode.ASSET_NOT_FOUND, f"Unknown BGM: {bgm_key}")
                    bgm_path = await self._resolve_asset(bgm_uri, workdir)

                async def resolve(scene: Scene) -> ResolvedScene:
                    return await self._resolve_scene(scene, workdir)

                batch = await run_isolated(sorted(scenes, key=lambda s: s.order), resolve, label="scene")
                resolved = batch.values()
                if not resolved:
                    raise ValidationError(ErrorCode.NO_SCENES, f"None of the {len(scenes)} scenes could be resolved")

                result = await self.media.compose_scenes(
                    resolved,
                    workdir / "composed.mp4",
                    self.config.canvas_width,
                    self.config.canvas_height,
                    bgm_path,
                )
                ref = await self.cache.put(
                    result.output_path,
                    f"composed/{script_id}/{composed.id}.mp4",
                    content_type="video/mp4",
                    ttl_days=self.config.cache_ttl_days,
                )

            composed = self.repos.composed_videos.save(
                transition(
                    composed,
                    ComposedVideoStatus.COMPLETED,
                    file_url=ref.uri,
                    duration_seconds=result.duration_seconds,
                )
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Composition for script {script_id} failed: {message}", exc_info=True)
            latest = self.repos.composed_videos.get(composed.id) or composed
            if can_transition(latest, ComposedVideoStatus.FAILED):
                self.repos.composed_videos.save(transition(latest, ComposedVideoStatus.FAILED, message))
            raise

        logger.info(f"Composed video {composed.id} ready ({result.duration_seconds:.1f}s)")
        return CompositionResult(composed=composed, batch=batch)

    def reset(self, script_id: str) -> ComposedVideo:
        """Return a finished composition to pending so it can be regenerated."""
        composed = self.repos.composed_videos.find_one(script_id=script_id)
        if composed is None:
            raise NotFoundError(ErrorCode.COMPOSED_VIDEO_NOT_FOUND, f"No composition for script {script_id}")
        return self.repos.composed_videos.save(reset_composed_video(composed))
