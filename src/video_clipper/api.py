"""REST API routes for video-clipper."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, Field

from .core.isolation import BatchResult
from .core.refinement import refine_transcript
from .core.transcript import ResetStep
from .errors import ErrorCode, PipelineError, ValidationError
from .models import Scene, SubtitleSegment
from .services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


# Pydantic models for request bodies
class ImportFileRequest(BaseModel):
    """Request body for copying a local file into the origin store."""
    path: str
    parent_folder: str | None = None


class SubmitVideoRequest(BaseModel):
    """Request body for registering a source video."""
    source_url: str
    description: str | None = None


class ClipByTimeRequest(BaseModel):
    """Request body for extracting a clip by explicit time range."""
    video_id: str
    start_time_seconds: float
    end_time_seconds: float
    title: str | None = None


class AiClipRequest(BaseModel):
    """Request body for AI-driven clip extraction."""
    video_id: str
    clip_instructions: str
    multiple_clips: bool = True


class UpdateSubtitleRequest(BaseModel):
    """Request body for editing subtitle segments."""
    segments: list[SubtitleSegment]


class ComposeRequest(BaseModel):
    """Request body for composing a script's scenes."""
    project_id: str
    script_id: str
    scenes: list[Scene] = Field(default_factory=list)
    bgm_key: str | None = None


def batch_summary(batch: BatchResult) -> dict[str, Any]:
    """Serializable view of an isolated batch run."""
    return {
        "succeeded": batch.succeeded,
        "failed": batch.failed,
        "skipped": batch.skipped,
        "errors": [o.error for o in batch.outcomes if o.error],
    }


async def _create_transcript_task(services: Services, video_id: str, refine: bool) -> None:
    try:
        await services.transcripts.run_transcript(video_id, refine=refine)
    except PipelineError as e:
        # Failure is already persisted on the video; progress polling reports it.
        logger.error(f"Transcript creation failed for {video_id}: {e.message}")


@router.get("/health")
async def health():
    """Health check and service info."""
    return {
        "name": "video-clipper",
        "version": "0.1.0",
        "status": "healthy",
        "endpoints": {
            "api": "/api",
            "docs": "/docs",
        },
    }


# Origin


@router.post("/origin/import")
async def api_import_file(request: ImportFileRequest, services: ServicesDep):
    """Copy a local video into the origin store and return its share URL."""
    path = Path(request.path).expanduser()
    if not path.is_file():
        raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Not a file: {request.path}")
    uploaded = await services.origin.import_file(path, request.parent_folder)
    return {"success": True, "file_id": uploaded.id, "source_url": f"origin://{uploaded.id}"}


# Videos


@router.post("/videos")
async def api_submit_video(request: SubmitVideoRequest, services: ServicesDep):
    """Register a source video from its share URL."""
    video = await services.transcripts.submit_video(request.source_url, request.description)
    return {"success": True, "video": video.model_dump(mode="json")}


@router.get("/videos")
async def api_list_videos(services: ServicesDep):
    """List all registered videos."""
    return {"success": True, "videos": [v.model_dump(mode="json") for v in services.repos.videos.list()]}


@router.post("/videos/{video_id}/transcript")
async def api_create_transcript(
    video_id: str,
    services: ServicesDep,
    background_tasks: BackgroundTasks,
    refine: Annotated[bool, Query(description="Refine the transcript after transcription")] = True,
):
    """
    Start transcription of a video in the background.

    Poll ``GET /videos/{video_id}/progress`` for the current phase.
    """
    services.transcripts.start_transcript(video_id)
    progress = services.transcripts.get_progress(video_id)
    background_tasks.add_task(_create_transcript_task, services, video_id, refine)
    return {"success": True, "started": True, **progress}


@router.get("/videos/{video_id}/transcript")
async def api_get_transcript(video_id: str, services: ServicesDep):
    """Get the raw and refined transcription of a video."""
    services.transcripts.get_progress(video_id)
    transcription = services.repos.transcriptions.find_one(video_id=video_id)
    refined = None
    if transcription:
        refined = services.repos.refined_transcriptions.find_one(transcription_id=transcription.id)
    return {
        "success": True,
        "transcription": transcription.model_dump(mode="json") if transcription else None,
        "refined": refined.model_dump(mode="json") if refined else None,
    }


@router.post("/videos/{video_id}/refine")
async def api_refine_transcript(video_id: str, services: ServicesDep):
    """Re-run chunked refinement on an existing transcription."""
    refined = await refine_transcript(video_id, services.repos, services.engine, services.dictionary)
    return {"success": True, "refined": refined.model_dump(mode="json")}


@router.post("/videos/{video_id}/cache")
async def api_cache_video(video_id: str, services: ServicesDep):
    """Ensure the video's source media is in the blob cache."""
    result = await services.cache_manager.cache_video(video_id)
    return {"success": True, **result.model_dump(mode="json")}


@router.post("/videos/{video_id}/reset")
async def api_reset_video(
    video_id: str,
    services: ServicesDep,
    step: Annotated[ResetStep, Query(description="How far back to reset")] = ResetStep.ALL,
):
    """Reset a video so a pipeline step can be re-run."""
    video = services.transcripts.reset_video(video_id, step)
    return {"success": True, "video": video.model_dump(mode="json")}


@router.get("/videos/{video_id}/progress")
async def api_progress(video_id: str, services: ServicesDep):
    """Get the current status and transcription phase of a video."""
    return {"success": True, **services.transcripts.get_progress(video_id)}


# Clips


@router.post("/clips/by-time")
async def api_clip_by_time(request: ClipByTimeRequest, services: ServicesDep):
    """Extract one clip for an explicit time range."""
    clip = await services.extractor.extract_by_time(
        request.video_id,
        request.start_time_seconds,
        request.end_time_seconds,
        request.title,
    )
    return {"success": True, "clip": clip.model_dump(mode="json")}


@router.post("/clips/ai")
async def api_clip_ai(request: AiClipRequest, services: ServicesDep):
    """Let the text model pick clips and extract each one."""
    result = await services.extractor.extract_with_ai(
        request.video_id,
        request.clip_instructions,
        request.multiple_clips,
    )
    return {
        "success": True,
        "job": result.job.model_dump(mode="json"),
        "clips": [c.model_dump(mode="json") for c in result.clips],
        "batch": batch_summary(result.batch),
    }


@router.get("/clips")
async def api_list_clips(
    services: ServicesDep,
    video_id: Annotated[str | None, Query(description="Filter by source video")] = None,
):
    """List clips, optionally for one video."""
    clips = services.repos.clips.find_by(video_id=video_id) if video_id else services.repos.clips.list()
    return {"success": True, "clips": [c.model_dump(mode="json") for c in clips]}


# Subtitles


@router.get("/clips/{clip_id}/subtitles")
async def api_get_subtitles(clip_id: str, services: ServicesDep):
    """Get the subtitle of a clip."""
    subtitle = services.subtitles.get_subtitle(clip_id)
    return {"success": True, "subtitle": subtitle.model_dump(mode="json")}


@router.post("/clips/{clip_id}/subtitles")
async def api_generate_subtitles(clip_id: str, services: ServicesDep):
    """Generate draft subtitles for a clip from its refined transcript."""
    subtitle = await services.subtitles.generate(clip_id)
    return {"success": True, "subtitle": subtitle.model_dump(mode="json")}


@router.put("/clips/{clip_id}/subtitles")
async def api_update_subtitles(clip_id: str, request: UpdateSubtitleRequest, services: ServicesDep):
    """Replace subtitle segments; the subtitle returns to draft."""
    subtitle = services.subtitles.update(clip_id, request.segments)
    return {"success": True, "subtitle": subtitle.model_dump(mode="json")}


@router.post("/clips/{clip_id}/subtitles/confirm")
async def api_confirm_subtitles(clip_id: str, services: ServicesDep):
    """Confirm a draft subtitle."""
    subtitle = services.subtitles.confirm(clip_id)
    return {"success": True, "subtitle": subtitle.model_dump(mode="json")}


# Composition


@router.post("/compose")
async def api_compose(request: ComposeRequest, services: ServicesDep):
    """Compose a script's scenes into one video."""
    result = await services.composer.compose(
        request.project_id,
        request.script_id,
        request.scenes,
        request.bgm_key,
    )
    return {
        "success": True,
        "composed_video": result.composed.model_dump(mode="json"),
        "batch": batch_summary(result.batch),
    }


@router.post("/compose/{script_id}/reset")
async def api_reset_compose(script_id: str, services: ServicesDep):
    """Reset a completed or failed composition so it can be re-run."""
    composed = services.composer.reset(script_id)
    return {"success": True, "composed_video": composed.model_dump(mode="json")}
