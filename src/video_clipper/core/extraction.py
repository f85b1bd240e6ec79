"""Clip extraction orchestrators.

Two entry points share the same per-clip steps (cut, upload, mark
completed):

- ``extract_by_time``: one clip from an explicit time range
- ``extract_with_ai``: a text model picks the ranges, and every clip is run
  through the isolation wrapper so one bad clip does not sink the batch
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from ..config import PipelineConfig
from ..errors import ErrorCode, NotFoundError, ValidationError
from ..models import (
    Clip,
    ClipStatus,
    ProcessingJob,
    ProcessingJobStatus,
    RefinedSentence,
    Transcription,
    Video,
    VideoStatus,
    validate_clip_duration,
)
from .cache import BlobCacheManager
from .clip_analysis import ClipCandidate, build_clip_analysis_prompt, parse_clip_analysis_response
from .gateways import MediaGateway, OriginStore, TextGenerator
from .isolation import BatchResult, UnitOutcome, UnitStatus, run_isolated
from .lifecycle import can_transition, transition
from .store import Repositories
from .workspace import operation_workspace

logger = logging.getLogger(__name__)

ELLIPSIS = "..."


def overlapping_sentences(sentences: list[RefinedSentence], start: float, end: float) -> list[RefinedSentence]:
    """Sentences that overlap ``[start, end]`` at all."""
    return [s for s in sentences if s.end_time_seconds > start and s.start_time_seconds < end]


def truncate_title(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, marking the cut with an ellipsis."""
    text = text.strip()
    if len(text) <= max_length:
        return text
    return text[:max_length] + ELLIPSIS


def clip_file_name(clip: Clip) -> str:
    """Origin-store file name for a clip."""
    base = re.sub(r'[\\/:*?"<>|\s]+', "_", clip.title or "clip").strip("_") or "clip"
    return f"{base}_{clip.start_time_seconds:.0f}-{clip.end_time_seconds:.0f}.mp4"


class ExtractionResult(BaseModel):
    """Outcome of an AI multi-clip extraction."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    job: ProcessingJob
    clips: list[Clip]
    batch: BatchResult


class ClipExtractor:
    """Runs clip extraction against the configured collaborators."""

    def __init__(
        self,
        repos: Repositories,
        cache_manager: BlobCacheManager,
        origin: OriginStore,
        media: MediaGateway,
        generator: TextGenerator,
        config: PipelineConfig,
        work_root: Path | None = None,
    ):
        self.repos = repos
        self.cache_manager = cache_manager
        self.origin = origin
        self.media = media
        self.generator = generator
        self.config = config
        self.work_root = work_root

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_video(self, video_id: str) -> Video:
        video = self.repos.videos.get(video_id)
        if video is None:
            raise NotFoundError(ErrorCode.VIDEO_NOT_FOUND, f"Video not found: {video_id}")
        return video

    def _get_transcription(self, video_id: str) -> Transcription:
        transcription = self.repos.transcriptions.find_one(video_id=video_id)
        if transcription is None:
            raise ValidationError(
                ErrorCode.TRANSCRIPTION_NOT_FOUND,
                f"Video {video_id} has no transcription; transcribe it first",
            )
        return transcription

    def _latest(self, video: Video) -> Video:
        return self.repos.videos.get(video.id) or video

    def _save_video(self, video: Video, target: VideoStatus, error_message: str | None = None) -> Video:
        return self.repos.videos.save(transition(self._latest(video), target, error_message))

    def _revert_video(self, video: Video) -> None:
        """Return an extracting video to its last stable checkpoint."""
        latest = self._latest(video)
        if latest.status == VideoStatus.EXTRACTING:
            self.repos.videos.save(transition(latest, VideoStatus.TRANSCRIBED))
            logger.info(f"Video {video.id} reverted to transcribed")

    def _fail_video(self, video: Video, message: str) -> None:
        latest = self._latest(video)
        if can_transition(latest, VideoStatus.FAILED):
            self.repos.videos.save(transition(latest, VideoStatus.FAILED, message))
        else:
            logger.warning(f"Video {video.id} left in {latest.status.value}; cannot mark failed")

    async def _shorts_folder(self, video: Video) -> str:
        metadata = await self.origin.get_metadata(video.source_file_id)
        return await self.origin.find_or_create_folder(self.config.shorts_folder_name, metadata.parent_folder)

    # ------------------------------------------------------------------
    # Per-clip steps
    # ------------------------------------------------------------------

    async def _process_clip(self, clip: Clip, source_path: Path, workdir: Path, folder_id: str, video_duration: float) -> Clip:
        """Cut, upload and complete one clip. Persists each status change."""
        clip = self.repos.clips.save(transition(clip, ClipStatus.PROCESSING))

        output_path = workdir / f"clip_{clip.id}.mp4"
        end = clip.end_time_seconds + self.config.clip_end_padding_seconds
        if video_duration > 0:
            end = min(end, video_duration)
        await self.media.extract_subrange(source_path, output_path, clip.start_time_seconds, end)

        uploaded = await self.origin.write(output_path, clip_file_name(clip), folder_id, "video/mp4")
        clip = self.repos.clips.save(
            transition(clip, ClipStatus.COMPLETED, file_id=uploaded.id, file_url=uploaded.public_link)
        )
        output_path.unlink(missing_ok=True)
        logger.info(f"Clip {clip.id} uploaded: {uploaded.public_link}")
        return clip

    async def _mark_clip_failed(self, clip: Clip, error: Exception) -> None:
        latest = self.repos.clips.get(clip.id) or clip
        if can_transition(latest, ClipStatus.FAILED):
            self.repos.clips.save(transition(latest, ClipStatus.FAILED, str(error) or type(error).__name__))

    # ------------------------------------------------------------------
    # Extract by time
    # ------------------------------------------------------------------

    async def extract_by_time(
        self,
        video_id: str,
        start_time_seconds: float,
        end_time_seconds: float,
        title: str | None = None,
    ) -> Clip:
        """
        Extract one clip for an explicit time range.

        Raises:
            ValidationError: Bad range, duration out of bounds, no
                transcription, or end beyond the video duration
            NotFoundError: If the video does not exist
            InvalidTransitionError: If the video is not ready for extraction
        """
        validate_clip_duration(
            start_time_seconds, end_time_seconds, self.config.min_clip_seconds, self.config.max_clip_seconds
        )
        video = self._get_video(video_id)
        transcription = self._get_transcription(video_id)

        if end_time_seconds > transcription.duration_seconds:
            raise ValidationError(
                ErrorCode.EXCEEDS_VIDEO_DURATION,
                f"End time {end_time_seconds}s exceeds video duration {transcription.duration_seconds}s",
            )

        excerpt = None
        refined = self.repos.refined_transcriptions.find_one(transcription_id=transcription.id)
        if refined is not None:
            overlapping = overlapping_sentences(refined.sentences, start_time_seconds, end_time_seconds)
            if overlapping:
                excerpt = "".join(s.text for s in overlapping)
        if title is None and excerpt:
            title = truncate_title(excerpt, self.config.title_max_length)

        checkpoint = video.status
        video = self._save_video(video, VideoStatus.EXTRACTING)
        logger.info(f"Extracting clip {start_time_seconds}-{end_time_seconds}s from video {video_id}")

        clip: Clip | None = None
        try:
            async with operation_workspace("clip", self.work_root) as workdir:
                prepared = await self.cache_manager.prepare_source(video, workdir)
                video = prepared.video

                clip = self.repos.clips.save(
                    Clip.create(
                        video_id,
                        start_time_seconds,
                        end_time_seconds,
                        min_seconds=self.config.min_clip_seconds,
                        max_seconds=self.config.max_clip_seconds,
                        title=title,
                        transcript=excerpt,
                    )
                )
                folder_id = await self._shorts_folder(video)
                clip = await self._process_clip(
                    clip, prepared.local_path, workdir, folder_id, transcription.duration_seconds
                )
        except Exception as e:
            logger.error(f"Clip extraction for video {video_id} failed: {e}", exc_info=True)
            if clip is not None:
                await self._mark_clip_failed(clip, e)
            self._revert_video(video)
            raise

        latest = self._latest(video)
        if checkpoint == VideoStatus.COMPLETED:
            self.repos.videos.save(transition(latest, VideoStatus.COMPLETED))
        else:
            self.repos.videos.save(transition(latest, VideoStatus.TRANSCRIBED))
        return clip

    # ------------------------------------------------------------------
    # AI multi-clip extraction
    # ------------------------------------------------------------------

    def _build_clips(self, video: Video, candidates: list[ClipCandidate], duration: float) -> tuple[list[Clip], list[UnitOutcome]]:
        clips = []
        skipped = []
        for candidate in candidates:
            try:
                if duration > 0 and candidate.end_time_seconds > duration:
                    raise ValidationError(
                        ErrorCode.EXCEEDS_VIDEO_DURATION,
                        f"End time {candidate.end_time_seconds}s exceeds video duration {duration}s",
                    )
                clip = Clip.create(
                    video.id,
                    candidate.start_time_seconds,
                    candidate.end_time_seconds,
                    min_seconds=self.config.min_clip_seconds,
                    max_seconds=self.config.max_clip_seconds,
                    title=truncate_title(candidate.title, self.config.title_max_length),
                    transcript=candidate.transcript or None,
                )
            except ValidationError as e:
                logger.warning(f"Skipping clip candidate '{candidate.title}': {e.message}")
                skipped.append(UnitOutcome(item=candidate, status=UnitStatus.SKIPPED, error=e.message))
                continue
            clips.append(self.repos.clips.save(clip))
        return clips, skipped

    async def _upload_job_metadata(self, job: ProcessingJob, video: Video, clips: list[Clip], folder_id: str) -> None:
        payload = {
            "job_id": job.id,
            "video_id": video.id,
            "video_title": video.title,
            "clip_instructions": job.clip_instructions,
            "clips": [
                {
                    "id": clip.id,
                    "title": clip.title,
                    "start_time_seconds": clip.start_time_seconds,
                    "end_time_seconds": clip.end_time_seconds,
                    "status": clip.status.value,
                    "file_url": clip.file_url,
                    "error_message": clip.error_message,
                }
                for clip in clips
            ],
        }
        body = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
        await self.origin.write(body, f"{job.id}_metadata.json", folder_id, "application/json")

    async def extract_with_ai(
        self,
        video_id: str,
        clip_instructions: str,
        multiple_clips: bool = True,
    ) -> ExtractionResult:
        """
        Let the text model choose clips, then extract each one in isolation.

        Per-clip failures are recorded on the clip and never fail the job.
        A failure of any other step marks the job and the video failed and
        is re-raised.
        """
        if not clip_instructions or not clip_instructions.strip():
            raise ValidationError(ErrorCode.EMPTY_INSTRUCTIONS, "Clip instructions are required")

        video = self._get_video(video_id)
        transcription = self._get_transcription(video_id)
        refined = self.repos.refined_transcriptions.find_one(transcription_id=transcription.id)
        if refined is None:
            raise ValidationError(
                ErrorCode.REFINED_TRANSCRIPTION_NOT_FOUND,
                f"Video {video_id} has no refined transcription; refine it first",
            )

        job = self.repos.jobs.save(ProcessingJob.create(video_id, clip_instructions))
        job = self.repos.jobs.save(transition(job, ProcessingJobStatus.ANALYZING))
        logger.info(f"Job {job.id}: analyzing video {video_id}")

        try:
            prompt = build_clip_analysis_prompt(
                refined.sentences,
                video.title,
                transcription.duration_seconds,
                job.clip_instructions,
                multiple_clips,
            )
            response = await self.generator.generate(prompt)
            job = self.repos.jobs.save(job.model_copy(update={"ai_response": response}))
            candidates = parse_clip_analysis_response(response)
            logger.info(f"Job {job.id}: model proposed {len(candidates)} clips")

            job = self.repos.jobs.save(transition(job, ProcessingJobStatus.EXTRACTING))
            video = self._save_video(video, VideoStatus.EXTRACTING)

            async with operation_workspace("ai-clips", self.work_root) as workdir:
                prepared = await self.cache_manager.prepare_source(video, workdir)
                video = prepared.video

                clips, skipped = self._build_clips(video, candidates, transcription.duration_seconds)
                folder_id = await self._shorts_folder(video)

                async def process(clip: Clip) -> Clip:
                    return await self._process_clip(
                        clip, prepared.local_path, workdir, folder_id, transcription.duration_seconds
                    )

                batch = await run_isolated(clips, process, on_failure=self._mark_clip_failed, label="clip")
                batch.skipped += len(skipped)
                batch.outcomes.extend(skipped)

            job = self.repos.jobs.save(transition(job, ProcessingJobStatus.UPLOADING))
            final_clips = [self.repos.clips.get(c.id) or c for c in clips]
            await self._upload_job_metadata(job, video, final_clips, folder_id)

            job = self.repos.jobs.save(transition(job, ProcessingJobStatus.COMPLETED))
            self._save_video(video, VideoStatus.COMPLETED)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Job {job.id} failed: {message}", exc_info=True)
            latest_job = self.repos.jobs.get(job.id) or job
            if can_transition(latest_job, ProcessingJobStatus.FAILED):
                self.repos.jobs.save(transition(latest_job, ProcessingJobStatus.FAILED, message))
            self._fail_video(video, message)
            raise

        logger.info(
            f"Job {job.id} completed: {batch.succeeded} clips uploaded, "
            f"{batch.failed} failed, {batch.skipped} skipped"
        )
        return ExtractionResult(job=job, clips=final_clips, batch=batch)
