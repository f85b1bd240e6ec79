"""Video submission and transcript pipeline.

``create_transcript`` walks a video through caching, audio extraction,
speech-to-text and (optionally) refinement, publishing the current phase
and a progress string on the video record after every step.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..config import PipelineConfig
from ..errors import ConflictError, ErrorCode, ExternalFailureError, NotFoundError, ValidationError
from ..models import Transcription, TranscriptionPhase, Video, VideoStatus
from .cache import BlobCacheManager
from .gateways import CacheStore, MediaGateway, OriginStore, SpeechToText
from .lifecycle import can_transition, reset_video_to, transition
from .refinement import ProperNounDictionary, RefinementEngine, refine_transcript
from .store import Repositories
from .workspace import operation_workspace

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL_SECONDS = 5.0


class ResetStep(str, Enum):
    """Checkpoint a video can be rolled back to."""

    REFINE = "refine"
    TRANSCRIBE = "transcribe"
    AUDIO = "audio"
    CACHE = "cache"
    ALL = "all"


def transcription_progress_message(value: float) -> str:
    """Negative values are elapsed seconds; others are percent complete."""
    if value < 0:
        return f"Transcribing... {int(-value)}s elapsed"
    return f"Transcribing... {value:.0f}%"


class TranscriptPipeline:
    """Submission, transcription and reset of videos."""

    def __init__(
        self,
        repos: Repositories,
        cache_manager: BlobCacheManager,
        origin: OriginStore,
        cache: CacheStore,
        media: MediaGateway,
        speech: SpeechToText,
        config: PipelineConfig,
        engine: RefinementEngine | None = None,
        dictionary: ProperNounDictionary | None = None,
        work_root: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repos = repos
        self.cache_manager = cache_manager
        self.origin = origin
        self.cache = cache
        self.media = media
        self.speech = speech
        self.config = config
        self.engine = engine
        self.dictionary = dictionary
        self.work_root = work_root
        self.clock = clock

    def _get_video(self, video_id: str) -> Video:
        video = self.repos.videos.get(video_id)
        if video is None:
            raise NotFoundError(ErrorCode.VIDEO_NOT_FOUND, f"Video not found: {video_id}")
        return video

    def _update(self, video_id: str, **fields: Any) -> Video:
        """Apply non-status changes to the latest stored snapshot."""
        video = self._get_video(video_id)
        return self.repos.videos.save(video.model_copy(update=fields))

    def _set_phase(self, video_id: str, phase: TranscriptionPhase, message: str, **fields: Any) -> Video:
        logger.info(f"Video {video_id}: {message}")
        return self._update(video_id, transcription_phase=phase, progress_message=message, **fields)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit_video(self, source_url: str, description: str | None = None) -> Video:
        """
        Register a source video by its share URL.

        Raises:
            ValidationError: INVALID_URL if the URL is not an origin share URL
            ConflictError: DUPLICATE_VIDEO if the file was already submitted
            ExternalFailureError: If the origin store cannot describe the file
        """
        file_id = self.origin.extract_file_id(source_url)
        if not file_id:
            raise ValidationError(ErrorCode.INVALID_URL, f"Not a valid source URL: {source_url}")

        if self.repos.videos.find_by(source_file_id=file_id):
            raise ConflictError(ErrorCode.DUPLICATE_VIDEO, f"Video already submitted: {file_id}")

        try:
            metadata = await self.origin.get_metadata(file_id)
        except Exception as e:
            raise ExternalFailureError(
                ErrorCode.SOURCE_UNAVAILABLE, f"Failed to read source metadata for {file_id}: {e}"
            ) from e

        video = Video(
            source_file_id=file_id,
            source_url=source_url,
            title=metadata.name,
            description=description,
            file_size_bytes=metadata.size,
        )
        logger.info(f"Submitted video {video.id} ({metadata.name})")
        return self.repos.videos.save(video)

    # ------------------------------------------------------------------
    # Transcribe
    # ------------------------------------------------------------------

    def _progress_callback(self, video_id: str):
        last = {"time": None, "message": None}

        async def on_progress(value: float) -> None:
            now = self.clock()
            message = transcription_progress_message(value)
            if message == last["message"]:
                return
            if last["time"] is not None and now - last["time"] < PROGRESS_INTERVAL_SECONDS:
                return
            last["time"] = now
            last["message"] = message
            self._update(video_id, progress_message=message)

        return on_progress

    def _replace_transcription(self, transcription: Transcription) -> Transcription:
        for previous in self.repos.transcriptions.find_by(video_id=transcription.video_id):
            for refined in self.repos.refined_transcriptions.find_by(transcription_id=previous.id):
                self.repos.refined_transcriptions.delete(refined.id)
            self.repos.transcriptions.delete(previous.id)
        return self.repos.transcriptions.save(transcription)

    async def create_transcript(self, video_id: str, refine: bool = True) -> Transcription:
        """
        Cache, extract audio, transcribe and optionally refine a video.

        Refinement failures are logged and do not fail the video. Any other
        failure marks the video failed with the error message and is
        re-raised.
        """
        self.start_transcript(video_id)
        return await self.run_transcript(video_id, refine=refine)

    def start_transcript(self, video_id: str) -> Video:
        """
        Move a video to transcribing and persist it.

        Raises:
            NotFoundError: unknown video
            InvalidTransitionError: the video cannot enter transcribing
        """
        video = self._get_video(video_id)
        return self.repos.videos.save(
            transition(
                video,
                VideoStatus.TRANSCRIBING,
                transcription_phase=TranscriptionPhase.DOWNLOADING,
                progress_message="Caching source video",
            )
        )

    async def run_transcript(self, video_id: str, refine: bool = True) -> Transcription:
        """Run the transcript steps for a video already started by ``start_transcript``."""
        try:
            cached = await self.cache_manager.cache_video(video_id)

            fmt = self.config.audio_format
            self._set_phase(video_id, TranscriptionPhase.EXTRACTING_AUDIO, "Extracting audio")
            read_url = await self.cache_manager.issue_read_url(cached.uri)

            async with operation_workspace("audio", self.work_root) as workdir:
                audio_path = await self.media.extract_audio(read_url, workdir / f"audio.{fmt}", fmt)
                audio_duration = await self.media.probe_duration(audio_path)
                audio_ref = await self.cache.put(
                    audio_path,
                    f"videos/{video_id}/audio.{fmt}",
                    content_type=f"audio/{fmt}",
                    ttl_days=self.config.cache_ttl_days,
                )

            self._set_phase(
                video_id,
                TranscriptionPhase.TRANSCRIBING,
                "Transcribing...",
                audio_cache_uri=audio_ref.uri,
                duration_seconds=audio_duration or None,
            )
            result = await self.speech.transcribe_long(audio_ref.uri, on_progress=self._progress_callback(video_id))

            transcription = self._replace_transcription(
                Transcription(
                    video_id=video_id,
                    full_text=result.full_text,
                    segments=result.segments,
                    language_code=result.language_code,
                    duration_seconds=result.duration_seconds or audio_duration,
                )
            )
            logger.info(f"Video {video_id}: transcribed {len(transcription.segments)} segments")

            if refine and self.engine is not None and self.dictionary is not None:
                self._set_phase(video_id, TranscriptionPhase.REFINING, "Refining transcript")
                try:
                    await refine_transcript(video_id, self.repos, self.engine, self.dictionary)
                except Exception as e:
                    logger.warning(f"Refinement of video {video_id} failed, keeping raw transcript: {e}")

            video = self._get_video(video_id)
            self.repos.videos.save(
                transition(
                    video,
                    VideoStatus.TRANSCRIBED,
                    progress_message=None,
                    duration_seconds=video.duration_seconds or transcription.duration_seconds,
                )
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Transcription of video {video_id} failed: {message}", exc_info=True)
            latest = self.repos.videos.get(video_id)
            if latest is not None and can_transition(latest, VideoStatus.FAILED):
                self.repos.videos.save(transition(latest, VideoStatus.FAILED, message, progress_message=None))
            raise

        return transcription

    # ------------------------------------------------------------------
    # Reset / progress
    # ------------------------------------------------------------------

    def reset_video(self, video_id: str, step: ResetStep | str) -> Video:
        """
        Roll a video back to an earlier checkpoint.

        - ``refine``: drop the refined transcript, back to transcribed
        - ``transcribe``: drop transcripts, back to pending (audio kept)
        - ``audio``: also forget the extracted audio
        - ``cache`` / ``all``: also forget the cached source
        """
        try:
            step = ResetStep(step)
        except ValueError:
            raise ValidationError(ErrorCode.INVALID_RESET_STEP, f"Unknown reset step: {step}") from None

        video = self._get_video(video_id)
        transcriptions = self.repos.transcriptions.find_by(video_id=video_id)

        if step == ResetStep.REFINE:
            video = reset_video_to(video, VideoStatus.TRANSCRIBED)
            for transcription in transcriptions:
                for refined in self.repos.refined_transcriptions.find_by(transcription_id=transcription.id):
                    self.repos.refined_transcriptions.delete(refined.id)
        else:
            changes: dict[str, Any] = {}
            if step in (ResetStep.AUDIO, ResetStep.CACHE, ResetStep.ALL):
                changes["audio_cache_uri"] = None
            if step in (ResetStep.CACHE, ResetStep.ALL):
                changes["cache_ref"] = None
            video = reset_video_to(video, VideoStatus.PENDING, **changes)
            for transcription in transcriptions:
                for refined in self.repos.refined_transcriptions.find_by(transcription_id=transcription.id):
                    self.repos.refined_transcriptions.delete(refined.id)
                self.repos.transcriptions.delete(transcription.id)

        logger.info(f"Video {video_id} reset ({step.value}) to {video.status.value}")
        return self.repos.videos.save(video)

    def get_progress(self, video_id: str) -> dict[str, Any]:
        """Pull-based progress snapshot for a video."""
        video = self._get_video(video_id)
        return {
            "video_id": video.id,
            "status": video.status.value,
            "transcription_phase": video.transcription_phase.value if video.transcription_phase else None,
            "progress_message": video.progress_message,
            "error_message": video.error_message,
        }
