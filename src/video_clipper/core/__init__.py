"""Core functionality for video-clipper."""

from .cache import BlobCacheManager, CacheResult, PreparedSource, SourceTier, is_cache_valid
from .compose import Composer, CompositionResult
from .extraction import ClipExtractor, ExtractionResult
from .isolation import SKIPPED, BatchResult, UnitOutcome, UnitStatus, run_isolated
from .lifecycle import (
    can_transition,
    confirm_subtitle,
    edit_subtitle,
    reset_composed_video,
    reset_video_to,
    transition,
)
from .refinement import RefinementEngine, load_dictionary, plan_chunks, refine_transcript
from .scheduler import CleanupScheduler
from .store import JsonRepository, Repositories
from .subtitles import SubtitleService
from .transcript import ResetStep, TranscriptPipeline
from .workspace import cleanup_stale_workspaces, operation_workspace

__all__ = [
    # Blob cache
    "BlobCacheManager",
    "CacheResult",
    "PreparedSource",
    "SourceTier",
    "is_cache_valid",
    # Refinement
    "RefinementEngine",
    "load_dictionary",
    "plan_chunks",
    "refine_transcript",
    # Lifecycle
    "can_transition",
    "confirm_subtitle",
    "edit_subtitle",
    "reset_composed_video",
    "reset_video_to",
    "transition",
    # Orchestrators
    "ClipExtractor",
    "Composer",
    "CompositionResult",
    "ExtractionResult",
    "ResetStep",
    "SubtitleService",
    "TranscriptPipeline",
    # Isolation
    "SKIPPED",
    "BatchResult",
    "UnitOutcome",
    "UnitStatus",
    "run_isolated",
    # Storage
    "JsonRepository",
    "Repositories",
    # Cleanup
    "CleanupScheduler",
    "cleanup_stale_workspaces",
    "operation_workspace",
]
