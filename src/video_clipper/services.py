"""Explicit wiring of the pipeline's collaborators at process start."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .clients import (
    FfmpegMediaGateway,
    HttpSpeechToText,
    HttpTextGenerator,
    LocalCacheStore,
    LocalOriginStore,
)
from .config import (
    PipelineConfig,
    get_asset_dir,
    get_cache_dir,
    get_clients_config,
    get_origin_dir,
    get_pipeline_config,
    get_records_dir,
    get_work_dir,
    load_config,
)
from .core.cache import BlobCacheManager
from .core.compose import Composer
from .core.extraction import ClipExtractor
from .core.refinement import ProperNounDictionary, RefinementEngine, load_dictionary
from .core.store import Repositories
from .core.subtitles import SubtitleService
from .core.transcript import TranscriptPipeline

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API layer needs, built once per process."""

    config: PipelineConfig
    repos: Repositories
    origin: LocalOriginStore
    cache: LocalCacheStore
    media: FfmpegMediaGateway
    generator: HttpTextGenerator
    speech: HttpSpeechToText
    cache_manager: BlobCacheManager
    engine: RefinementEngine
    dictionary: ProperNounDictionary
    transcripts: TranscriptPipeline
    extractor: ClipExtractor
    subtitles: SubtitleService
    composer: Composer

    async def aclose(self) -> None:
        await self.generator.aclose()
        await self.speech.aclose()


def build_services(
    config: PipelineConfig | None = None,
    clients_config: dict[str, Any] | None = None,
) -> Services:
    """
    Build the service graph from configuration.

    Args:
        config: Pipeline parameters (default: read from config.json)
        clients_config: External client settings (default: read from config.json)
    """
    config = config or get_pipeline_config()
    clients_config = clients_config or get_clients_config()
    work_root = get_work_dir()

    repos = Repositories(get_records_dir())
    origin = LocalOriginStore(get_origin_dir())
    cache = LocalCacheStore(get_cache_dir(), default_ttl_days=config.cache_ttl_days)
    media = FfmpegMediaGateway(clients_config.get("ffmpeg_bin", "ffmpeg"))
    generator = HttpTextGenerator(
        url=clients_config["text_model_url"],
        model=clients_config["text_model_name"],
        api_key=clients_config.get("text_model_api_key"),
        timeout=clients_config["request_timeout"],
    )
    speech = HttpSpeechToText(
        url=clients_config["speech_url"],
        cache=cache,
        model=clients_config["speech_model_name"],
        api_key=clients_config.get("speech_api_key"),
        language=clients_config.get("language_code"),
    )

    cache_manager = BlobCacheManager(origin, cache, repos.videos, config)
    engine = RefinementEngine(generator, chunk_size=config.chunk_size, overlap=config.chunk_overlap)
    dictionary = load_dictionary(config.dictionary_path)
    logger.info(f"Loaded proper noun dictionary v{dictionary.version} ({len(dictionary.entries)} entries)")

    bgm_library = load_config().get("bgm_library", {})

    return Services(
        config=config,
        repos=repos,
        origin=origin,
        cache=cache,
        media=media,
        generator=generator,
        speech=speech,
        cache_manager=cache_manager,
        engine=engine,
        dictionary=dictionary,
        transcripts=TranscriptPipeline(
            repos,
            cache_manager,
            origin,
            cache,
            media,
            speech,
            config,
            engine=engine,
            dictionary=dictionary,
            work_root=work_root,
        ),
        extractor=ClipExtractor(repos, cache_manager, origin, media, generator, config, work_root=work_root),
        subtitles=SubtitleService(
            repos,
            generator,
            max_chars=config.subtitle_max_chars,
            max_lines=config.subtitle_max_lines,
        ),
        composer=Composer(
            repos,
            cache,
            media,
            config,
            bgm_library=bgm_library,
            asset_root=get_asset_dir(),
            work_root=work_root,
        ),
    )
