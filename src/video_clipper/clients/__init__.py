"""Reference adapters for the pipeline's collaborators."""

from .local_cache import LocalCacheStore
from .local_origin import LocalOriginStore
from .media import FfmpegMediaGateway
from .speech import HttpSpeechToText
from .text_generator import HttpTextGenerator

__all__ = [
    "FfmpegMediaGateway",
    "HttpSpeechToText",
    "HttpTextGenerator",
    "LocalCacheStore",
    "LocalOriginStore",
]
