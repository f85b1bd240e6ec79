"""Speech-to-text client for OpenAI-compatible transcription APIs."""

from __future__ import annotations

import asyncio
import logging
import math
import time

import httpx

from ..core.gateways import CacheStore, ProgressCallback, TranscriptionResult
from ..errors import ErrorCode, ExternalFailureError
from ..models import TranscriptionSegment

logger = logging.getLogger(__name__)

PROGRESS_TICK_SECONDS = 5.0


class HttpSpeechToText:
    """
    Uploads cached audio to a ``/audio/transcriptions`` endpoint.

    The request is a single long call, so progress is reported as elapsed
    time (negative values) while it runs.
    """

    def __init__(
        self,
        url: str,
        cache: CacheStore,
        model: str = "whisper-1",
        api_key: str | None = None,
        language: str | None = "ja",
        timeout: float = 3600,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.cache = cache
        self.model = model
        self.language = language
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(headers=headers, timeout=timeout)

    async def _read_audio(self, audio_uri: str) -> bytes:
        chunks = []
        async for chunk in self.cache.read_stream(audio_uri):
            chunks.append(chunk)
        return b"".join(chunks)

    async def _tick(self, on_progress: ProgressCallback, started: float) -> None:
        while True:
            await asyncio.sleep(PROGRESS_TICK_SECONDS)
            try:
                await on_progress(-(time.monotonic() - started))
            except Exception as e:
                logger.debug(f"Progress callback failed: {e}")

    async def transcribe_long(
        self,
        audio_uri: str,
        on_progress: ProgressCallback | None = None,
    ) -> TranscriptionResult:
        audio = await self._read_audio(audio_uri)
        filename = audio_uri.rsplit("/", 1)[-1] or "audio.flac"
        data = {"model": self.model, "response_format": "verbose_json", "timestamp_granularities[]": "segment"}
        if self.language:
            data["language"] = self.language

        ticker = None
        if on_progress is not None:
            ticker = asyncio.create_task(self._tick(on_progress, time.monotonic()))
        try:
            response = await self.client.post(self.url, data=data, files={"file": (filename, audio)})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise ExternalFailureError(ErrorCode.TRANSCRIPTION_FAILED, f"Transcription request failed: {e}") from e
        except ValueError as e:
            raise ExternalFailureError(ErrorCode.TRANSCRIPTION_FAILED, f"Transcription returned invalid JSON: {e}") from e
        finally:
            if ticker is not None:
                ticker.cancel()

        if on_progress is not None:
            await on_progress(100.0)

        segments = []
        for item in payload.get("segments") or []:
            logprob = item.get("avg_logprob")
            segments.append(
                TranscriptionSegment(
                    text=str(item.get("text", "")).strip(),
                    start_time_seconds=float(item.get("start", 0.0)),
                    end_time_seconds=float(item.get("end", 0.0)),
                    confidence=math.exp(logprob) if logprob is not None else float(item.get("confidence", 0.0)),
                )
            )

        duration = payload.get("duration")
        if duration is None:
            duration = segments[-1].end_time_seconds if segments else 0.0
        logger.info(f"Transcribed {audio_uri}: {len(segments)} segments, {float(duration):.1f}s")
        return TranscriptionResult(
            full_text=payload.get("text", ""),
            segments=segments,
            language_code=payload.get("language") or self.language or "",
            duration_seconds=float(duration),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
