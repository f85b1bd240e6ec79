"""Text-generation client for OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import logging

import httpx

from ..errors import ErrorCode, ExternalFailureError

logger = logging.getLogger(__name__)


class HttpTextGenerator:
    """
    Sends a single-message chat completion and returns the reply text.

    Works with OpenRouter and any other endpoint speaking the OpenAI
    ``/chat/completions`` format.
    """

    def __init__(
        self,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 300,
        temperature: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.model = model
        self.temperature = temperature
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        if not api_key:
            logger.warning("No text model API key configured; requests may be rejected")
        self.client = client or httpx.AsyncClient(headers=headers, timeout=timeout)

    async def generate(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ExternalFailureError(ErrorCode.TEXT_MODEL_FAILURE, f"Text model request failed: {e}") from e
        except ValueError as e:
            raise ExternalFailureError(ErrorCode.TEXT_MODEL_FAILURE, f"Text model returned invalid JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalFailureError(ErrorCode.TEXT_MODEL_FAILURE, f"Unexpected text model response: {data}") from e
        if not content:
            raise ExternalFailureError(ErrorCode.TEXT_MODEL_FAILURE, "Text model returned an empty reply")
        return content

    async def aclose(self) -> None:
        await self.client.aclose()
