"""Helpers for reading structured payloads out of text-model responses."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

JSON_PATTERNS = [
    r"```json\s*([\s\S]*?)\s*```",
    r"```\s*([\s\S]*?)\s*```",
    r"\{[\s\S]*\}",
]


def extract_json(text: str) -> dict[str, Any] | None:
    """
    Extract a JSON object from a model response.

    Handles bare JSON, JSON wrapped in markdown code fences, and JSON
    surrounded by prose.
    """
    if not text:
        return None

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    for pattern in JSON_PATTERNS:
        for match in re.findall(pattern, text):
            clean = match.strip()
            if not clean.startswith("{"):
                continue
            try:
                parsed = json.loads(clean)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    logger.debug("No JSON object found in model response")
    return None


def format_timestamp(seconds: float) -> str:
    """Format seconds as ``MM:SS.ss``."""
    minutes = int(seconds // 60)
    secs = seconds - minutes * 60
    return f"{minutes:02d}:{secs:05.2f}"
