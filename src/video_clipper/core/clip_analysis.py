"""Prompt building and response parsing for AI clip selection."""

from __future__ import annotations

from pydantic import BaseModel

from ..errors import ErrorCode, ParseFailureError
from ..models import RefinedSentence
from .model_output import extract_json


class ClipCandidate(BaseModel):
    """A clip proposed by the model; not yet validated against duration bounds."""

    title: str
    start_time_seconds: float
    end_time_seconds: float
    transcript: str = ""
    reason: str = ""


def _format_sentences(sentences: list[RefinedSentence]) -> str:
    return "\n".join(
        f"[{s.start_time_seconds:g}s - {s.end_time_seconds:g}s] {s.text}" for s in sentences
    )


def build_clip_analysis_prompt(
    sentences: list[RefinedSentence],
    video_title: str | None,
    duration_seconds: float,
    clip_instructions: str,
    multiple_clips: bool = False,
) -> str:
    """Build the clip-selection prompt over a refined transcript."""
    if multiple_clips:
        count_rule = "- Extract as many clips as the instructions call for"
    else:
        count_rule = (
            "- Extract exactly one clip. Choose a single range that covers everything "
            "the instructions ask for"
        )

    return f"""You are a video editing assistant.
Analyze the transcript below and pick the ranges to cut out according to the user's instructions.

## Video
- Title: {video_title or "unknown"}
- Duration: {duration_seconds:g} seconds

## Transcript (timestamps in seconds)
{_format_sentences(sentences)}

## Instructions
{clip_instructions}

## Output format
Return JSON in this shape. Take startTimeSeconds/endTimeSeconds from the transcript timestamps.

```json
{{
  "clips": [
    {{
      "title": "Short clip title",
      "startTimeSeconds": 0.08,
      "endTimeSeconds": 3.12,
      "transcript": "What is said inside the clip",
      "reason": "Why this range was chosen"
    }}
  ]
}}
```

## Notes
- The video is {duration_seconds:g} seconds long; keep every range within 0-{duration_seconds:g}
- Do not cut in the middle of a statement; use the timestamps to find natural boundaries
- Quote the transcript field verbatim from the transcript
- Output JSON only
{count_rule}"""


def parse_clip_analysis_response(response: str) -> list[ClipCandidate]:
    """
    Parse the model's clip list.

    Raises:
        ParseFailureError: If the payload is missing or a clip lacks
            its title or numeric timestamps
    """
    data = extract_json(response)
    if data is None:
        raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, "No JSON object in clip analysis response", response)

    clips = data.get("clips")
    if not isinstance(clips, list):
        raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, "Clip analysis response has no 'clips' array", response)

    candidates = []
    for position, clip in enumerate(clips):
        if not isinstance(clip, dict):
            raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, f"Clip {position} is not an object", response)
        title = clip.get("title")
        start = clip.get("startTimeSeconds", clip.get("start_time_seconds"))
        end = clip.get("endTimeSeconds", clip.get("end_time_seconds"))
        if not title or isinstance(start, bool) or isinstance(end, bool) \
                or not isinstance(start, (int, float)) or not isinstance(end, (int, float)):
            raise ParseFailureError(
                ErrorCode.MALFORMED_MODEL_OUTPUT,
                f"Clip {position} is missing title or numeric timestamps",
                response,
            )
        candidates.append(
            ClipCandidate(
                title=str(title),
                start_time_seconds=float(start),
                end_time_seconds=float(end),
                transcript=str(clip.get("transcript") or ""),
                reason=str(clip.get("reason") or ""),
            )
        )
    return candidates
