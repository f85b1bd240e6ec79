"""Clip subtitle generation and review.

The model only splits text into display lines; timestamps are assigned
afterwards by interpolating character positions over the refined
sentences, so the model never has to echo times back.
"""

from __future__ import annotations

import logging
import re

from ..errors import ErrorCode, ExternalFailureError, NotFoundError, ParseFailureError, ValidationError
from ..models import Clip, ClipSubtitle, RefinedSentence, SubtitleSegment
from .gateways import TextGenerator
from .lifecycle import confirm_subtitle, edit_subtitle
from .model_output import extract_json, format_timestamp
from .store import Repositories

logger = logging.getLogger(__name__)

PUNCTUATION_RE = re.compile(r"[、。！？!?,.\s]")
MIN_SEGMENT_SECONDS = 0.1


def normalize_text(text: str) -> str:
    """Strip punctuation and whitespace for character counting."""
    return PUNCTUATION_RE.sub("", text)


def filter_sentences_for_clip(sentences: list[RefinedSentence], start: float, end: float) -> list[RefinedSentence]:
    """Sentences that overlap the clip range."""
    return [s for s in sentences if s.start_time_seconds < end and s.end_time_seconds > start]


def build_subtitle_prompt(sentences: list[RefinedSentence], max_chars: int = 16, max_lines: int = 2) -> str:
    """Ask the model to split the clip's sentences into subtitle blocks."""
    body = "\n".join(
        f"[{format_timestamp(s.start_time_seconds)}-{format_timestamp(s.end_time_seconds)}] {s.text}"
        for s in sentences
    )
    return f"""You edit video subtitles.
Split the text below into units suitable for on-screen subtitles.

## Input
{body}

## Output format
Return JSON only, in this shape:

```json
{{
  "segments": [
    {{ "lines": ["今日はとても"] }},
    {{ "lines": ["良い天気ですね", "皆さん"] }}
  ]
}}
```

## Rules
1. Each line has at most {max_chars} characters (strict)
2. Each segment has at most {max_lines} lines (strict)
3. Do not include punctuation (、。！？)
4. Split at sentence and meaning boundaries
5. Keep segments in chronological order
6. Include all of the input text; do not drop anything"""


def parse_subtitle_response(response: str) -> list[list[str]]:
    """
    Parse the model's segment list into lists of lines.

    Raises:
        ParseFailureError: If the payload is missing or malformed
    """
    data = extract_json(response)
    if data is None:
        raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, "No JSON object in subtitle response", response)

    segments = data.get("segments")
    if not isinstance(segments, list):
        raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, "Subtitle response has no 'segments' array", response)

    parsed = []
    for position, segment in enumerate(segments):
        lines = segment.get("lines") if isinstance(segment, dict) else None
        if not isinstance(lines, list) or not all(isinstance(line, str) for line in lines):
            raise ParseFailureError(
                ErrorCode.MALFORMED_MODEL_OUTPUT, f"Subtitle segment {position} has no lines", response
            )
        cleaned = [line.strip() for line in lines if line.strip()]
        if cleaned:
            parsed.append(cleaned)
    if not parsed:
        raise ParseFailureError(ErrorCode.MALFORMED_MODEL_OUTPUT, "Subtitle response has no text", response)
    return parsed


def split_long_lines(segments: list[list[str]], max_chars: int = 16, max_lines: int = 2) -> list[list[str]]:
    """
    Enforce the display limits on model output.

    Over-long lines are cut into ``max_chars`` pieces and the pieces are
    regrouped so no segment has more than ``max_lines`` lines.
    """
    result = []
    for lines in segments:
        pieces = []
        for line in lines:
            pieces.extend(line[i:i + max_chars] for i in range(0, len(line), max_chars))
        for i in range(0, len(pieces), max_lines):
            result.append(pieces[i:i + max_lines])
    return result


def _char_pos_to_time(
    char_pos: int,
    ranges: list[tuple[RefinedSentence, int, int]],
    clip_start: float,
) -> float:
    for sentence, char_start, char_end in ranges:
        if char_start <= char_pos <= char_end:
            length = char_end - char_start
            if length == 0:
                return sentence.start_time_seconds - clip_start
            ratio = (char_pos - char_start) / length
            duration = sentence.end_time_seconds - sentence.start_time_seconds
            return sentence.start_time_seconds + duration * ratio - clip_start
    return ranges[-1][0].end_time_seconds - clip_start


def assign_timestamps(
    segments: list[list[str]],
    sentences: list[RefinedSentence],
    clip_start: float,
    clip_duration: float | None = None,
) -> list[SubtitleSegment]:
    """
    Time each segment by where its characters fall in the sentences.

    Times are relative to the clip start, clamped to ``[0, clip_duration]``
    and at least ``MIN_SEGMENT_SECONDS`` long.
    """
    if not sentences:
        raise ValidationError(ErrorCode.EMPTY_SEGMENTS, "No sentences provided for timestamp assignment")

    ranges = []
    pos = 0
    for sentence in sentences:
        length = len(normalize_text(sentence.text))
        ranges.append((sentence, pos, pos + length))
        pos += length

    result = []
    current = 0
    previous_end = 0.0
    for index, lines in enumerate(segments):
        length = len(normalize_text("".join(lines)))
        start = max(0.0, _char_pos_to_time(current, ranges, clip_start), previous_end)
        end = max(0.0, _char_pos_to_time(current + length, ranges, clip_start))
        if clip_duration is not None:
            start = min(start, clip_duration)
            end = min(end, clip_duration)
        if end - start < MIN_SEGMENT_SECONDS:
            end = start + MIN_SEGMENT_SECONDS
        result.append(
            SubtitleSegment(
                index=index,
                lines=lines,
                start_time_seconds=round(start, 3),
                end_time_seconds=round(end, 3),
            )
        )
        previous_end = end
        current += length
    return result


class SubtitleService:
    """Generate, edit and confirm clip subtitles."""

    def __init__(self, repos: Repositories, generator: TextGenerator, max_chars: int = 16, max_lines: int = 2):
        self.repos = repos
        self.generator = generator
        self.max_chars = max_chars
        self.max_lines = max_lines

    def _get_clip(self, clip_id: str) -> Clip:
        clip = self.repos.clips.get(clip_id)
        if clip is None:
            raise NotFoundError(ErrorCode.CLIP_NOT_FOUND, f"Clip not found: {clip_id}")
        return clip

    def get_subtitle(self, clip_id: str) -> ClipSubtitle:
        self._get_clip(clip_id)
        subtitle = self.repos.subtitles.find_one(clip_id=clip_id)
        if subtitle is None:
            raise NotFoundError(ErrorCode.SUBTITLE_NOT_FOUND, f"No subtitles for clip {clip_id}")
        return subtitle

    async def generate(self, clip_id: str) -> ClipSubtitle:
        """
        Generate a draft subtitle for a clip, replacing any existing one.

        Raises:
            NotFoundError: Missing clip, transcription or refined transcription
            ValidationError: No refined sentence overlaps the clip
            ExternalFailureError: The text model call failed
            ParseFailureError: The model output was malformed
        """
        clip = self._get_clip(clip_id)
        transcription = self.repos.transcriptions.find_one(video_id=clip.video_id)
        if transcription is None:
            raise NotFoundError(ErrorCode.TRANSCRIPTION_NOT_FOUND, f"Transcription not found for video {clip.video_id}")
        refined = self.repos.refined_transcriptions.find_one(transcription_id=transcription.id)
        if refined is None:
            raise NotFoundError(
                ErrorCode.REFINED_TRANSCRIPTION_NOT_FOUND,
                f"Refined transcription not found for video {clip.video_id}",
            )

        sentences = filter_sentences_for_clip(refined.sentences, clip.start_time_seconds, clip.end_time_seconds)
        if not sentences:
            raise ValidationError(ErrorCode.EMPTY_SEGMENTS, "No sentences found for clip time range")

        logger.info(f"Generating subtitles for clip {clip_id} from {len(sentences)} sentences")
        try:
            response = await self.generator.generate(build_subtitle_prompt(sentences, self.max_chars, self.max_lines))
        except Exception as e:
            raise ExternalFailureError(ErrorCode.TEXT_MODEL_FAILURE, f"Subtitle generation failed: {e}") from e

        lines = split_long_lines(parse_subtitle_response(response), self.max_chars, self.max_lines)
        segments = assign_timestamps(lines, sentences, clip.start_time_seconds, clip.duration_seconds)
        subtitle = ClipSubtitle.create(clip_id, segments, max_chars=self.max_chars, max_lines=self.max_lines)

        for previous in self.repos.subtitles.find_by(clip_id=clip_id):
            self.repos.subtitles.delete(previous.id)
        logger.info(f"Saved {len(segments)} subtitle segments for clip {clip_id}")
        return self.repos.subtitles.save(subtitle)

    def update(self, clip_id: str, segments: list[SubtitleSegment]) -> ClipSubtitle:
        """Replace the segments of a clip's subtitle; reverts it to draft."""
        subtitle = self.get_subtitle(clip_id)
        return self.repos.subtitles.save(
            edit_subtitle(subtitle, segments, max_chars=self.max_chars, max_lines=self.max_lines)
        )

    def confirm(self, clip_id: str) -> ClipSubtitle:
        """Confirm a clip's subtitle."""
        subtitle = self.get_subtitle(clip_id)
        return self.repos.subtitles.save(confirm_subtitle(subtitle))
