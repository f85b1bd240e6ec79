"""Chunked transcript refinement.

Raw speech-to-text output is a long list of word-level segments. A text
model turns it into corrected sentences, but only a bounded number of
segments fit in one prompt, so the list is cut into overlapping windows.
Each window carries absolute segment indices; the merge uses them to
reconcile the sentences that both neighbours produced for the overlap.
"""

from __future__ import annotations

import json
import logging
import math
from importlib import resources
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..errors import ErrorCode, NotFoundError, RefinementParseError, ValidationError
from ..models import RefinedSentence, RefinedTranscription, Transcription, TranscriptionSegment
from .gateways import TextGenerator
from .model_output import extract_json
from .store import Repositories

logger = logging.getLogger(__name__)

SENTENCE_ENDINGS = ("。", "！", "？", "!", "?", ".")
DEFAULT_SENTENCE_END = "。"
TAIL_SENTENCES = 3


# ---------------------------------------------------------------------------
# Dictionary
# ---------------------------------------------------------------------------


class DictionaryEntry(BaseModel):
    """A proper noun and the ways speech recognition gets it wrong."""

    correct: str
    category: str = ""
    description: str = ""
    wrong_patterns: list[str] = Field(default_factory=list)


class ProperNounDictionary(BaseModel):
    """Versioned correction dictionary."""

    version: str
    description: str = ""
    entries: list[DictionaryEntry] = Field(default_factory=list)


def load_dictionary(path: str | Path | None = None) -> ProperNounDictionary:
    """
    Load a proper-noun dictionary from JSON.

    Accepts both ``wrong_patterns`` and ``wrongPatterns`` keys.

    Args:
        path: Dictionary file; the packaged default is used when None
    """
    if path is None:
        raw = resources.files("video_clipper").joinpath("data/proper_nouns.json").read_text(encoding="utf-8")
    else:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    data = json.loads(raw)
    for entry in data.get("entries", []):
        if "wrongPatterns" in entry and "wrong_patterns" not in entry:
            entry["wrong_patterns"] = entry.pop("wrongPatterns")
    return ProperNounDictionary.model_validate(data)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


class ChunkDescriptor(BaseModel):
    """A window of absolute segment indices ``[start, end)``."""

    index: int
    total_chunks: int
    start: int
    end: int

    def __contains__(self, segment_index: int) -> bool:
        return self.start <= segment_index < self.end


def plan_chunks(n: int, chunk_size: int = 500, overlap: int = 100) -> list[ChunkDescriptor]:
    """
    Partition ``n`` segments into overlapping windows.

    Each window after the first starts ``overlap`` segments before the
    previous window's end. The total is computed up front so every
    descriptor can state "chunk i of N".

    Raises:
        ValidationError: If chunk_size <= 0, overlap < 0 or overlap >= chunk_size
    """
    if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
        raise ValidationError(
            ErrorCode.INVALID_CHUNK_PARAMETERS,
            f"Invalid chunking parameters: chunk_size={chunk_size}, overlap={overlap}",
        )
    if n <= 0:
        return []
    if n <= chunk_size:
        return [ChunkDescriptor(index=0, total_chunks=1, start=0, end=n)]

    step = chunk_size - overlap
    total = 1 + math.ceil((n - chunk_size) / step)

    chunks = []
    for i in range(total):
        start = i * step
        chunks.append(ChunkDescriptor(index=i, total_chunks=total, start=start, end=min(start + chunk_size, n)))
    return chunks


# ---------------------------------------------------------------------------
# Prompt / parse
# ---------------------------------------------------------------------------


def _dictionary_section(dictionary: ProperNounDictionary) -> str:
    lines = []
    for entry in dictionary.entries:
        wrong = "、".join(entry.wrong_patterns)
        note = f" ({entry.description})" if entry.description else ""
        lines.append(f"- {wrong} → {entry.correct}{note}")
    return "\n".join(lines) if lines else "(none)"


def build_chunk_prompt(
    segments: list[TranscriptionSegment],
    chunk: ChunkDescriptor,
    dictionary: ProperNounDictionary,
    previous_tail: str | None = None,
) -> str:
    """Build the refinement prompt for one chunk of the full segment list."""
    input_lines = "\n".join(
        f"[{i}] [{segments[i].start_time_seconds:.2f}-{segments[i].end_time_seconds:.2f}] {segments[i].text}"
        for i in range(chunk.start, chunk.end)
    )

    context = ""
    if previous_tail:
        context = (
            "\n## Preceding text (context only, do not output)\n"
            f"{previous_tail}\n"
        )

    return f"""You proofread Japanese speech recognition output.
This is chunk {chunk.index + 1} of {chunk.total_chunks} (segments {chunk.start}-{chunk.end - 1}).

## Proper noun dictionary
Always correct these to the listed spelling:
{_dictionary_section(dictionary)}

## Task
1. Merge the word-level segments into natural sentences
2. Correct proper nouns using the dictionary
3. Fix homophones using the surrounding context
4. Keep each sentence's start and end timestamps
5. Record the indices of the segments merged into each sentence
{context}
## Rules
- End every sentence with 。 (or ！/？)
- Use 、 only inside sentences
- Split overly long sentences at natural pauses
- Use the segment indices exactly as given; every index belongs to exactly one sentence

## Input format
[index] [startTime-endTime] text

## Input
{input_lines}

## Output format (JSON only, no commentary)
{{
  "sentences": [
    {{
      "text": "Sentence text。",
      "startTimeSeconds": 0.08,
      "endTimeSeconds": 0.80,
      "originalSegmentIndices": [0, 1, 2, 3]
    }}
  ]
}}"""


def _field(item: dict[str, Any], camel: str, snake: str) -> Any:
    return item[camel] if camel in item else item.get(snake)


def parse_sentences_response(text: str, chunk_index: int) -> list[RefinedSentence]:
    """
    Parse a chunk's model output into sentences.

    Raises:
        RefinementParseError: If the output is not the expected structure
    """
    data = extract_json(text)
    if data is None:
        raise RefinementParseError(chunk_index, "no JSON object in model output", text)

    sentences = data.get("sentences")
    if not isinstance(sentences, list):
        raise RefinementParseError(chunk_index, "missing 'sentences' array", text)

    parsed = []
    for position, item in enumerate(sentences):
        if not isinstance(item, dict):
            raise RefinementParseError(chunk_index, f"sentence {position} is not an object", text)
        body = item.get("text")
        start = _field(item, "startTimeSeconds", "start_time_seconds")
        end = _field(item, "endTimeSeconds", "end_time_seconds")
        indices = _field(item, "originalSegmentIndices", "original_segment_indices")
        if not isinstance(body, str) or not isinstance(start, (int, float)) or not isinstance(end, (int, float)):
            raise RefinementParseError(chunk_index, f"sentence {position} is missing text or timestamps", text)
        if not isinstance(indices, list) or not all(isinstance(i, int) for i in indices):
            raise RefinementParseError(chunk_index, f"sentence {position} has invalid segment indices", text)
        parsed.append(
            RefinedSentence(
                text=body.strip(),
                start_time_seconds=float(start),
                end_time_seconds=float(end),
                original_segment_indices=sorted(set(indices)),
            )
        )
    return parsed


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _ensure_sentence_end(text: str) -> str:
    text = text.strip()
    if text and not text.endswith(SENTENCE_ENDINGS):
        return text + DEFAULT_SENTENCE_END
    return text


def _span(sentence_indices: list[int], segments: list[TranscriptionSegment]) -> tuple[float, float]:
    return (
        min(segments[i].start_time_seconds for i in sentence_indices),
        max(segments[i].end_time_seconds for i in sentence_indices),
    )


def merge_chunk_results(
    chunks: list[ChunkDescriptor],
    results: list[list[RefinedSentence]],
    segments: list[TranscriptionSegment],
) -> list[RefinedSentence]:
    """
    Reassemble per-chunk sentences into one ordered sentence list.

    Sentences of chunk k whose indices lie entirely inside the overlap with
    chunk k+1 are dropped in favour of chunk k+1's version. Afterwards every
    segment index is owned by exactly one sentence. When two sentences claim
    the same index the later one is kept whole and the earlier one is
    dropped, so no segment's text appears twice. Indices nobody claims
    become their own sentence from the raw segment text (or widen a
    neighbour when they carry no text).
    """
    n = len(segments)
    candidates: list[RefinedSentence] = []

    for k, (chunk, sentences) in enumerate(zip(chunks, results)):
        next_chunk = chunks[k + 1] if k + 1 < len(chunks) else None
        for sentence in sentences:
            indices = [i for i in sentence.original_segment_indices if i in chunk and 0 <= i < n]
            if not indices:
                continue
            if next_chunk is not None and all(next_chunk.start <= i < chunk.end for i in indices):
                continue
            candidates.append(sentence.model_copy(update={"original_segment_indices": indices}))

    # Conflicts resolve per whole sentence: a sentence sharing any index with
    # a later one is dropped, and its other indices fall back to raw text.
    owner: dict[int, int] = {}
    merged: dict[int, dict[str, Any]] = {}
    for position in reversed(range(len(candidates))):
        sentence = candidates[position]
        if any(i in owner for i in sentence.original_segment_indices):
            logger.debug(f"Dropping sentence {sentence.original_segment_indices} claimed by a later sentence")
            continue
        for i in sentence.original_segment_indices:
            owner[i] = position
        merged[position] = {
            "text": sentence.text,
            "start": sentence.start_time_seconds,
            "end": sentence.end_time_seconds,
            "indices": sorted(sentence.original_segment_indices),
        }

    # Uncovered indices, grouped into consecutive runs.
    uncovered = [i for i in range(n) if i not in owner]
    runs: list[list[int]] = []
    for i in uncovered:
        if runs and runs[-1][-1] == i - 1:
            runs[-1].append(i)
        else:
            runs.append([i])

    extra: list[dict[str, Any]] = []
    for run in runs:
        text = "".join(segments[i].text for i in run).strip()
        start, end = _span(run, segments)
        neighbour = owner.get(run[0] - 1, owner.get(run[-1] + 1))
        if not text and neighbour is not None and neighbour in merged:
            target = merged[neighbour]
            target["indices"] = sorted(target["indices"] + run)
            target["start"] = min(target["start"], start)
            target["end"] = max(target["end"], end)
            continue
        logger.debug(f"Segments {run[0]}-{run[-1]} were not covered by the model, keeping them as a sentence")
        extra.append({"text": text, "start": start, "end": end, "indices": run})

    entries = list(merged.values()) + extra
    entries.sort(key=lambda e: (e["start"], e["indices"][0]))

    return [
        RefinedSentence(
            text=_ensure_sentence_end(e["text"]),
            start_time_seconds=e["start"],
            end_time_seconds=e["end"],
            original_segment_indices=e["indices"],
        )
        for e in entries
    ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RefinementRun:
    """
    State of one transcript's refinement.

    Chunks are refined one at a time; a failed chunk can be retried with
    :meth:`refine_chunk` without repeating the others.
    """

    def __init__(
        self,
        generator: TextGenerator,
        transcription: Transcription,
        dictionary: ProperNounDictionary,
        chunks: list[ChunkDescriptor],
    ):
        self.generator = generator
        self.transcription = transcription
        self.dictionary = dictionary
        self.chunks = chunks
        self.results: dict[int, list[RefinedSentence]] = {}

    def pending_chunks(self) -> list[int]:
        return [c.index for c in self.chunks if c.index not in self.results]

    def _previous_tail(self, index: int) -> str | None:
        previous = self.results.get(index - 1)
        if not previous:
            return None
        return "".join(s.text for s in previous[-TAIL_SENTENCES:])

    async def refine_chunk(self, index: int) -> list[RefinedSentence]:
        """Refine a single chunk (again), replacing any earlier result."""
        chunk = self.chunks[index]
        prompt = build_chunk_prompt(
            self.transcription.segments,
            chunk,
            self.dictionary,
            self._previous_tail(index),
        )
        logger.info(f"Refining chunk {index + 1}/{chunk.total_chunks} (segments {chunk.start}-{chunk.end - 1})")
        response = await self.generator.generate(prompt)
        sentences = parse_sentences_response(response, index)
        self.results[index] = sentences
        return sentences

    async def run_remaining(self) -> None:
        """Refine every chunk that has no result yet, in order."""
        for index in self.pending_chunks():
            await self.refine_chunk(index)

    def merge(self) -> list[RefinedSentence]:
        missing = self.pending_chunks()
        if missing:
            raise ValidationError(ErrorCode.INVALID_ARGUMENT, f"Chunks not refined yet: {missing}")
        return merge_chunk_results(
            self.chunks,
            [self.results[c.index] for c in self.chunks],
            self.transcription.segments,
        )

    def result(self) -> RefinedTranscription:
        sentences = self.merge()
        return RefinedTranscription.create(
            transcription_id=self.transcription.id,
            full_text="".join(s.text for s in sentences),
            sentences=sentences,
            dictionary_version=self.dictionary.version,
        )


class RefinementEngine:
    """Feeds a transcript through a bounded-context text model."""

    def __init__(self, generator: TextGenerator, chunk_size: int = 500, overlap: int = 100):
        self.generator = generator
        self.chunk_size = chunk_size
        self.overlap = overlap

    def plan(self, transcription: Transcription, dictionary: ProperNounDictionary) -> RefinementRun:
        chunks = plan_chunks(len(transcription.segments), self.chunk_size, self.overlap)
        if not chunks:
            raise ValidationError(ErrorCode.EMPTY_SEGMENTS, "Transcription has no segments to refine")
        return RefinementRun(self.generator, transcription, dictionary, chunks)

    async def refine(self, transcription: Transcription, dictionary: ProperNounDictionary) -> RefinedTranscription:
        """
        Refine a whole transcription, chunk by chunk.

        Raises:
            RefinementParseError: If a chunk's output cannot be parsed
        """
        run = self.plan(transcription, dictionary)
        await run.run_remaining()
        refined = run.result()
        logger.info(
            f"Refined transcription {transcription.id}: {len(transcription.segments)} segments "
            f"-> {len(refined.sentences)} sentences in {len(run.chunks)} chunks"
        )
        return refined


async def refine_transcript(
    video_id: str,
    repos: Repositories,
    engine: RefinementEngine,
    dictionary: ProperNounDictionary,
) -> RefinedTranscription:
    """
    Refine the stored transcription of a video, replacing any earlier result.

    Raises:
        NotFoundError: If the video has no transcription
    """
    transcription = repos.transcriptions.find_one(video_id=video_id)
    if transcription is None:
        raise NotFoundError(ErrorCode.TRANSCRIPTION_NOT_FOUND, f"Transcription not found for video {video_id}")

    refined = await engine.refine(transcription, dictionary)

    for previous in repos.refined_transcriptions.find_by(transcription_id=transcription.id):
        repos.refined_transcriptions.delete(previous.id)
    return repos.refined_transcriptions.save(refined)
