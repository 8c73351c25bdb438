"""Resegmentation: split paragraphs that mix several speakers.

Only paragraphs flagged ``has_multiple_speakers`` by speaker assignment are
sent here. Each is checked by one completion call that sees up to N
neighbouring paragraphs on either side with their resolved speakers.

Policy:
- ``should_split`` false, ``low`` confidence or a content-filter refusal
  keep the paragraph unsplit with its original attribution.
- A split whose segment text does not normalize to the original text is
  applied anyway and logged as a warning.
- Segments carry text only. Their words are recovered by greedily taking
  words from the original paragraph until the normalized length of the
  taken words reaches that of the segment text.

All flagged paragraphs are processed concurrently; the results are placed
back at their original positions.
"""

from __future__ import annotations

import asyncio
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from src.proceedings.errors import ContentFilterError
from src.proceedings.pipeline.prompts import (
    RESEGMENTATION_SYSTEM_PROMPT,
    RESEGMENTATION_USER_SUFFIX,
)
from src.proceedings.pipeline.text import normalize_text, truncate
from src.proceedings.services.llm import CompletionService
from src.proceedings.services.usage import UsageOperation, UsageStage
from src.proceedings.transcripts.schemas import (
    AttributedParagraph,
    Paragraph,
    ParagraphAssignment,
    SpeakerAttribution,
    Word,
)

logger = structlog.get_logger(__name__)

CONTEXT_PREVIEW_CHARS = 150


# ── Response Models ──────────────────────────────────────────────────────────


class ResegmentedSegment(BaseModel):
    """One single-speaker piece of the CURRENT paragraph."""

    text: str = Field(description="Exact text of the segment")
    name: str | None = None
    function: str | None = None
    affiliation: str | None = None
    group: str | None = None

    def attribution(self) -> SpeakerAttribution:
        return SpeakerAttribution(
            name=self.name,
            function=self.function,
            affiliation=self.affiliation,
            group=self.group,
        )


class ResegmentationResult(BaseModel):
    """Split decision for one paragraph."""

    should_split: bool
    confidence: Literal["high", "medium", "low"]
    reason: str = ""
    segments: list[ResegmentedSegment] = Field(default_factory=list)


# ── Word Re-attribution ──────────────────────────────────────────────────────


def reattribute_words(
    words: list[Word], segment_texts: list[str]
) -> list[list[Word]]:
    """Distribute ``words`` over segments by normalized text length.

    Returns one word list per segment (possibly empty once words run out).
    Words left over after the last segment are appended to the last
    non-empty segment so none is lost.
    """
    groups: list[list[Word]] = []
    offset = 0
    for text in segment_texts:
        target = len(normalize_text(text))
        taken: list[Word] = []
        matched = 0
        while offset < len(words) and matched < target:
            taken.append(words[offset])
            matched = len(normalize_text(" ".join(w.text for w in taken)))
            offset += 1
        groups.append(taken)

    if offset < len(words):
        leftover = words[offset:]
        logger.warning("resegmentation.leftover_words", count=len(leftover))
        for group in reversed(groups):
            if group:
                group.extend(leftover)
                break
    return groups


# ── Engine ───────────────────────────────────────────────────────────────────


class Resegmenter:
    """Split mixed-speaker paragraphs at speaker boundaries.

    Args:
        completion: Completion service.
        context_size: Neighbouring paragraphs shown on each side.
    """

    def __init__(self, completion: CompletionService, context_size: int = 3) -> None:
        self._completion = completion
        self._context_size = context_size

    async def resegment(
        self,
        paragraphs: list[Paragraph],
        assignments: list[ParagraphAssignment],
        transcript_id: str | None = None,
    ) -> list[AttributedParagraph]:
        """Rebuild the paragraph sequence with flagged paragraphs split.

        Args:
            paragraphs: Raw paragraphs, in order.
            assignments: Speaker assignment for each paragraph, same order.
            transcript_id: For usage accounting and logs.

        Returns:
            Attributed paragraphs in original order, each flagged paragraph
            expanded into its 1..N segments.
        """
        attributed = [
            AttributedParagraph(
                paragraph=p,
                speaker=a.speaker,
                is_off_record=a.is_off_record,
            )
            for p, a in zip(paragraphs, assignments)
        ]
        flagged = [a.index for a in assignments if a.has_multiple_speakers]
        if not flagged:
            return attributed

        logger.info(
            "resegmentation.started",
            transcript_id=transcript_id,
            flagged=flagged,
        )
        # One slot per flagged paragraph; every task is awaited before any error surfaces
        results = await asyncio.gather(
            *(self._resegment_one(idx, attributed, transcript_id) for idx in flagged),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        replacements = dict(zip(flagged, results))
        rebuilt: list[AttributedParagraph] = []
        for idx, item in enumerate(attributed):
            rebuilt.extend(replacements.get(idx, [item]))

        logger.info(
            "resegmentation.completed",
            transcript_id=transcript_id,
            paragraphs_before=len(attributed),
            paragraphs_after=len(rebuilt),
        )
        return rebuilt

    def build_context(self, idx: int, attributed: list[AttributedParagraph]) -> str:
        """Render BEFORE-N / CURRENT / AFTER+N blocks for paragraph ``idx``."""
        parts: list[str] = []
        start = max(0, idx - self._context_size)
        for i in range(start, idx):
            parts.append(self._format_neighbour(attributed[i], f"BEFORE-{idx - i}"))

        current = attributed[idx]
        parts.append(
            "CURRENT (TO SPLIT):\n"
            f"Speaker: {current.speaker.name or 'Unknown'}\n"
            f"Text: {current.paragraph.word_text}"
        )

        end = min(len(attributed) - 1, idx + self._context_size)
        for i in range(idx + 1, end + 1):
            parts.append(self._format_neighbour(attributed[i], f"AFTER+{i - idx}"))
        return "\n\n".join(parts)

    @staticmethod
    def _format_neighbour(item: AttributedParagraph, label: str) -> str:
        preview = truncate(item.paragraph.word_text, CONTEXT_PREVIEW_CHARS)
        return f"{label}:\nSpeaker: {item.speaker.name or 'Unknown'}\nText: {preview}"

    async def _resegment_one(
        self,
        idx: int,
        attributed: list[AttributedParagraph],
        transcript_id: str | None,
    ) -> list[AttributedParagraph]:
        original = attributed[idx]
        user_prompt = (
            "Analyze the CURRENT paragraph in context and determine if it should "
            f"be split:\n\n{self.build_context(idx, attributed)}\n\n"
            f"{RESEGMENTATION_USER_SUFFIX}"
        )
        try:
            result = await self._completion.complete(
                RESEGMENTATION_SYSTEM_PROMPT,
                user_prompt,
                ResegmentationResult,
                operation=UsageOperation.RESEGMENT_PARAGRAPH,
                stage=UsageStage.RESEGMENTING,
                transcript_id=transcript_id,
            )
        except ContentFilterError:
            logger.warning(
                "resegmentation.content_filtered",
                transcript_id=transcript_id,
                index=idx,
            )
            return [original]

        return self.apply(idx, original, result, transcript_id)

    def apply(
        self,
        idx: int,
        original: AttributedParagraph,
        result: ResegmentationResult,
        transcript_id: str | None = None,
    ) -> list[AttributedParagraph]:
        """Turn a split decision into 1..N attributed paragraphs."""
        if not result.should_split:
            logger.info(
                "resegmentation.kept_unsplit",
                transcript_id=transcript_id,
                index=idx,
                confidence=result.confidence,
                reason=result.reason,
            )
            return [original]

        if result.confidence == "low":
            logger.warning(
                "resegmentation.low_confidence",
                transcript_id=transcript_id,
                index=idx,
                reason=result.reason,
            )
            return [original]

        paragraph = original.paragraph
        joined = " ".join(s.text for s in result.segments)
        if normalize_text(paragraph.word_text) != normalize_text(joined):
            logger.warning(
                "resegmentation.integrity_mismatch",
                transcript_id=transcript_id,
                index=idx,
                original=truncate(paragraph.word_text, 100),
                segments=truncate(joined, 100),
            )

        groups = reattribute_words(paragraph.words, [s.text for s in result.segments])
        pieces = [
            AttributedParagraph(
                paragraph=Paragraph.from_words(words),
                speaker=segment.attribution(),
                is_off_record=original.is_off_record,
            )
            for segment, words in zip(result.segments, groups)
            if words
        ]
        if not pieces:
            logger.warning(
                "resegmentation.no_segments_matched",
                transcript_id=transcript_id,
                index=idx,
            )
            return [original]

        logger.info(
            "resegmentation.split",
            transcript_id=transcript_id,
            index=idx,
            segments=len(pieces),
            confidence=result.confidence,
            reason=result.reason,
        )
        return pieces
