"""Speaker assignment: one batch completion over every raw paragraph.

The model sees each paragraph's text with its diarization hint and returns,
per paragraph index, the speaker's attribution plus two flags:
``has_multiple_speakers`` (sent on to resegmentation) and ``is_off_record``
(dropped by consolidation).

The answer must cover every index in ``[0, n)`` exactly once; anything else
is a schema violation and fails the stage. Off-record flags are only
honored inside a window of K paragraphs at each end of the transcript.
"""

from __future__ import annotations

from collections import Counter

import structlog
from pydantic import BaseModel, Field

from src.proceedings.errors import AssignmentCoverageError
from src.proceedings.pipeline.prompts import SPEAKER_ASSIGNMENT_SYSTEM_PROMPT
from src.proceedings.services.llm import CompletionService
from src.proceedings.services.usage import UsageOperation, UsageStage
from src.proceedings.transcripts.schemas import (
    Paragraph,
    ParagraphAssignment,
    SpeakerAttribution,
)

logger = structlog.get_logger(__name__)


# ── Response Models ──────────────────────────────────────────────────────────


class ParagraphSpeakerEntry(BaseModel):
    """Attribution of one numbered paragraph."""

    index: int = Field(description="Paragraph number as shown in brackets")
    name: str | None = None
    function: str | None = None
    affiliation: str | None = None
    group: str | None = None
    has_multiple_speakers: bool = False
    is_off_record: bool = False


class ParagraphSpeakerMapping(BaseModel):
    """Attribution of every paragraph of the transcript."""

    paragraphs: list[ParagraphSpeakerEntry]


# ── Helpers ──────────────────────────────────────────────────────────────────


def build_assignment_prompt(paragraphs: list[Paragraph]) -> str:
    lines = [
        f"[{i}] (Speaker hint: {p.speaker_hint or 'Unknown'}) {p.word_text}"
        for i, p in enumerate(paragraphs)
    ]
    return (
        "Analyze the following transcript and identify the speaker for each "
        "numbered paragraph.\n\nTranscript:\n" + "\n\n".join(lines)
    )


def check_coverage(entries: list[ParagraphSpeakerEntry], count: int) -> None:
    """Every index in [0, count) must appear exactly once.

    Raises:
        AssignmentCoverageError: On any gap, duplicate or out-of-range index.
    """
    seen = Counter(e.index for e in entries)
    missing = [i for i in range(count) if i not in seen]
    duplicated = sorted(i for i, n in seen.items() if n > 1 and 0 <= i < count)
    out_of_range = sorted(i for i in seen if i < 0 or i >= count)
    if missing or duplicated or out_of_range:
        raise AssignmentCoverageError(missing, duplicated, out_of_range)


def enforce_off_record_boundary(
    assignments: list[ParagraphAssignment], window: int
) -> list[ParagraphAssignment]:
    """Clear off-record flags outside the first/last ``window`` paragraphs.

    A window of 0 keeps every flag as returned by the model.
    """
    if window <= 0:
        return assignments

    count = len(assignments)
    result: list[ParagraphAssignment] = []
    for assignment in assignments:
        interior = window <= assignment.index < count - window
        if assignment.is_off_record and interior:
            logger.warning(
                "speaker_assignment.interior_off_record_ignored",
                index=assignment.index,
                window=window,
            )
            assignment = assignment.model_copy(update={"is_off_record": False})
        result.append(assignment)
    return result


# ── Engine ───────────────────────────────────────────────────────────────────


class SpeakerAssigner:
    """Initial per-paragraph speaker attribution.

    Args:
        completion: Completion service used for the single batch call.
        boundary_window: Paragraphs at each end where off-record is allowed
            (0 disables the restriction).
    """

    def __init__(self, completion: CompletionService, boundary_window: int = 3) -> None:
        self._completion = completion
        self._boundary_window = boundary_window

    async def assign(
        self,
        paragraphs: list[Paragraph],
        transcript_id: str | None = None,
    ) -> list[ParagraphAssignment]:
        """Attribute every paragraph.

        Returns:
            One ParagraphAssignment per input paragraph, in index order.

        Raises:
            ValueError: If no paragraphs are given.
            AssignmentCoverageError: If the model skipped or repeated an index.
        """
        if not paragraphs:
            raise ValueError("No paragraphs provided")

        logger.info(
            "speaker_assignment.started",
            transcript_id=transcript_id,
            paragraphs=len(paragraphs),
        )
        mapping = await self._completion.complete(
            SPEAKER_ASSIGNMENT_SYSTEM_PROMPT,
            build_assignment_prompt(paragraphs),
            ParagraphSpeakerMapping,
            operation=UsageOperation.INITIAL_SPEAKER_MAPPING,
            stage=UsageStage.IDENTIFYING_SPEAKERS,
            transcript_id=transcript_id,
        )
        check_coverage(mapping.paragraphs, len(paragraphs))

        assignments = [
            ParagraphAssignment(
                index=entry.index,
                speaker=SpeakerAttribution(
                    name=entry.name,
                    function=entry.function,
                    affiliation=entry.affiliation,
                    group=entry.group,
                ),
                has_multiple_speakers=entry.has_multiple_speakers,
                is_off_record=entry.is_off_record,
            )
            for entry in sorted(mapping.paragraphs, key=lambda e: e.index)
        ]
        assignments = enforce_off_record_boundary(assignments, self._boundary_window)

        logger.info(
            "speaker_assignment.completed",
            transcript_id=transcript_id,
            paragraphs=len(assignments),
            mixed=[a.index for a in assignments if a.has_multiple_speakers],
            off_record=[a.index for a in assignments if a.is_off_record],
        )
        return assignments
