"""Consolidation: drop off-record paragraphs, merge same-speaker runs.

Two sequential passes over the rebuilt paragraph sequence:
1. filter_off_record(): remove paragraphs flagged off-record
2. group_statements(): merge maximal runs of consecutive paragraphs whose
   attributions are exactly equal (all four fields, nulls included)

Each member paragraph of a statement is kept and split into sentences,
which later carry the statement's topic keys.
"""

from __future__ import annotations

import structlog

from src.proceedings.pipeline.text import split_sentences
from src.proceedings.transcripts.schemas import (
    AttributedParagraph,
    Paragraph,
    Sentence,
    Statement,
    StatementParagraph,
)

logger = structlog.get_logger(__name__)


def filter_off_record(items: list[AttributedParagraph]) -> list[AttributedParagraph]:
    """Return the on-record paragraphs, in order."""
    kept = [item for item in items if not item.is_off_record]
    dropped = len(items) - len(kept)
    if dropped:
        logger.info("consolidation.off_record_dropped", dropped=dropped, kept=len(kept))
    return kept


def to_statement_paragraph(paragraph: Paragraph) -> StatementParagraph:
    sentences = split_sentences(paragraph.words)
    if not sentences:
        sentences = [
            Sentence(text=paragraph.text, start_ms=paragraph.start_ms, end_ms=paragraph.end_ms)
        ]
    return StatementParagraph(
        start_ms=paragraph.start_ms,
        end_ms=paragraph.end_ms,
        sentences=sentences,
    )


def group_statements(items: list[AttributedParagraph]) -> list[Statement]:
    """Merge consecutive paragraphs with identical attribution into statements."""
    statements: list[Statement] = []
    for item in items:
        member = to_statement_paragraph(item.paragraph)
        if statements and statements[-1].speaker == item.speaker:
            current = statements[-1]
            current.paragraphs.append(member)
            current.end_ms = item.paragraph.end_ms
        else:
            statements.append(
                Statement(
                    speaker=item.speaker,
                    start_ms=item.paragraph.start_ms,
                    end_ms=item.paragraph.end_ms,
                    paragraphs=[member],
                )
            )

    if len(statements) < len(items):
        logger.info(
            "consolidation.grouped",
            paragraphs=len(items),
            statements=len(statements),
        )
    return statements


def consolidate(items: list[AttributedParagraph]) -> list[Statement]:
    """Off-record filtering followed by same-speaker grouping."""
    return group_statements(filter_off_record(items))
