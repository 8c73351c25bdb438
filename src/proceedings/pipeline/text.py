"""Text helpers shared by the pipeline stages."""

from __future__ import annotations

import re

from src.proceedings.transcripts.schemas import Sentence, Word

_NON_ALNUM = re.compile(r"[\W_]+")
SENTENCE_TERMINATORS = (".", "?", "!")


def normalize_text(text: str) -> str:
    """Strip everything but letters and digits (any script), then lowercase.

    Used to compare texts that differ only in punctuation, spacing or case.
    """
    return _NON_ALNUM.sub("", text).lower()


def truncate(text: str, limit: int) -> str:
    """Cut text to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def split_sentences(words: list[Word]) -> list[Sentence]:
    """Group words into sentences ending at ``.``, ``?`` or ``!``.

    Trailing words without a terminator form a final sentence, so no word
    is ever dropped.
    """
    sentences: list[Sentence] = []
    current: list[Word] = []
    for word in words:
        current.append(word)
        if word.text.rstrip("\"')]").endswith(SENTENCE_TERMINATORS):
            sentences.append(_sentence(current))
            current = []
    if current:
        sentences.append(_sentence(current))
    return sentences


def _sentence(words: list[Word]) -> Sentence:
    return Sentence(
        text=" ".join(w.text for w in words),
        start_ms=words[0].start_ms,
        end_ms=words[-1].end_ms,
        words=list(words),
    )
