"""Usage accounting for speech and completion service calls.

Every collaborator call is reported to a UsageRecorder with its stage,
operation and token counts. Recording is best-effort: a failure to persist
an event is logged and never interrupts the pipeline.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from src.proceedings.transcripts.schemas import UsageEvent

logger = structlog.get_logger(__name__)


class UsageStage:
    TRANSCRIBING = "transcribing"
    IDENTIFYING_SPEAKERS = "identifying_speakers"
    RESEGMENTING = "resegmenting"
    ANALYZING_TOPICS = "analyzing_topics"
    TAGGING = "tagging_statements"


class UsageOperation:
    INITIAL_SPEAKER_MAPPING = "initial_speaker_mapping"
    RESEGMENT_PARAGRAPH = "resegment_paragraph"
    DEFINE_TOPICS = "define_topics"
    TAG_STATEMENT_TOPICS = "tag_statement_topics"
    SPEECH_SUBMIT = "speech_submit_transcription"
    SPEECH_POLL = "speech_poll_transcription"
    SPEECH_FETCH_PARAGRAPHS = "speech_fetch_paragraphs"


class UsageRecorder(Protocol):
    async def record(self, event: UsageEvent) -> None: ...


class UsageStore(Protocol):
    async def record_usage(self, event: UsageEvent) -> None: ...


class RepositoryUsageRecorder:
    """Writes usage events to the ``processing_usage_events`` table."""

    def __init__(self, store: UsageStore) -> None:
        self._store = store

    async def record(self, event: UsageEvent) -> None:
        try:
            await self._store.record_usage(event)
        except Exception as exc:
            logger.warning(
                "usage.record_failed",
                transcript_id=event.transcript_id,
                operation=event.operation,
                error=str(exc),
            )


class NullUsageRecorder:
    """Recorder that drops every event (administrative dry runs, tests)."""

    async def record(self, event: UsageEvent) -> None:
        return None
