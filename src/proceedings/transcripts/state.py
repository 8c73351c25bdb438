"""Pipeline state machine for transcripts.

Statuses advance strictly forward:

    transcribing -> transcribed -> identifying_speakers -> analyzing_topics -> completed

``error`` is reachable from every non-terminal status. ``completed`` and
``error`` end a run; a new run leaves ``error`` only through an explicit
retry, which re-enters the machine right after the last stage whose output
is durably stored (``Transcript.completed_stage``).

All status changes go through ``validate_transition`` so the legal source
states of each stage live in one table instead of in every caller.
"""

from __future__ import annotations

from src.proceedings.errors import ProceedingsError
from src.proceedings.transcripts.schemas import Transcript, TranscriptStatus

S = TranscriptStatus

VALID_TRANSITIONS: dict[TranscriptStatus, set[TranscriptStatus]] = {
    S.TRANSCRIBING: {S.TRANSCRIBED, S.ERROR},
    S.TRANSCRIBED: {S.IDENTIFYING_SPEAKERS, S.ERROR},
    S.IDENTIFYING_SPEAKERS: {S.ANALYZING_TOPICS, S.ERROR},
    S.ANALYZING_TOPICS: {S.COMPLETED, S.ERROR},
    S.COMPLETED: set(),  # Terminal
    # Terminal for a run; retry re-enters at the resume point
    S.ERROR: {S.TRANSCRIBING, S.IDENTIFYING_SPEAKERS, S.ANALYZING_TOPICS, S.COMPLETED},
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.ERROR})

# Stage that follows each durably completed stage
_NEXT_STAGE: dict[TranscriptStatus | None, TranscriptStatus] = {
    None: S.TRANSCRIBING,
    S.TRANSCRIBED: S.IDENTIFYING_SPEAKERS,
    S.IDENTIFYING_SPEAKERS: S.ANALYZING_TOPICS,
    S.ANALYZING_TOPICS: S.COMPLETED,
}


class InvalidTransitionError(ProceedingsError, ValueError):
    """Raised when a status change violates the transition table."""

    def __init__(self, from_status: TranscriptStatus, to_status: TranscriptStatus) -> None:
        self.from_status = from_status
        self.to_status = to_status
        allowed = ", ".join(sorted(s.value for s in VALID_TRANSITIONS.get(from_status, set())))
        super().__init__(
            f"Invalid status transition: {from_status.value} -> {to_status.value}. "
            f"Allowed transitions from {from_status.value}: {allowed or 'none'}"
        )


def validate_transition(from_status: TranscriptStatus, to_status: TranscriptStatus) -> None:
    """Validate that a status change is allowed.

    Args:
        from_status: Current status.
        to_status: Target status.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if from_status == to_status and from_status not in TERMINAL_STATUSES:
        return  # Re-entering a running stage (resumption after a stolen lock)

    if to_status not in VALID_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(from_status, to_status)


def is_terminal(status: TranscriptStatus) -> bool:
    return status in TERMINAL_STATUSES


def resume_stage(transcript: Transcript) -> TranscriptStatus:
    """Return the stage a (re)started run should execute next.

    Stages whose output is already stored are skipped. ``completed`` means
    there is nothing left to do.
    """
    return _NEXT_STAGE.get(transcript.completed_stage, S.COMPLETED)
