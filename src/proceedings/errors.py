"""Exception hierarchy for the transcript pipeline.

Provider errors and schema violations are fatal to the stage that raised
them: the pipeline records the message on the transcript, moves it to
``error`` and releases the lock. Stages do not retry them; recovery is an
explicit ``retry()``. The one exception is the speech client's idempotent
reads (poll, fetch), which retry transient transport failures and 5xx
responses before a ProviderError is raised. Completion calls and speech
submission are never retried on provider errors. Content-filter refusals are raised by the
completion client but handled by each stage as "no action". Lock contention
is not an error at all (``try_acquire_lock`` returns False).
"""

from __future__ import annotations


class ProceedingsError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(ProceedingsError):
    """Network failure or 5xx from the speech or completion service."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class CompletionParseError(ProceedingsError):
    """Completion output did not conform to the requested schema."""


class AssignmentCoverageError(CompletionParseError):
    """Speaker assignment did not cover every paragraph index exactly once."""

    def __init__(
        self,
        missing: list[int],
        duplicated: list[int] | None = None,
        out_of_range: list[int] | None = None,
    ) -> None:
        self.missing = missing
        self.duplicated = duplicated or []
        self.out_of_range = out_of_range or []
        parts = []
        if missing:
            parts.append(f"missing={missing}")
        if self.duplicated:
            parts.append(f"duplicated={self.duplicated}")
        if self.out_of_range:
            parts.append(f"out_of_range={self.out_of_range}")
        super().__init__(
            "Speaker assignment does not cover every paragraph: " + ", ".join(parts)
        )


class ContentFilterError(ProceedingsError):
    """The completion service refused to answer (content policy)."""


class TranscriptNotFoundError(ProceedingsError):
    """No transcript record exists for the given id."""

    def __init__(self, transcript_id: str) -> None:
        self.transcript_id = transcript_id
        super().__init__(f"Transcript not found: {transcript_id}")
