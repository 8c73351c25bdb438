"""Pydantic v2 schemas for the transcript domain.

Defines the data contracts for words, paragraphs, speaker attributions,
statements, topics and the Transcript aggregate. Every pipeline stage,
the repository and the collaborator clients import from this module.

Timestamps on words, paragraphs, sentences and statements are integer
milliseconds from the start of the recording (the speech service's unit).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

CHAIR_FUNCTION_MARKERS = ("chair", "president", "moderator")


# ── Enums ────────────────────────────────────────────────────────────────────


class TranscriptStatus(str, Enum):
    """Lifecycle status of a transcript from submission through topic analysis."""

    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    IDENTIFYING_SPEAKERS = "identifying_speakers"
    ANALYZING_TOPICS = "analyzing_topics"
    COMPLETED = "completed"
    ERROR = "error"


# ── Raw Speech Output ────────────────────────────────────────────────────────


class Word(BaseModel):
    """A single recognized word. Produced by the speech service, never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    text: str
    start_ms: int = Field(validation_alias=AliasChoices("start_ms", "start"))
    end_ms: int = Field(validation_alias=AliasChoices("end_ms", "end"))
    confidence: float = 0.0
    speaker_hint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("speaker_hint", "speaker"),
        description="Diarization label from the speech service; advisory only",
    )


class Paragraph(BaseModel):
    """Ordered run of words as segmented by the speech service."""

    model_config = ConfigDict(populate_by_name=True)

    text: str
    start_ms: int = Field(validation_alias=AliasChoices("start_ms", "start"))
    end_ms: int = Field(validation_alias=AliasChoices("end_ms", "end"))
    words: list[Word] = Field(default_factory=list)

    @classmethod
    def from_words(cls, words: list[Word]) -> Paragraph:
        """Build a paragraph whose text and bounds derive from its words."""
        return cls(
            text=" ".join(w.text for w in words),
            start_ms=words[0].start_ms,
            end_ms=words[-1].end_ms,
            words=list(words),
        )

    @property
    def word_text(self) -> str:
        """Space-joined word texts (what the completion service is shown)."""
        if not self.words:
            return self.text
        return " ".join(w.text for w in self.words)

    @property
    def speaker_hint(self) -> str | None:
        """Speaker hint of the first word, if any."""
        return self.words[0].speaker_hint if self.words else None


# ── Attribution ──────────────────────────────────────────────────────────────


class SpeakerAttribution(BaseModel):
    """Resolved identity of a speaker. All fields may be unknown (None)."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    function: str | None = None
    affiliation: str | None = None
    group: str | None = None

    @property
    def is_chair(self) -> bool:
        """True when function names a chair, president or moderator."""
        if not self.function:
            return False
        lowered = self.function.lower()
        return any(marker in lowered for marker in CHAIR_FUNCTION_MARKERS)

    @property
    def label(self) -> str:
        """Short display label used inside prompts."""
        return self.name or self.affiliation or "Unknown"


class ParagraphAssignment(BaseModel):
    """Speaker assignment output for one raw paragraph."""

    index: int
    speaker: SpeakerAttribution
    has_multiple_speakers: bool = False
    is_off_record: bool = False


class AttributedParagraph(BaseModel):
    """A paragraph (raw or resegmented) with its resolved speaker.

    ``is_off_record`` only lives for the duration of a pipeline run and is
    dropped by consolidation; it never reaches persisted statements.
    """

    paragraph: Paragraph
    speaker: SpeakerAttribution
    is_off_record: bool = False


# ── Statements & Topics ──────────────────────────────────────────────────────


class Sentence(BaseModel):
    """A sentence of a statement paragraph with its topic tags."""

    text: str
    start_ms: int
    end_ms: int
    words: list[Word] = Field(default_factory=list)
    topic_keys: list[str] = Field(default_factory=list)


class StatementParagraph(BaseModel):
    """One member paragraph of a statement, split into sentences."""

    start_ms: int
    end_ms: int
    sentences: list[Sentence] = Field(default_factory=list)

    @property
    def words(self) -> list[Word]:
        return [w for s in self.sentences for w in s.words]

    @property
    def text(self) -> str:
        return " ".join(s.text for s in self.sentences)


class Statement(BaseModel):
    """Maximal run of consecutive paragraphs sharing one speaker."""

    speaker: SpeakerAttribution
    start_ms: int
    end_ms: int
    paragraphs: list[StatementParagraph] = Field(default_factory=list)

    @property
    def words(self) -> list[Word]:
        return [w for p in self.paragraphs for w in p.words]

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.paragraphs)

    @property
    def topic_keys(self) -> list[str]:
        """Distinct topic keys across all sentences, in first-seen order."""
        seen: list[str] = []
        for paragraph in self.paragraphs:
            for sentence in paragraph.sentences:
                for key in sentence.topic_keys:
                    if key not in seen:
                        seen.append(key)
        return seen


class Topic(BaseModel):
    """A discussion topic defined once per transcript."""

    key: str = Field(description="Stable kebab-case identifier")
    label: str
    description: str
    color: str


# ── Transcript Aggregate ─────────────────────────────────────────────────────


class TranscriptContent(BaseModel):
    """Everything the pipeline has produced for a transcript so far."""

    raw_paragraphs: list[Paragraph] = Field(default_factory=list)
    statements: list[Statement] = Field(default_factory=list)
    topics: dict[str, Topic] = Field(default_factory=dict)


class Transcript(BaseModel):
    """Aggregate root: one transcription of a recording (or a time segment)."""

    transcript_id: str
    entry_id: str
    audio_url: str
    start_time: float | None = None
    end_time: float | None = None
    status: TranscriptStatus = TranscriptStatus.TRANSCRIBING
    language_code: str | None = None
    content: TranscriptContent = Field(default_factory=TranscriptContent)
    completed_stage: TranscriptStatus | None = Field(
        None,
        description="Last stage whose output is durably stored in content",
    )
    pipeline_lock: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TranscriptCreate(BaseModel):
    """Request schema for registering a newly submitted transcription."""

    transcript_id: str
    entry_id: str
    audio_url: str
    start_time: float | None = None
    end_time: float | None = None


# ── Usage Accounting ─────────────────────────────────────────────────────────


class UsageEvent(BaseModel):
    """Token/cost accounting record for one collaborator call."""

    transcript_id: str
    provider: str
    stage: str
    operation: str
    status: str = "success"
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    created_at: datetime | None = None


class UsageSummaryRow(BaseModel):
    """Usage totals for one provider/stage pair."""

    provider: str
    stage: str
    events: int
    success_events: int
    error_events: int
    input_tokens: int
    output_tokens: int
    total_tokens: int


# ── Collaborator / Poll Results ──────────────────────────────────────────────


class SpeechJobStatus(BaseModel):
    """Status of a job at the speech service."""

    status: str  # queued | processing | completed | error
    language_code: str | None = None
    error: str | None = None


class PollResult(BaseModel):
    """What a status poll reports back to the caller."""

    stage: TranscriptStatus
    raw_paragraphs: list[Paragraph] | None = None
    statements: list[Statement] | None = None
    topics: dict[str, Topic] | None = None
    error_message: str | None = None
