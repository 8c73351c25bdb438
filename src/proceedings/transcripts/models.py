"""Transcript persistence models.

Two SQLAlchemy models:
- TranscriptModel: one row per transcription job, content stored as JSON
- UsageEventModel: per-call token/cost accounting for collaborator calls

Column types are dialect-neutral (generic JSON, String, DateTime) so the
same models run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.proceedings.core.database import Base


class TranscriptModel(Base):
    """A transcription job and everything the pipeline produced for it.

    ``pipeline_lock`` holds the acquisition timestamp of the worker that
    currently runs the pipeline; NULL means unlocked. A lock older than the
    configured timeout counts as stale and may be taken over.
    """

    __tablename__ = "transcripts"
    __table_args__ = (
        Index("idx_transcripts_entry_id", "entry_id"),
        Index("idx_transcripts_status", "status"),
    )

    transcript_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(200), nullable=False)
    audio_url: Mapped[str] = mapped_column(Text, nullable=False)
    start_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="transcribing")
    language_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    content_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    completed_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pipeline_lock: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class UsageEventModel(Base):
    """Token accounting for one speech or completion service call."""

    __tablename__ = "processing_usage_events"
    __table_args__ = (
        Index("idx_usage_transcript_id", "transcript_id"),
        Index("idx_usage_provider_stage", "provider", "stage"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transcript_id: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
