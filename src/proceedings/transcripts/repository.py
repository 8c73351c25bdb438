"""Transcript repository -- async CRUD for the Transcript aggregate.

Provides TranscriptRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models;
JSON columns use model_dump(mode="json") for save and model_validate()
for load.

The single-flight pipeline lock is implemented here as one conditional
UPDATE (compare-and-swap on ``pipeline_lock``), so two workers racing for
the same transcript cannot both see a successful acquisition.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from src.proceedings.config import Settings
from src.proceedings.core.database import (
    SessionFactory,
    create_engine_from_settings,
    create_tables,
    dispose_engine,
    make_session_factory,
)
from src.proceedings.errors import TranscriptNotFoundError
from src.proceedings.transcripts.models import TranscriptModel, UsageEventModel
from src.proceedings.transcripts.schemas import (
    Paragraph,
    Transcript,
    TranscriptContent,
    TranscriptCreate,
    TranscriptStatus,
    UsageEvent,
    UsageSummaryRow,
)

logger = structlog.get_logger(__name__)

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=30)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _model_to_transcript(model: TranscriptModel) -> Transcript:
    """Convert TranscriptModel to Transcript schema."""
    return Transcript(
        transcript_id=model.transcript_id,
        entry_id=model.entry_id,
        audio_url=model.audio_url,
        start_time=model.start_time,
        end_time=model.end_time,
        status=TranscriptStatus(model.status),
        language_code=model.language_code,
        content=TranscriptContent.model_validate(model.content_data or {}),
        completed_stage=(
            TranscriptStatus(model.completed_stage) if model.completed_stage else None
        ),
        pipeline_lock=_utc(model.pipeline_lock),
        error_message=model.error_message,
        created_at=_utc(model.created_at),
        updated_at=_utc(model.updated_at) or _utc(model.created_at),
    )


def _model_to_usage(model: UsageEventModel) -> UsageEvent:
    """Convert UsageEventModel to UsageEvent schema."""
    return UsageEvent(
        transcript_id=model.transcript_id,
        provider=model.provider,
        stage=model.stage,
        operation=model.operation,
        status=model.status,
        model=model.model,
        input_tokens=model.input_tokens,
        output_tokens=model.output_tokens,
        total_tokens=model.total_tokens,
        duration_ms=model.duration_ms,
        error_message=model.error_message,
        created_at=_utc(model.created_at),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class TranscriptRepository:
    """Async CRUD operations for transcripts and usage events.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        lock_timeout: Age after which a pipeline lock is considered stale.
        engine: Engine backing the session factory, disposed by close().
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        lock_timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_timeout = lock_timeout
        self._engine = engine

    @property
    def lock_timeout(self) -> timedelta:
        return self._lock_timeout

    async def close(self) -> None:
        """Dispose of the underlying engine, if this repository owns one."""
        if self._engine is not None:
            await dispose_engine(self._engine)
            self._engine = None

    # ── Transcripts ──────────────────────────────────────────────────────

    async def create_transcript(self, data: TranscriptCreate) -> Transcript:
        """Register a freshly submitted transcription in ``transcribing``.

        Args:
            data: TranscriptCreate with the speech job id and source details.

        Returns:
            Transcript with all persisted fields.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = TranscriptModel(
                transcript_id=data.transcript_id,
                entry_id=data.entry_id,
                audio_url=data.audio_url,
                start_time=data.start_time,
                end_time=data.end_time,
                status=TranscriptStatus.TRANSCRIBING.value,
                content_data=TranscriptContent().model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_transcript(model)

    async def get_transcript(self, transcript_id: str) -> Transcript | None:
        """Get a transcript by its id.

        Args:
            transcript_id: Speech service job id.

        Returns:
            Transcript if found, None otherwise.
        """
        async for session in self._session_factory():
            model = await session.get(TranscriptModel, transcript_id)
            if model is None:
                return None
            return _model_to_transcript(model)

    async def list_by_status(
        self, status: TranscriptStatus, limit: int | None = None
    ) -> list[Transcript]:
        """List transcripts in a given status, most recently updated first."""
        async for session in self._session_factory():
            stmt = (
                select(TranscriptModel)
                .where(TranscriptModel.status == status.value)
                .order_by(TranscriptModel.updated_at.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_transcript(m) for m in result.scalars().all()]

    async def list_for_entry(self, entry_id: str) -> list[Transcript]:
        """List every transcript of a recording, ordered by segment start."""
        async for session in self._session_factory():
            stmt = (
                select(TranscriptModel)
                .where(TranscriptModel.entry_id == entry_id)
                .order_by(TranscriptModel.start_time, TranscriptModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_transcript(m) for m in result.scalars().all()]

    async def save_raw_paragraphs(
        self,
        transcript_id: str,
        paragraphs: list[Paragraph],
        language_code: str | None,
    ) -> Transcript | None:
        """Store speech output and move the transcript to ``transcribed``.

        Only a transcript still in ``transcribing`` is updated (one
        conditional UPDATE), so a late poll cannot overwrite work that
        another poll already stored or processed.

        Returns:
            The updated transcript, or None if it had already left
            ``transcribing``.

        Raises:
            TranscriptNotFoundError: If the transcript does not exist.
        """
        content = TranscriptContent(raw_paragraphs=paragraphs)
        async for session in self._session_factory():
            stmt = (
                update(TranscriptModel)
                .where(
                    TranscriptModel.transcript_id == transcript_id,
                    TranscriptModel.status == TranscriptStatus.TRANSCRIBING.value,
                )
                .values(
                    content_data=content.model_dump(mode="json"),
                    language_code=language_code,
                    status=TranscriptStatus.TRANSCRIBED.value,
                    completed_stage=TranscriptStatus.TRANSCRIBED.value,
                    error_message=None,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            result = await session.execute(stmt)
            await session.commit()

            model = await session.get(TranscriptModel, transcript_id)
            if model is None:
                raise TranscriptNotFoundError(transcript_id)
            if result.rowcount != 1:
                return None
            await session.refresh(model)
            return _model_to_transcript(model)

    async def update_status(
        self,
        transcript_id: str,
        status: TranscriptStatus,
        error_message: str | None = None,
    ) -> None:
        """Set status (and error message, cleared unless given).

        Raises:
            TranscriptNotFoundError: If the transcript does not exist.
        """
        async for session in self._session_factory():
            stmt = (
                update(TranscriptModel)
                .where(TranscriptModel.transcript_id == transcript_id)
                .values(
                    status=status.value,
                    error_message=error_message,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise TranscriptNotFoundError(transcript_id)

    async def update_content(
        self,
        transcript_id: str,
        content: TranscriptContent,
        completed_stage: TranscriptStatus | None = None,
    ) -> None:
        """Replace content, optionally recording the stage it completes.

        Raises:
            TranscriptNotFoundError: If the transcript does not exist.
        """
        values: dict = {
            "content_data": content.model_dump(mode="json"),
            "updated_at": datetime.now(timezone.utc),
        }
        if completed_stage is not None:
            values["completed_stage"] = completed_stage.value

        async for session in self._session_factory():
            stmt = (
                update(TranscriptModel)
                .where(TranscriptModel.transcript_id == transcript_id)
                .values(**values)
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise TranscriptNotFoundError(transcript_id)

    async def delete_transcript(self, transcript_id: str) -> None:
        """Delete a transcript and its usage events."""
        async for session in self._session_factory():
            await session.execute(
                delete(UsageEventModel).where(
                    UsageEventModel.transcript_id == transcript_id
                )
            )
            await session.execute(
                delete(TranscriptModel).where(
                    TranscriptModel.transcript_id == transcript_id
                )
            )
            await session.commit()

    async def delete_for_entry(self, entry_id: str) -> int:
        """Delete every transcript of a recording (re-transcription).

        Returns:
            Number of transcripts deleted.
        """
        async for session in self._session_factory():
            ids_stmt = select(TranscriptModel.transcript_id).where(
                TranscriptModel.entry_id == entry_id
            )
            ids = list((await session.execute(ids_stmt)).scalars().all())
            if not ids:
                return 0
            await session.execute(
                delete(UsageEventModel).where(UsageEventModel.transcript_id.in_(ids))
            )
            await session.execute(
                delete(TranscriptModel).where(TranscriptModel.transcript_id.in_(ids))
            )
            await session.commit()
            logger.info("transcripts.deleted_for_entry", entry_id=entry_id, count=len(ids))
            return len(ids)

    # ── Pipeline Lock ────────────────────────────────────────────────────

    async def try_acquire_lock(
        self, transcript_id: str, now: datetime | None = None
    ) -> bool:
        """Set the lock marker if absent or stale, atomically.

        Args:
            transcript_id: Transcript to lock.
            now: Acquisition time (defaults to current UTC time).

        Returns:
            True if this caller now holds the lock, False if another worker
            holds a fresh one (or the transcript does not exist).
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._lock_timeout
        async for session in self._session_factory():
            stmt = (
                update(TranscriptModel)
                .where(
                    TranscriptModel.transcript_id == transcript_id,
                    or_(
                        TranscriptModel.pipeline_lock.is_(None),
                        TranscriptModel.pipeline_lock < cutoff,
                    ),
                )
                .values(pipeline_lock=now, updated_at=now)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def release_lock(self, transcript_id: str) -> None:
        """Clear the lock marker unconditionally."""
        async for session in self._session_factory():
            stmt = (
                update(TranscriptModel)
                .where(TranscriptModel.transcript_id == transcript_id)
                .values(pipeline_lock=None, updated_at=datetime.now(timezone.utc))
            )
            await session.execute(stmt)
            await session.commit()

    # ── Usage Events ─────────────────────────────────────────────────────

    async def record_usage(self, event: UsageEvent) -> None:
        """Persist one usage accounting event."""
        async for session in self._session_factory():
            session.add(
                UsageEventModel(
                    transcript_id=event.transcript_id,
                    provider=event.provider,
                    stage=event.stage,
                    operation=event.operation,
                    status=event.status,
                    model=event.model,
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                    total_tokens=event.total_tokens,
                    duration_ms=event.duration_ms,
                    error_message=event.error_message,
                    created_at=event.created_at or datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def list_usage(self, transcript_id: str) -> list[UsageEvent]:
        """List usage events of a transcript in recording order."""
        async for session in self._session_factory():
            stmt = (
                select(UsageEventModel)
                .where(UsageEventModel.transcript_id == transcript_id)
                .order_by(UsageEventModel.created_at, UsageEventModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_usage(m) for m in result.scalars().all()]

    async def usage_summary(self, transcript_id: str) -> list[UsageSummaryRow]:
        """Aggregate usage per provider and stage for a transcript."""
        async for session in self._session_factory():
            stmt = (
                select(
                    UsageEventModel.provider,
                    UsageEventModel.stage,
                    func.count().label("events"),
                    func.sum(case((UsageEventModel.status == "success", 1), else_=0)).label(
                        "success_events"
                    ),
                    func.sum(case((UsageEventModel.status == "error", 1), else_=0)).label(
                        "error_events"
                    ),
                    func.coalesce(func.sum(UsageEventModel.input_tokens), 0).label("input_tokens"),
                    func.coalesce(func.sum(UsageEventModel.output_tokens), 0).label("output_tokens"),
                    func.coalesce(func.sum(UsageEventModel.total_tokens), 0).label("total_tokens"),
                )
                .where(UsageEventModel.transcript_id == transcript_id)
                .group_by(UsageEventModel.provider, UsageEventModel.stage)
                .order_by(UsageEventModel.provider, UsageEventModel.stage)
            )
            result = await session.execute(stmt)
            return [
                UsageSummaryRow(
                    provider=row.provider,
                    stage=row.stage,
                    events=int(row.events),
                    success_events=int(row.success_events or 0),
                    error_events=int(row.error_events or 0),
                    input_tokens=int(row.input_tokens),
                    output_tokens=int(row.output_tokens),
                    total_tokens=int(row.total_tokens),
                )
                for row in result.all()
            ]


# ── Store Initialization ────────────────────────────────────────────────────


async def init_store(settings: Settings) -> TranscriptRepository:
    """Initialize the transcript store once at process start.

    Creates the engine, ensures tables exist and returns a repository
    bound to a fresh session factory. The returned repository is passed
    to the pipeline explicitly.
    """
    engine = create_engine_from_settings(settings)
    await create_tables(engine)
    logger.info("transcript_store.initialized", database=engine.url.render_as_string())
    return TranscriptRepository(
        make_session_factory(engine),
        lock_timeout=timedelta(minutes=settings.PIPELINE_LOCK_TIMEOUT_MINUTES),
        engine=engine,
    )
