"""TranscriptPipeline -- drives a transcript from submission to topics.

Stages run strictly in order, each persisted before the next starts:

    transcribing          speech service job (polled, never held open)
    transcribed           raw paragraphs stored
    identifying_speakers  assignment -> resegmentation -> consolidation
    analyzing_topics      topic definition -> tagging
    completed

Runs are poll-driven and single-flight: whoever polls a transcript that
is ready for (or stuck in) processing tries the per-transcript lock and,
if it wins, runs the pending stages in a background task. Each run resumes
after ``completed_stage``, so a crashed or failed run never repeats work
whose output is already stored.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from src.proceedings.config import Settings, get_settings
from src.proceedings.core.monitoring import pipeline_runs_total, track_stage
from src.proceedings.errors import ProceedingsError, TranscriptNotFoundError
from src.proceedings.pipeline.assignment import SpeakerAssigner
from src.proceedings.pipeline.consolidation import consolidate
from src.proceedings.pipeline.resegmentation import Resegmenter
from src.proceedings.pipeline.topics import TopicAnalyzer
from src.proceedings.services.llm import CompletionService
from src.proceedings.services.speech import SpeechServiceClient
from src.proceedings.services.usage import RepositoryUsageRecorder
from src.proceedings.transcripts.lock import PipelineLockManager
from src.proceedings.transcripts.repository import TranscriptRepository, init_store
from src.proceedings.transcripts.schemas import (
    Paragraph,
    PollResult,
    Statement,
    Transcript,
    TranscriptCreate,
    TranscriptStatus,
)
from src.proceedings.transcripts.state import (
    InvalidTransitionError,
    resume_stage,
    validate_transition,
)

logger = structlog.get_logger(__name__)

S = TranscriptStatus


class TranscriptPipeline:
    """Orchestrates transcription, speaker identification and topics.

    Args:
        repository: Transcript store.
        speech: Speech service client.
        completion: Completion service shared by all stages.
        settings: Application settings. Uses get_settings() if None.
    """

    def __init__(
        self,
        repository: TranscriptRepository,
        speech: SpeechServiceClient,
        completion: CompletionService,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._repository = repository
        self._speech = speech
        self._locks = PipelineLockManager(repository)
        self._assigner = SpeakerAssigner(
            completion, boundary_window=settings.OFF_RECORD_BOUNDARY_WINDOW
        )
        self._resegmenter = Resegmenter(
            completion, context_size=settings.RESEGMENT_CONTEXT_SIZE
        )
        self._topics = TopicAnalyzer(
            completion, context_chars=settings.TOPIC_TAG_CONTEXT_CHARS
        )
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def repository(self) -> TranscriptRepository:
        return self._repository

    async def close(self) -> None:
        """Wait for background runs, then release the store."""
        await self.wait_for_background()
        await self._repository.close()

    # ── Submission & Polling ─────────────────────────────────────────────

    async def request_transcription(
        self,
        audio_url: str,
        entry_id: str,
        start_time: float | None = None,
        end_time: float | None = None,
        force: bool = True,
    ) -> Transcript:
        """Submit audio and register the transcript in ``transcribing``.

        Args:
            audio_url: Audio to transcribe.
            entry_id: Recording the audio belongs to.
            start_time: Optional segment start (seconds).
            end_time: Optional segment end (seconds).
            force: Delete the recording's previous transcripts first.
        """
        if force:
            await self._repository.delete_for_entry(entry_id)

        job_id = await self._speech.submit(audio_url)
        transcript = await self._repository.create_transcript(
            TranscriptCreate(
                transcript_id=job_id,
                entry_id=entry_id,
                audio_url=audio_url,
                start_time=start_time,
                end_time=end_time,
            )
        )
        logger.info(
            "pipeline.transcription_requested",
            transcript_id=job_id,
            entry_id=entry_id,
            force=force,
        )
        return transcript

    async def poll(self, transcript_id: str) -> PollResult:
        """Report progress, advancing the transcript where possible.

        Raises:
            TranscriptNotFoundError: If the transcript does not exist.
            ProviderError: If the speech service cannot be reached.
        """
        transcript = await self._get(transcript_id)
        content = transcript.content

        if transcript.status == S.COMPLETED:
            return PollResult(
                stage=S.COMPLETED,
                raw_paragraphs=content.raw_paragraphs,
                statements=content.statements,
                topics=content.topics,
            )

        if transcript.status == S.ERROR:
            return PollResult(
                stage=S.ERROR,
                error_message=transcript.error_message or "Unknown error",
                raw_paragraphs=content.raw_paragraphs,
                statements=content.statements,
                topics=content.topics,
            )

        if transcript.status in (S.IDENTIFYING_SPEAKERS, S.ANALYZING_TOPICS):
            if not self._lock_is_fresh(transcript):
                await self._start_background_run(transcript_id)
            return PollResult(
                stage=transcript.status,
                raw_paragraphs=content.raw_paragraphs,
                statements=content.statements,
                topics=content.topics,
            )

        if transcript.status == S.TRANSCRIBED:
            await self._start_background_run(transcript_id)
            return PollResult(
                stage=S.IDENTIFYING_SPEAKERS,
                raw_paragraphs=content.raw_paragraphs,
            )

        # Still transcribing: ask the speech service
        job = await self._speech.poll(transcript_id)
        if job.status == "completed":
            paragraphs = await self._speech.fetch_paragraphs(transcript_id)
            validate_transition(S.TRANSCRIBING, S.TRANSCRIBED)
            saved = await self._repository.save_raw_paragraphs(
                transcript_id, paragraphs, job.language_code
            )
            if saved is None:
                # Another poll stored the speech output first
                logger.info("pipeline.already_transcribed", transcript_id=transcript_id)
                current = await self._get(transcript_id)
                return PollResult(
                    stage=current.status,
                    error_message=current.error_message,
                    raw_paragraphs=current.content.raw_paragraphs,
                    statements=current.content.statements,
                    topics=current.content.topics,
                )
            logger.info(
                "pipeline.transcribed",
                transcript_id=transcript_id,
                paragraphs=len(paragraphs),
                language_code=job.language_code,
            )
            await self._start_background_run(transcript_id)
            return PollResult(stage=S.IDENTIFYING_SPEAKERS, raw_paragraphs=paragraphs)

        if job.status == "error":
            message = job.error or "Speech transcription failed"
            validate_transition(S.TRANSCRIBING, S.ERROR)
            await self._repository.update_status(transcript_id, S.ERROR, message)
            logger.warning(
                "pipeline.transcription_failed",
                transcript_id=transcript_id,
                error=message,
            )
            return PollResult(stage=S.ERROR, error_message=message)

        return PollResult(stage=S.TRANSCRIBING)

    # ── Runs ─────────────────────────────────────────────────────────────

    async def run(self, transcript_id: str) -> bool:
        """Execute all pending stages under the pipeline lock.

        Failures are recorded on the transcript (status ``error``) rather
        than raised.

        Returns:
            False if another worker holds the lock, True otherwise.
        """
        async with self._locks.hold(transcript_id) as acquired:
            if not acquired:
                return False
            await self._run_locked(transcript_id)
        return True

    async def retry(self, transcript_id: str) -> bool:
        """Resume a failed transcript after its last stored stage.

        Raises:
            TranscriptNotFoundError: If the transcript does not exist.
            InvalidTransitionError: If the transcript is not in ``error``.
        """
        transcript = await self._get(transcript_id)
        target = resume_stage(transcript)
        if transcript.status != S.ERROR:
            raise InvalidTransitionError(transcript.status, target)

        logger.info(
            "pipeline.retry",
            transcript_id=transcript_id,
            resume_at=target.value,
        )
        if target == S.TRANSCRIBING:
            # Nothing stored yet: hand the transcript back to polling
            validate_transition(S.ERROR, S.TRANSCRIBING)
            await self._repository.update_status(transcript_id, S.TRANSCRIBING)
            return True
        return await self.run(transcript_id)

    async def reidentify(self, transcript_id: str) -> bool:
        """Recompute statements and topics of a completed transcript.

        Status stays ``completed``; only content is replaced.

        Returns:
            False if another worker holds the lock, True otherwise.
        """
        transcript = await self._get(transcript_id)
        if transcript.status != S.COMPLETED:
            raise ProceedingsError(
                f"Only completed transcripts can be re-identified "
                f"(status: {transcript.status.value})"
            )

        async with self._locks.hold(transcript_id) as acquired:
            if not acquired:
                return False
            content = transcript.content
            statements = await self.identify_speakers(content.raw_paragraphs, transcript_id)
            statements, topics = await self._topics.analyze(statements, transcript_id)
            await self._repository.update_content(
                transcript_id,
                content.model_copy(update={"statements": statements, "topics": topics}),
                completed_stage=S.ANALYZING_TOPICS,
            )
            logger.info(
                "pipeline.reidentified",
                transcript_id=transcript_id,
                statements=len(statements),
                topics=len(topics),
            )
        return True

    async def identify_speakers(
        self,
        paragraphs: list[Paragraph],
        transcript_id: str | None = None,
    ) -> list[Statement]:
        """Assignment, resegmentation and consolidation of raw paragraphs."""
        if not paragraphs:
            logger.info("pipeline.no_paragraphs", transcript_id=transcript_id)
            return []
        assignments = await self._assigner.assign(paragraphs, transcript_id)
        attributed = await self._resegmenter.resegment(paragraphs, assignments, transcript_id)
        return consolidate(attributed)

    async def wait_for_background(self) -> None:
        """Wait until every background run started by poll() has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────

    async def _get(self, transcript_id: str) -> Transcript:
        transcript = await self._repository.get_transcript(transcript_id)
        if transcript is None:
            raise TranscriptNotFoundError(transcript_id)
        return transcript

    def _lock_is_fresh(self, transcript: Transcript) -> bool:
        if transcript.pipeline_lock is None:
            return False
        age = datetime.now(timezone.utc) - transcript.pipeline_lock
        return age < self._repository.lock_timeout

    async def _start_background_run(self, transcript_id: str) -> None:
        """Take the lock here and, if won, run the stages in a task."""
        if not await self._locks.try_acquire(transcript_id):
            return
        task = asyncio.create_task(self._run_and_release(transcript_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "pipeline.background_run_crashed",
                error=str(task.exception()),
            )

    async def _run_and_release(self, transcript_id: str) -> None:
        try:
            await self._run_locked(transcript_id)
        finally:
            await self._locks.release(transcript_id)

    async def _run_locked(self, transcript_id: str) -> None:
        """Run pending stages; caller holds the lock."""
        loaded = False
        try:
            transcript = await self._get(transcript_id)
            loaded = True
            await self._execute(transcript)
            pipeline_runs_total.labels(outcome="completed").inc()
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error(
                "pipeline.failed",
                transcript_id=transcript_id,
                error_type=type(exc).__name__,
                error=message,
                exc_info=True,
            )
            pipeline_runs_total.labels(outcome="error").inc()
            if loaded:
                await self._fail(transcript_id, message)

    async def _execute(self, transcript: Transcript) -> None:
        transcript_id = transcript.transcript_id
        status = transcript.status
        content = transcript.content
        stage = resume_stage(transcript)

        if status == S.COMPLETED:
            logger.info("pipeline.already_completed", transcript_id=transcript_id)
            return
        if stage == S.TRANSCRIBING:
            raise ProceedingsError("No raw paragraphs available")

        logger.info(
            "pipeline.started",
            transcript_id=transcript_id,
            status=status.value,
            resume_at=stage.value,
        )

        if stage == S.IDENTIFYING_SPEAKERS:
            status = await self._transition(transcript_id, status, S.IDENTIFYING_SPEAKERS)
            async with track_stage(S.IDENTIFYING_SPEAKERS.value):
                statements = await self.identify_speakers(content.raw_paragraphs, transcript_id)
            content = content.model_copy(update={"statements": statements, "topics": {}})
            await self._repository.update_content(
                transcript_id, content, completed_stage=S.IDENTIFYING_SPEAKERS
            )
            stage = S.ANALYZING_TOPICS

        if stage == S.ANALYZING_TOPICS:
            status = await self._transition(transcript_id, status, S.ANALYZING_TOPICS)
            async with track_stage(S.ANALYZING_TOPICS.value):
                statements, topics = await self._topics.analyze(
                    content.statements, transcript_id
                )
            content = content.model_copy(update={"statements": statements, "topics": topics})
            await self._repository.update_content(
                transcript_id, content, completed_stage=S.ANALYZING_TOPICS
            )

        await self._transition(transcript_id, status, S.COMPLETED)
        logger.info(
            "pipeline.completed",
            transcript_id=transcript_id,
            statements=len(content.statements),
            topics=len(content.topics),
        )

    async def _transition(
        self,
        transcript_id: str,
        current: TranscriptStatus,
        target: TranscriptStatus,
    ) -> TranscriptStatus:
        validate_transition(current, target)
        if current != target:
            await self._repository.update_status(transcript_id, target)
        return target

    async def _fail(self, transcript_id: str, message: str) -> None:
        transcript = await self._get(transcript_id)
        if transcript.status == S.COMPLETED:
            # A worker that took over a stale lock finished the transcript
            logger.warning(
                "pipeline.failure_after_takeover",
                transcript_id=transcript_id,
                error=message,
            )
            return
        if transcript.status != S.ERROR:
            validate_transition(transcript.status, S.ERROR)
        await self._repository.update_status(transcript_id, S.ERROR, message)


async def create_pipeline(settings: Settings | None = None) -> TranscriptPipeline:
    """Wire a pipeline from settings: store, usage recorder and clients.

    Called once at process start by entry points. Close the store with
    ``await pipeline.close()`` on shutdown.
    """
    settings = settings or get_settings()
    repository = await init_store(settings)
    recorder = RepositoryUsageRecorder(repository)
    return TranscriptPipeline(
        repository,
        SpeechServiceClient(settings, usage_recorder=recorder),
        CompletionService(settings, usage_recorder=recorder),
        settings,
    )
