"""Tests for TranscriptRepository against a SQLite database.

Exercises JSON content round-trips, status and content updates, entry
deletion, the compare-and-swap pipeline lock and usage aggregation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from factories import KENYA, make_paragraphs
from src.proceedings.errors import TranscriptNotFoundError
from src.proceedings.pipeline.consolidation import consolidate
from src.proceedings.transcripts.schemas import (
    AttributedParagraph,
    Topic,
    TranscriptContent,
    TranscriptCreate,
    TranscriptStatus,
    UsageEvent,
)

S = TranscriptStatus


# ── Fixtures ─────────────────────────────────────────────────────────────────


def _create(transcript_id: str = "job-1", entry_id: str = "entry-1", **overrides):
    defaults = {
        "transcript_id": transcript_id,
        "entry_id": entry_id,
        "audio_url": "https://media.test/a.mp3",
    }
    defaults.update(overrides)
    return TranscriptCreate(**defaults)


def _usage(**overrides) -> UsageEvent:
    defaults = {
        "transcript_id": "job-1",
        "provider": "llm",
        "stage": "identifying_speakers",
        "operation": "initial_speaker_mapping",
        "input_tokens": 100,
        "output_tokens": 20,
        "total_tokens": 120,
    }
    defaults.update(overrides)
    return UsageEvent(**defaults)


# ── Transcripts ──────────────────────────────────────────────────────────────


class TestTranscriptCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_repository):
        created = await sql_repository.create_transcript(
            _create(start_time=0.0, end_time=1800.0)
        )

        fetched = await sql_repository.get_transcript("job-1")

        assert created.status == S.TRANSCRIBING
        assert fetched.transcript_id == "job-1"
        assert fetched.end_time == 1800.0
        assert fetched.content == TranscriptContent()
        assert fetched.completed_stage is None
        assert fetched.pipeline_lock is None

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, sql_repository):
        assert await sql_repository.get_transcript("nope") is None

    @pytest.mark.asyncio
    async def test_save_raw_paragraphs(self, sql_repository):
        paragraphs = make_paragraphs([("Hello world.", "A"), ("Second one.", "B")])
        await sql_repository.create_transcript(_create())

        saved = await sql_repository.save_raw_paragraphs("job-1", paragraphs, "en")

        assert saved.status == S.TRANSCRIBED
        assert saved.completed_stage == S.TRANSCRIBED
        assert saved.language_code == "en"
        assert saved.content.raw_paragraphs == paragraphs

    @pytest.mark.asyncio
    async def test_save_raw_paragraphs_only_while_transcribing(self, sql_repository):
        """Processed content is never replaced by a late speech result."""
        first = make_paragraphs([("Hello world.", "A")])
        late = make_paragraphs([("Something else entirely.", "B")])
        await sql_repository.create_transcript(_create())
        await sql_repository.save_raw_paragraphs("job-1", first, "en")
        await sql_repository.update_status("job-1", S.COMPLETED)

        saved = await sql_repository.save_raw_paragraphs("job-1", late, "fr")

        fetched = await sql_repository.get_transcript("job-1")
        assert saved is None
        assert fetched.status == S.COMPLETED
        assert fetched.language_code == "en"
        assert fetched.content.raw_paragraphs == first

    @pytest.mark.asyncio
    async def test_update_content_round_trips_statements(self, sql_repository):
        paragraphs = make_paragraphs([("Debt relief now.", "A")])
        statements = consolidate(
            [AttributedParagraph(paragraph=paragraphs[0], speaker=KENYA)]
        )
        topic = Topic(key="debt-relief", label="Debt Relief", description="d", color="#94a3b8")
        await sql_repository.create_transcript(_create())

        await sql_repository.update_content(
            "job-1",
            TranscriptContent(
                raw_paragraphs=paragraphs,
                statements=statements,
                topics={"debt-relief": topic},
            ),
            completed_stage=S.ANALYZING_TOPICS,
        )

        fetched = await sql_repository.get_transcript("job-1")
        assert fetched.content.statements == statements
        assert fetched.content.topics["debt-relief"] == topic
        assert fetched.completed_stage == S.ANALYZING_TOPICS

    @pytest.mark.asyncio
    async def test_update_status_sets_and_clears_error(self, sql_repository):
        await sql_repository.create_transcript(_create())

        await sql_repository.update_status("job-1", S.ERROR, "llm: timeout")
        failed = await sql_repository.get_transcript("job-1")
        await sql_repository.update_status("job-1", S.IDENTIFYING_SPEAKERS)
        resumed = await sql_repository.get_transcript("job-1")

        assert failed.status == S.ERROR
        assert failed.error_message == "llm: timeout"
        assert resumed.status == S.IDENTIFYING_SPEAKERS
        assert resumed.error_message is None

    @pytest.mark.asyncio
    async def test_updates_on_missing_transcript_raise(self, sql_repository):
        with pytest.raises(TranscriptNotFoundError):
            await sql_repository.update_status("nope", S.ERROR, "x")
        with pytest.raises(TranscriptNotFoundError):
            await sql_repository.update_content("nope", TranscriptContent())
        with pytest.raises(TranscriptNotFoundError):
            await sql_repository.save_raw_paragraphs("nope", [], None)

    @pytest.mark.asyncio
    async def test_list_by_status(self, sql_repository):
        await sql_repository.create_transcript(_create("a"))
        await sql_repository.create_transcript(_create("b"))
        await sql_repository.update_status("b", S.ERROR, "boom")

        errors = await sql_repository.list_by_status(S.ERROR)
        transcribing = await sql_repository.list_by_status(S.TRANSCRIBING, limit=5)

        assert [t.transcript_id for t in errors] == ["b"]
        assert [t.transcript_id for t in transcribing] == ["a"]

    @pytest.mark.asyncio
    async def test_delete_for_entry(self, sql_repository):
        await sql_repository.create_transcript(_create("seg-2", start_time=600.0))
        await sql_repository.create_transcript(_create("seg-1", start_time=0.0))
        await sql_repository.create_transcript(_create("other", entry_id="entry-2"))
        await sql_repository.record_usage(_usage(transcript_id="seg-1"))

        listed = await sql_repository.list_for_entry("entry-1")
        deleted = await sql_repository.delete_for_entry("entry-1")

        assert [t.transcript_id for t in listed] == ["seg-1", "seg-2"]
        assert deleted == 2
        assert await sql_repository.list_for_entry("entry-1") == []
        assert await sql_repository.list_usage("seg-1") == []
        assert await sql_repository.get_transcript("other") is not None

    @pytest.mark.asyncio
    async def test_delete_transcript(self, sql_repository):
        await sql_repository.create_transcript(_create())
        await sql_repository.delete_transcript("job-1")
        assert await sql_repository.get_transcript("job-1") is None


# ── Pipeline Lock ────────────────────────────────────────────────────────────


class TestPipelineLockStore:
    """Compare-and-swap semantics of try_acquire_lock()."""

    @pytest.mark.asyncio
    async def test_acquire_then_contended(self, sql_repository):
        await sql_repository.create_transcript(_create())

        assert await sql_repository.try_acquire_lock("job-1") is True
        assert await sql_repository.try_acquire_lock("job-1") is False

        fetched = await sql_repository.get_transcript("job-1")
        assert fetched.pipeline_lock is not None

    @pytest.mark.asyncio
    async def test_release_frees_lock(self, sql_repository):
        await sql_repository.create_transcript(_create())
        await sql_repository.try_acquire_lock("job-1")

        await sql_repository.release_lock("job-1")

        assert (await sql_repository.get_transcript("job-1")).pipeline_lock is None
        assert await sql_repository.try_acquire_lock("job-1") is True

    @pytest.mark.asyncio
    async def test_stale_lock_can_be_taken(self, sql_repository):
        """A lock older than the timeout no longer blocks."""
        await sql_repository.create_transcript(_create())
        start = datetime.now(timezone.utc)
        await sql_repository.try_acquire_lock("job-1", now=start)

        within = start + sql_repository.lock_timeout - timedelta(minutes=1)
        beyond = start + sql_repository.lock_timeout + timedelta(minutes=1)

        assert await sql_repository.try_acquire_lock("job-1", now=within) is False
        assert await sql_repository.try_acquire_lock("job-1", now=beyond) is True

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, sql_repository):
        await sql_repository.create_transcript(_create())

        results = await asyncio.gather(
            *(sql_repository.try_acquire_lock("job-1") for _ in range(5))
        )

        assert sorted(results) == [False, False, False, False, True]

    @pytest.mark.asyncio
    async def test_missing_transcript_not_acquired(self, sql_repository):
        assert await sql_repository.try_acquire_lock("nope") is False


# ── Usage Events ─────────────────────────────────────────────────────────────


class TestUsage:
    @pytest.mark.asyncio
    async def test_list_usage_in_order(self, sql_repository):
        await sql_repository.record_usage(_usage(operation="initial_speaker_mapping"))
        await sql_repository.record_usage(_usage(operation="resegment_paragraph"))

        events = await sql_repository.list_usage("job-1")

        assert [e.operation for e in events] == [
            "initial_speaker_mapping",
            "resegment_paragraph",
        ]
        assert events[0].created_at is not None

    @pytest.mark.asyncio
    async def test_usage_summary_groups_by_provider_and_stage(self, sql_repository):
        no_tokens = {"input_tokens": None, "output_tokens": None, "total_tokens": None}
        await sql_repository.record_usage(_usage())
        await sql_repository.record_usage(_usage(status="error", **no_tokens))
        await sql_repository.record_usage(
            _usage(
                stage="analyzing_topics",
                operation="define_topics",
                input_tokens=40,
                output_tokens=10,
                total_tokens=50,
            )
        )
        await sql_repository.record_usage(
            _usage(
                provider="speech",
                stage="transcribing",
                operation="speech_poll_transcription",
                **no_tokens,
            )
        )

        rows = await sql_repository.usage_summary("job-1")
        by_key = {(r.provider, r.stage): r for r in rows}

        identifying = by_key[("llm", "identifying_speakers")]
        assert identifying.events == 2
        assert identifying.success_events == 1
        assert identifying.error_events == 1
        assert identifying.total_tokens == 120
        assert by_key[("llm", "analyzing_topics")].input_tokens == 40
        assert by_key[("speech", "transcribing")].total_tokens == 0
        assert len(rows) == 3
