"""Shared fixtures for the transcript pipeline tests.

Provides:
- settings: Settings with test-friendly values (no network, no keys)
- repository: InMemoryTranscriptRepository double
- completion: FakeCompletionService with no scripted responses
- sql_repository: TranscriptRepository on a throwaway SQLite database
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from factories import FakeCompletionService, InMemoryTranscriptRepository
from src.proceedings.config import Settings
from src.proceedings.core.database import create_tables, make_session_factory
from src.proceedings.transcripts.repository import TranscriptRepository


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        SPEECH_API_KEY="test-speech-key",
        SPEECH_BASE_URL="https://speech.test/v2",
        SPEECH_MAX_RETRIES=3,
        OPENAI_API_KEY="test-openai-key",
        LLM_MODEL="openai/gpt-test",
        LANGFUSE_PUBLIC_KEY="",
        LANGFUSE_SECRET_KEY="",
    )


@pytest.fixture
def repository() -> InMemoryTranscriptRepository:
    return InMemoryTranscriptRepository()


@pytest.fixture
def completion() -> FakeCompletionService:
    return FakeCompletionService()


@pytest_asyncio.fixture
async def sql_repository(tmp_path) -> AsyncGenerator[TranscriptRepository, None]:
    """TranscriptRepository backed by a file-based SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'transcripts.db'}")
    await create_tables(engine)
    repo = TranscriptRepository(make_session_factory(engine), engine=engine)
    yield repo
    await repo.close()
