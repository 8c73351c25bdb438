"""Topic engine: define discussion topics, then tag statements with them.

Chair statements (function contains chair/president/moderator) never take
part: they are left out of topic definition and always get empty tags.
With fewer than two non-chair statements the engine does nothing.

1. define_topics(): one completion over all non-chair statements,
   returning 5-10 topics with kebab-case keys and palette colors.
2. tag_statements(): one completion per non-chair statement, run
   concurrently, each returning 0-3 keys from the defined set. A failed
   call leaves that statement untagged.
"""

from __future__ import annotations

import asyncio
import re

import structlog
from pydantic import BaseModel, Field

from src.proceedings.pipeline.prompts import (
    TOPIC_DEFINITION_SYSTEM_PROMPT,
    TOPIC_TAGGING_SYSTEM_PROMPT,
)
from src.proceedings.pipeline.text import truncate
from src.proceedings.services.llm import CompletionService
from src.proceedings.services.usage import UsageOperation, UsageStage
from src.proceedings.transcripts.schemas import Statement, Topic

logger = structlog.get_logger(__name__)

TOPIC_COLOR_PALETTE = (
    "#94a3b8",  # slate
    "#94a9c9",  # light blue
    "#9ca3af",  # gray
    "#a8b5c7",  # cool gray
    "#a3b5a8",  # sage
    "#b5a8a3",  # warm gray
    "#a8a3b5",  # lavender
    "#b5b5a3",  # olive
    "#a3b5b5",  # teal gray
    "#b5a3a8",  # mauve
)
MIN_NON_CHAIR_STATEMENTS = 2
MAX_TAGS_PER_STATEMENT = 3
MAX_TOPICS = 10

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]+")


# ── Response Models ──────────────────────────────────────────────────────────


class TopicDefinition(BaseModel):
    key: str = Field(description="Concise kebab-case key, 2-4 words")
    description: str
    color: str = Field(description="One color from the provided palette")


class TopicDefinitions(BaseModel):
    topics: list[TopicDefinition] = Field(min_length=1, max_length=MAX_TOPICS)


class StatementTopicTags(BaseModel):
    topic_keys: list[str] = Field(
        default_factory=list,
        description="0-3 keys from the available topics",
    )


# ── Helpers ──────────────────────────────────────────────────────────────────


def kebab_key(key: str) -> str:
    """``Climate Finance`` -> ``climate-finance``."""
    return _NON_KEY_CHARS.sub("-", key.strip().lower()).strip("-")


def topic_label(key: str) -> str:
    """``climate-finance`` -> ``Climate Finance``."""
    return " ".join(part.capitalize() for part in key.split("-") if part)


def build_topics(definitions: list[TopicDefinition]) -> dict[str, Topic]:
    """Index definitions by key, fixing off-palette colors.

    Keys that are not kebab-case are rewritten into it. Duplicate keys
    keep their first definition.
    """
    topics: dict[str, Topic] = {}
    for position, definition in enumerate(definitions):
        key = kebab_key(definition.key)
        if key and key != definition.key:
            logger.warning("topics.key_normalized", key=definition.key, normalized=key)
        if not key or key in topics:
            continue
        color = definition.color.strip().lower()
        if color not in TOPIC_COLOR_PALETTE:
            color = TOPIC_COLOR_PALETTE[position % len(TOPIC_COLOR_PALETTE)]
        topics[key] = Topic(
            key=key,
            label=topic_label(key),
            description=definition.description,
            color=color,
        )
    return topics


def with_topic_keys(statement: Statement, keys: list[str]) -> Statement:
    """Copy of ``statement`` whose every sentence carries ``keys``."""
    paragraphs = [
        paragraph.model_copy(
            update={
                "sentences": [
                    s.model_copy(update={"topic_keys": list(keys)})
                    for s in paragraph.sentences
                ]
            }
        )
        for paragraph in statement.paragraphs
    ]
    return statement.model_copy(update={"paragraphs": paragraphs})


# ── Engine ───────────────────────────────────────────────────────────────────


class TopicAnalyzer:
    """Topic definition and statement tagging.

    Args:
        completion: Completion service.
        context_chars: Characters of each neighbouring statement shown
            when tagging.
    """

    def __init__(self, completion: CompletionService, context_chars: int = 200) -> None:
        self._completion = completion
        self._context_chars = context_chars

    async def analyze(
        self,
        statements: list[Statement],
        transcript_id: str | None = None,
    ) -> tuple[list[Statement], dict[str, Topic]]:
        """Define topics and tag statements.

        Returns:
            (tagged statements, topics by key). Both untouched/empty when
            there are fewer than two non-chair statements.
        """
        topics = await self.define_topics(statements, transcript_id)
        if not topics:
            return statements, {}
        tagged = await self.tag_statements(statements, topics, transcript_id)
        return tagged, topics

    async def define_topics(
        self,
        statements: list[Statement],
        transcript_id: str | None = None,
    ) -> dict[str, Topic]:
        """One completion over all non-chair statements.

        Raises:
            CompletionParseError / ProviderError: Fatal to the stage.
        """
        substantive = [
            (idx, s) for idx, s in enumerate(statements) if not s.speaker.is_chair
        ]
        if len(substantive) < MIN_NON_CHAIR_STATEMENTS:
            logger.info(
                "topics.skipped",
                transcript_id=transcript_id,
                non_chair_statements=len(substantive),
            )
            return {}

        context = "\n\n".join(
            f"[{idx}] {s.speaker.label}: {s.text}" for idx, s in substantive
        )
        user_prompt = (
            "Analyze these statements and identify the main topics:\n\n"
            f"{context}\n\nColor palette: {', '.join(TOPIC_COLOR_PALETTE)}"
        )
        result = await self._completion.complete(
            TOPIC_DEFINITION_SYSTEM_PROMPT,
            user_prompt,
            TopicDefinitions,
            operation=UsageOperation.DEFINE_TOPICS,
            stage=UsageStage.ANALYZING_TOPICS,
            transcript_id=transcript_id,
        )
        topics = build_topics(result.topics)
        logger.info(
            "topics.defined",
            transcript_id=transcript_id,
            keys=list(topics),
        )
        return topics

    async def tag_statements(
        self,
        statements: list[Statement],
        topics: dict[str, Topic],
        transcript_id: str | None = None,
    ) -> list[Statement]:
        """Tag every non-chair statement concurrently.

        Returns:
            New statements with topic keys on every sentence.
        """
        if not topics:
            return statements

        system_prompt = TOPIC_TAGGING_SYSTEM_PROMPT.format(
            topic_descriptions="\n".join(
                f"- {key}: {topic.description}" for key, topic in topics.items()
            )
        )
        keys = await asyncio.gather(
            *(
                self._tag_one(idx, statements, topics, system_prompt, transcript_id)
                for idx in range(len(statements))
            )
        )
        tagged = [with_topic_keys(s, k) for s, k in zip(statements, keys)]
        logger.info(
            "topics.tagged",
            transcript_id=transcript_id,
            tagged=sum(1 for k in keys if k),
            statements=len(statements),
        )
        return tagged

    def build_tagging_context(self, idx: int, statements: list[Statement]) -> str:
        parts: list[str] = []
        if idx > 0:
            prev = statements[idx - 1]
            parts.append(
                f"PREVIOUS: {prev.speaker.label}: {truncate(prev.text, self._context_chars)}"
            )
        current = statements[idx]
        parts.append(f"CURRENT: {current.speaker.label}: {current.text}")
        if idx < len(statements) - 1:
            nxt = statements[idx + 1]
            parts.append(
                f"NEXT: {nxt.speaker.label}: {truncate(nxt.text, self._context_chars)}"
            )
        return "\n\n".join(parts)

    async def _tag_one(
        self,
        idx: int,
        statements: list[Statement],
        topics: dict[str, Topic],
        system_prompt: str,
        transcript_id: str | None,
    ) -> list[str]:
        if statements[idx].speaker.is_chair:
            return []

        user_prompt = (
            "Which topics (if any) are discussed in this statement?\n\n"
            + self.build_tagging_context(idx, statements)
        )
        try:
            result = await self._completion.complete(
                system_prompt,
                user_prompt,
                StatementTopicTags,
                operation=UsageOperation.TAG_STATEMENT_TOPICS,
                stage=UsageStage.TAGGING,
                transcript_id=transcript_id,
            )
        except Exception as exc:
            logger.warning(
                "topics.tagging_failed",
                transcript_id=transcript_id,
                index=idx,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return []

        keys: list[str] = []
        for key in result.topic_keys:
            if key in topics and key not in keys:
                keys.append(key)
        return keys[:MAX_TAGS_PER_STATEMENT]
