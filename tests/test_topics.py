"""Tests for topic definition and statement tagging.

Covers the non-chair threshold, chair exclusion, palette repair, tag
filtering (known keys only, at most three) and per-statement failure
isolation during tagging.
"""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from factories import BRAZIL, CHAIR, KENYA, FakeCompletionService, make_paragraph
from src.proceedings.errors import CompletionParseError, ProviderError
from src.proceedings.pipeline.consolidation import to_statement_paragraph
from src.proceedings.pipeline.topics import (
    MAX_TOPICS,
    TOPIC_COLOR_PALETTE,
    StatementTopicTags,
    TopicAnalyzer,
    TopicDefinition,
    TopicDefinitions,
    build_topics,
    topic_label,
)
from src.proceedings.transcripts.schemas import SpeakerAttribution, Statement


# ── Fixtures ─────────────────────────────────────────────────────────────────


def _statement(speaker: SpeakerAttribution, text: str) -> Statement:
    paragraph = make_paragraph(text)
    return Statement(
        speaker=speaker,
        start_ms=paragraph.start_ms,
        end_ms=paragraph.end_ms,
        paragraphs=[to_statement_paragraph(paragraph)],
    )


DEFINITIONS = TopicDefinitions(
    topics=[
        TopicDefinition(
            key="climate-finance",
            description="Funding for adaptation and mitigation",
            color=TOPIC_COLOR_PALETTE[0],
        ),
        TopicDefinition(
            key="debt-relief",
            description="Restructuring sovereign debt",
            color=TOPIC_COLOR_PALETTE[1],
        ),
        TopicDefinition(
            key="gender-equality",
            description="Women's participation and rights",
            color=TOPIC_COLOR_PALETTE[2],
        ),
        TopicDefinition(
            key="ocean-health",
            description="Marine pollution and fisheries",
            color=TOPIC_COLOR_PALETTE[3],
        ),
    ]
)


@pytest.fixture
def statements() -> list[Statement]:
    return [
        _statement(CHAIR, "I give the floor to Kenya."),
        _statement(KENYA, "Climate finance must reach the most vulnerable. Debt is crushing us."),
        _statement(CHAIR, "I thank Kenya and give the floor to Brazil."),
        _statement(BRAZIL, "We support gender equality in climate action."),
    ]


def _tag_by_speaker(mapping: dict[str, object]):
    """Responder choosing tags from the CURRENT statement's label."""

    def respond(prompt: str):
        label = re.search(r"CURRENT: ([^:]+):", prompt).group(1)
        return mapping[label]

    return respond


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestBuildTopics:
    def test_label_from_key(self):
        assert topic_label("climate-finance") == "Climate Finance"
        assert topic_label("sdg-16") == "Sdg 16"

    def test_off_palette_color_replaced(self):
        """Colors outside the palette fall back to the palette by position."""
        topics = build_topics(
            [
                TopicDefinition(key="a-topic", description="A", color="#FF0000"),
                TopicDefinition(key="b-topic", description="B", color="#ff0000"),
            ]
        )
        assert topics["a-topic"].color == TOPIC_COLOR_PALETTE[0]
        assert topics["b-topic"].color == TOPIC_COLOR_PALETTE[1]

    def test_palette_color_case_insensitive(self):
        topics = build_topics(
            [TopicDefinition(key="a-topic", description="A", color=TOPIC_COLOR_PALETTE[4].upper())]
        )
        assert topics["a-topic"].color == TOPIC_COLOR_PALETTE[4]

    def test_duplicate_keys_keep_first(self):
        topics = build_topics(
            [
                TopicDefinition(key="debt", description="first", color=TOPIC_COLOR_PALETTE[0]),
                TopicDefinition(key="debt", description="second", color=TOPIC_COLOR_PALETTE[1]),
            ]
        )
        assert list(topics) == ["debt"]
        assert topics["debt"].description == "first"

    def test_non_kebab_keys_normalized(self):
        topics = build_topics(
            [
                TopicDefinition(key="Climate Finance", description="A", color=TOPIC_COLOR_PALETTE[0]),
                TopicDefinition(key="loss_and_damage", description="B", color=TOPIC_COLOR_PALETTE[1]),
            ]
        )
        assert list(topics) == ["climate-finance", "loss-and-damage"]
        assert topics["climate-finance"].label == "Climate Finance"

    def test_definition_count_bounded(self):
        """Empty or oversized topic lists fail schema validation."""
        definition = TopicDefinition(key="a-topic", description="A", color=TOPIC_COLOR_PALETTE[0])
        with pytest.raises(ValidationError):
            TopicDefinitions(topics=[])
        with pytest.raises(ValidationError):
            TopicDefinitions(topics=[definition] * (MAX_TOPICS + 1))
        assert len(TopicDefinitions(topics=[definition] * MAX_TOPICS).topics) == MAX_TOPICS


# ── Definition ───────────────────────────────────────────────────────────────


class TestDefineTopics:
    """Tests for TopicAnalyzer.define_topics()."""

    @pytest.mark.asyncio
    async def test_fewer_than_two_non_chair_makes_no_calls(self):
        completion = FakeCompletionService()
        statements = [
            _statement(CHAIR, "Welcome."),
            _statement(KENYA, "Thank you."),
            _statement(CHAIR, "The meeting is adjourned."),
        ]

        tagged, topics = await TopicAnalyzer(completion).analyze(statements)

        assert topics == {}
        assert tagged == statements
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_chair_statements_excluded_from_prompt(self, statements):
        completion = FakeCompletionService({TopicDefinitions: DEFINITIONS})

        topics = await TopicAnalyzer(completion).define_topics(statements, "job-1")

        prompt = completion.calls[0]["user_prompt"]
        assert "[1] Delegate X: Climate finance" in prompt
        assert "[3] Ms. Silva: We support" in prompt
        assert "give the floor" not in prompt
        assert TOPIC_COLOR_PALETTE[9] in prompt
        assert list(topics) == [
            "climate-finance",
            "debt-relief",
            "gender-equality",
            "ocean-health",
        ]
        assert completion.calls[0]["operation"] == "define_topics"
        assert completion.calls[0]["stage"] == "analyzing_topics"

    @pytest.mark.asyncio
    async def test_definition_failure_propagates(self, statements):
        completion = FakeCompletionService(
            {TopicDefinitions: CompletionParseError("TopicDefinitions: bad json")}
        )
        with pytest.raises(CompletionParseError):
            await TopicAnalyzer(completion).analyze(statements)


# ── Tagging ──────────────────────────────────────────────────────────────────


class TestTagStatements:
    """Tests for TopicAnalyzer.tag_statements() via analyze()."""

    @pytest.mark.asyncio
    async def test_chair_untagged_and_no_call(self, statements):
        """Chair statements get empty tags without a completion call."""
        completion = FakeCompletionService(
            {
                TopicDefinitions: DEFINITIONS,
                StatementTopicTags: _tag_by_speaker(
                    {
                        "Delegate X": StatementTopicTags(topic_keys=["climate-finance"]),
                        "Ms. Silva": StatementTopicTags(topic_keys=["gender-equality"]),
                    }
                ),
            }
        )

        tagged, topics = await TopicAnalyzer(completion).analyze(statements, "job-1")

        assert [s.topic_keys for s in tagged] == [
            [],
            ["climate-finance"],
            [],
            ["gender-equality"],
        ]
        assert len(completion.calls_for(StatementTopicTags)) == 2
        assert set(topics) >= {"climate-finance", "gender-equality"}

    @pytest.mark.asyncio
    async def test_every_sentence_carries_statement_keys(self, statements):
        completion = FakeCompletionService(
            {
                TopicDefinitions: DEFINITIONS,
                StatementTopicTags: StatementTopicTags(
                    topic_keys=["climate-finance", "debt-relief"]
                ),
            }
        )

        tagged, _ = await TopicAnalyzer(completion).analyze(statements)

        sentences = tagged[1].paragraphs[0].sentences
        assert len(sentences) == 2
        assert all(s.topic_keys == ["climate-finance", "debt-relief"] for s in sentences)

    @pytest.mark.asyncio
    async def test_unknown_keys_dropped_and_capped(self, statements):
        """Only defined keys survive, deduplicated, at most three."""
        completion = FakeCompletionService(
            {
                TopicDefinitions: DEFINITIONS,
                StatementTopicTags: StatementTopicTags(
                    topic_keys=[
                        "made-up",
                        "debt-relief",
                        "debt-relief",
                        "ocean-health",
                        "climate-finance",
                        "gender-equality",
                    ]
                ),
            }
        )

        tagged, topics = await TopicAnalyzer(completion).analyze(statements)

        assert tagged[1].topic_keys == ["debt-relief", "ocean-health", "climate-finance"]
        for statement in tagged:
            assert set(statement.topic_keys) <= set(topics)

    @pytest.mark.asyncio
    async def test_failed_tag_call_leaves_statement_untagged(self, statements):
        """One failing call does not affect the others."""
        completion = FakeCompletionService(
            {
                TopicDefinitions: DEFINITIONS,
                StatementTopicTags: _tag_by_speaker(
                    {
                        "Delegate X": ProviderError("llm", "timeout"),
                        "Ms. Silva": StatementTopicTags(topic_keys=["gender-equality"]),
                    }
                ),
            }
        )

        tagged, _ = await TopicAnalyzer(completion).analyze(statements)

        assert tagged[1].topic_keys == []
        assert tagged[3].topic_keys == ["gender-equality"]

    @pytest.mark.asyncio
    async def test_system_prompt_lists_topics(self, statements):
        completion = FakeCompletionService(
            {
                TopicDefinitions: DEFINITIONS,
                StatementTopicTags: StatementTopicTags(),
            }
        )
        await TopicAnalyzer(completion).analyze(statements)

        system_prompt = completion.calls_for(StatementTopicTags)[0]["system_prompt"]
        assert "- debt-relief: Restructuring sovereign debt" in system_prompt
        assert completion.calls_for(StatementTopicTags)[0]["stage"] == "tagging_statements"


class TestTaggingContext:
    def test_neighbours_truncated(self, statements):
        analyzer = TopicAnalyzer(FakeCompletionService(), context_chars=10)
        context = analyzer.build_tagging_context(1, statements)

        assert "PREVIOUS: Unknown: I give the..." in context
        assert "CURRENT: Delegate X: Climate finance must reach" in context
        assert "NEXT: Unknown: I thank Ke..." in context

    def test_first_statement_has_no_previous(self, statements):
        context = TopicAnalyzer(FakeCompletionService()).build_tagging_context(0, statements)
        assert "PREVIOUS" not in context
        assert "NEXT:" in context
