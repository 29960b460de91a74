"""Tests for the reflection pipeline (session -> episode + memories)."""
import asyncio
import json

import pytest

from cortex.core_context import CoreContext
from cortex.reflection import TRUNCATION_MARKER, ReflectionPipeline, format_conversation
from cortex.types import MemoryCategory, MemorySource

from conftest import FakeGenerator

TURNS = [
    {"role": "user", "content": "Can you help me set up CI for my Rust project?"},
    {"role": "assistant", "content": "Sure, let's use GitHub Actions with cargo test."},
    {"role": "user", "content": "Great. I always want clippy warnings treated as errors."},
]

RESPONSE = json.dumps({
    "summary": "Set up GitHub Actions CI for a Rust project.",
    "keyTopics": ["ci", "rust"],
    "keyTakeaways": ["clippy warnings fail the build"],
    "extractedFacts": [
        {"content": "Treat clippy warnings as errors", "category": "instruction", "importance": 0.9, "isCoreFact": True},
        {"content": "Rust project uses GitHub Actions", "category": "project", "importance": 0.6},
        {"content": "Broken fact", "category": "unknown", "importance": 0.6},
    ],
})


def _pipeline(store, generator, **kw):
    return ReflectionPipeline(store, CoreContext(store), generator, **kw)


class TestFormatConversation:
    def test_speakers_and_blocks(self):
        turns = [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": [{"type": "text", "text": "Hi"}, {"type": "tool_use", "id": "t1"}]},
            {"role": "user", "content": ""},
        ]
        assert format_conversation(turns) == "User: Hello\n\nAssistant: Hi"

    def test_truncation(self):
        turns = [{"role": "user", "content": "x" * 500}]
        out = format_conversation(turns, max_chars=100)
        assert out.endswith(TRUNCATION_MARKER)
        assert len(out) == 100 + len(TRUNCATION_MARKER)


class TestReflect:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("turns", [[], [TURNS[0]]])
    async def test_too_few_turns(self, store, turns):
        gen = FakeGenerator(RESPONSE)
        assert await _pipeline(store, gen).reflect(turns, "session_short") is None
        assert gen.calls == []
        assert store.count_episodes() == 0

    @pytest.mark.asyncio
    async def test_no_generator(self, store):
        assert await _pipeline(store, None).reflect(TURNS, "session_x") is None
        assert store.count_episodes() == 0

    @pytest.mark.asyncio
    async def test_creates_episode_and_memories(self, store):
        result = await _pipeline(store, FakeGenerator(RESPONSE)).reflect(TURNS, "session_ci")
        assert result.summary == "Set up GitHub Actions CI for a Rust project."
        assert len(result.extracted_facts) == 2

        episode = store.get_episode_by_session("session_ci")
        assert episode.id == result.episode_id
        assert episode.message_count == 3
        assert episode.key_topics == ["ci", "rust"]

        core = store.get_active_core_facts()
        assert [f.content for f in core] == ["Treat clippy warnings as errors"]
        assert core[0].category == MemoryCategory.INSTRUCTION

        snippets = store.get_knowledge_by_category(MemoryCategory.PROJECT)
        assert [s.content for s in snippets] == ["Rust project uses GitHub Actions"]
        assert snippets[0].source == MemorySource.REFLECTION
        assert snippets[0].session_id == "session_ci"

    @pytest.mark.asyncio
    async def test_one_episode_per_session(self, store):
        gen = FakeGenerator(RESPONSE)
        pipeline = _pipeline(store, gen)
        assert await pipeline.reflect(TURNS, "session_once") is not None
        assert await pipeline.reflect(TURNS, "session_once") is None
        assert len(gen.calls) == 1
        assert store.count_episodes() == 1

    @pytest.mark.asyncio
    async def test_unparseable_response_stores_nothing(self, store):
        gen = FakeGenerator("Sorry, I can't summarize that.")
        assert await _pipeline(store, gen).reflect(TURNS, "session_bad") is None
        assert store.count_episodes() == 0
        assert store.count_knowledge() == 0

    @pytest.mark.asyncio
    async def test_generator_error_stores_nothing(self, store):
        gen = FakeGenerator(error=RuntimeError("overloaded"))
        assert await _pipeline(store, gen).reflect(TURNS, "session_err") is None
        assert store.count_episodes() == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, store):
        gen = FakeGenerator(error=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await _pipeline(store, gen).reflect(TURNS, "session_cancel")

    @pytest.mark.asyncio
    async def test_knowledge_writer_used_for_snippets(self, store):
        written = []

        async def writer(**kwargs):
            written.append(kwargs)

        await _pipeline(store, FakeGenerator(RESPONSE), knowledge_writer=writer).reflect(TURNS, "session_w")
        assert written == [{
            "content": "Rust project uses GitHub Actions",
            "category": MemoryCategory.PROJECT,
            "importance": 0.6,
            "source": MemorySource.REFLECTION,
        }]
        assert store.count_knowledge() == 0

    @pytest.mark.asyncio
    async def test_prompt_contains_conversation(self, store):
        gen = FakeGenerator(RESPONSE)
        await _pipeline(store, gen).reflect(TURNS, "session_p")
        prompt, system = gen.calls[0]
        assert "User: Can you help me set up CI" in prompt
        assert "extractedFacts" in system
