"""Integration tests for MemoryManager, the public memory API."""
import json
import logging
import re

import pytest

from cortex.config import MemoryConfig
from cortex.manager import MemoryManager, create_memory_manager, new_session_id
from cortex.types import CoreFact, KnowledgeSnippet, MatchType, MemoryCategory, MemorySource

from conftest import FakeGenerator, add_fillers


class TestSession:
    def test_session_id_format(self):
        assert re.fullmatch(r"session_\d+_[a-z0-9]{6}", new_session_id())

    @pytest.mark.asyncio
    async def test_new_session(self, manager):
        old = manager.session_id
        assert manager.new_session() != old
        assert manager.session_id != old


class TestStoreAndQuery:
    """The main knowledge round trip."""

    @pytest.mark.asyncio
    async def test_semantic_roundtrip(self, manager):
        snippet = await manager.store_knowledge("User prefers dark mode", "preference", importance=0.8)
        assert isinstance(snippet, KnowledgeSnippet)
        assert snippet.embedding is not None
        assert snippet.session_id == manager.session_id

        results = await manager.query_knowledge("dark mode preference")
        assert results
        assert results[0].snippet.id == snippet.id
        assert results[0].match_type == MatchType.SEMANTIC
        assert results[0].score > 0.6

    @pytest.mark.asyncio
    async def test_query_records_access(self, manager):
        snippet = await manager.store_knowledge("User prefers dark mode", "preference", importance=0.8)
        results = await manager.query_knowledge("dark mode preference")
        assert results[0].snippet.access_count == 1
        assert (await manager.get_knowledge(snippet.id)).access_count == 1

    @pytest.mark.asyncio
    async def test_empty_store_query(self, manager):
        assert await manager.query_knowledge("anything about dark mode") == []

    @pytest.mark.asyncio
    async def test_limit_respected(self, manager):
        for i in range(8):
            await manager.store_knowledge(f"Dark mode preference note {i} for app {i * 7}", "preference")
        for limit in (1, 2, 3):
            results = await manager.query_knowledge("dark mode preference", limit=limit)
            assert len(results) <= limit

    @pytest.mark.asyncio
    async def test_keyword_only_when_embeddings_disabled(self, keyword_manager):
        add_fillers(keyword_manager.store)
        snippet = await keyword_manager.store_knowledge("Deploys run on a Kubernetes cluster", "technical")
        assert snippet.embedding is None
        results = await keyword_manager.query_knowledge("kubernetes cluster")
        assert [r.snippet.id for r in results] == [snippet.id]
        assert results[0].match_type == MatchType.KEYWORD

    @pytest.mark.asyncio
    async def test_keyword_only_single_snippet_roundtrip(self, keyword_manager):
        snippet = await keyword_manager.store_knowledge("User prefers dark mode", "preference")
        results = await keyword_manager.query_knowledge("User prefers dark mode")
        assert [r.snippet.id for r in results] == [snippet.id]
        assert results[0].match_type == MatchType.KEYWORD
        assert results[0].snippet.access_count == 1

    @pytest.mark.asyncio
    async def test_disabled_embeddings_do_not_warn(self, keyword_manager, caplog):
        with caplog.at_level(logging.WARNING, logger="cortex"):
            await keyword_manager.store_knowledge("Quiet keyword-only note", "fact")
        assert not [r for r in caplog.records if "without embedding" in r.getMessage()]

    @pytest.mark.asyncio
    async def test_defaults_and_validation(self, manager):
        snippet = await manager.store_knowledge("Plain note", "fact")
        assert snippet.importance == 0.5
        assert snippet.source == MemorySource.EXPLICIT
        with pytest.raises(ValueError):
            await manager.store_knowledge("", "fact")
        with pytest.raises(ValueError):
            await manager.store_knowledge("x", "nonsense")
        with pytest.raises(ValueError):
            await manager.store_knowledge("x", "fact", importance=2)

    @pytest.mark.asyncio
    async def test_store_as_core_fact(self, manager):
        fact = await manager.store_knowledge("Always reply in British English", "instruction", is_core_fact=True)
        assert isinstance(fact, CoreFact)
        assert fact.importance == 0.9
        stats = await manager.get_stats()
        assert stats["core_facts"] == 1
        assert stats["knowledge_snippets"] == 0


class TestForget:
    @pytest.mark.asyncio
    async def test_delete_by_id(self, manager):
        snippet = await manager.store_knowledge("Forget me", "fact")
        assert await manager.delete_knowledge_by_id(snippet.id)
        assert await manager.delete_knowledge_by_id(snippet.id) is False
        assert await manager.get_knowledge(snippet.id) is None

    @pytest.mark.asyncio
    async def test_forget_best_match(self, manager):
        keep = await manager.store_knowledge("Weekly grocery list", "fact")
        gone = await manager.store_knowledge("User prefers dark mode", "preference")
        deleted = await manager.forget_knowledge("dark mode preference")
        assert [s.id for s in deleted] == [gone.id]
        assert await manager.get_knowledge(keep.id) is not None

    @pytest.mark.asyncio
    async def test_forget_nothing(self, manager):
        assert await manager.forget_knowledge("nothing stored yet") == []


class TestCoreFacts:
    @pytest.mark.asyncio
    async def test_augmented_prompt(self, manager):
        base = "You are a helpful assistant."
        assert await manager.build_augmented_prompt(base) == base

        await manager.add_core_fact("Prefers concise answers", "preference")
        prompt = await manager.build_augmented_prompt(base)
        assert prompt.startswith(base + "\n\n## Core Context")
        assert "### User Preferences\n- Prefers concise answers" in prompt

    @pytest.mark.asyncio
    async def test_list_update_deactivate_delete(self, manager):
        fid = await manager.add_core_fact("Works at Initech", "personal", 0.7)
        assert [f.id for f in await manager.list_core_facts()] == [fid]
        assert [f.id for f in await manager.list_core_facts("personal")] == [fid]
        assert await manager.list_core_facts("project") == []

        assert await manager.update_core_fact(fid, content="Works at Globex")
        assert (await manager.list_core_facts())[0].content == "Works at Globex"

        assert await manager.deactivate_core_fact(fid)
        assert await manager.list_core_facts() == []
        assert await manager.delete_core_fact(fid)

    @pytest.mark.asyncio
    async def test_update_active_flag(self, manager):
        fid = await manager.add_core_fact("Seasonal reminder", "instruction")
        assert await manager.update_core_fact(fid, active=False)
        assert await manager.list_core_facts() == []
        assert await manager.update_core_fact(fid, active=True)
        assert [f.id for f in await manager.list_core_facts()] == [fid]
        assert await manager.update_core_fact(fid) is False


class TestReflection:
    TURNS = [
        {"role": "user", "content": "I'm planning a trip to Japan in April."},
        {"role": "assistant", "content": "Cherry blossom season! Want an itinerary?"},
    ]
    RESPONSE = json.dumps({
        "summary": "Planning an April trip to Japan.",
        "keyTopics": ["travel"],
        "keyTakeaways": [],
        "extractedFacts": [
            {"content": "Travelling to Japan in April", "category": "personal", "importance": 0.7},
        ],
    })

    @pytest.mark.asyncio
    async def test_reflect_and_summarize(self, config, embedder):
        async with MemoryManager(config=config, embedder=embedder, generator=FakeGenerator(self.RESPONSE)) as m:
            result = await m.reflect_and_summarize(self.TURNS)
            assert result.episode_id is not None
            episodes = await m.get_recent_episodes()
            assert [e.session_id for e in episodes] == [m.session_id]
            snippets = m.store.get_knowledge_by_category(MemoryCategory.PERSONAL)
            assert snippets[0].source == MemorySource.REFLECTION
            assert snippets[0].embedding is not None

    @pytest.mark.asyncio
    async def test_reflect_without_generator(self, manager):
        assert await manager.reflect_and_summarize(self.TURNS) is None


class TestBackups:
    @pytest.mark.asyncio
    async def test_write_schedules_backup(self, manager):
        await manager.store_knowledge("Worth backing up", "fact")
        await manager.drain()
        backups = await manager.list_backups()
        assert len(backups) == 1

    @pytest.mark.asyncio
    async def test_empty_store_not_backed_up(self, manager):
        await manager.init()
        assert await manager.list_backups() == []

    @pytest.mark.asyncio
    async def test_backup_failure_does_not_fail_write(self, manager, monkeypatch):
        def boom():
            raise OSError("disk full")

        monkeypatch.setattr(manager.backups, "check_and_backup", boom)
        snippet = await manager.store_knowledge("Still stored", "fact")
        await manager.drain()
        assert await manager.get_knowledge(snippet.id) is not None

    @pytest.mark.asyncio
    async def test_restore_roundtrip(self, manager):
        first = await manager.store_knowledge("Before the backup", "fact")
        await manager.drain()
        record = (await manager.list_backups())[0]
        await manager.store_knowledge("After the backup", "fact")

        assert await manager.restore_from_backup(record.filename)
        stats = await manager.get_stats()
        assert stats["knowledge_snippets"] == 1
        assert (await manager.get_knowledge(first.id)).content == "Before the backup"
        names = [b.filename for b in await manager.list_backups()]
        assert any(n.startswith("pre_restore_") for n in names)

        # the store is usable after restore
        again = await manager.store_knowledge("After the restore", "fact")
        assert (await manager.get_knowledge(again.id)) is not None

    @pytest.mark.asyncio
    async def test_restore_missing(self, manager):
        await manager.store_knowledge("Something", "fact")
        assert await manager.restore_from_backup("cortex_memory_missing.db") is False
        assert (await manager.get_stats())["knowledge_snippets"] == 1

    @pytest.mark.asyncio
    async def test_stats_shape(self, manager):
        stats = await manager.get_stats()
        assert set(stats) == {"core_facts", "knowledge_snippets", "episodes", "backup"}
        assert set(stats["backup"]) == {"total_backups", "oldest_backup", "newest_backup", "total_size_kb"}


class TestFactory:
    @pytest.mark.asyncio
    async def test_create_without_api_key_has_no_generator(self, tmp_cortex_dir):
        m = create_memory_manager(MemoryConfig(home=tmp_cortex_dir, enable_embeddings=False))
        try:
            assert m.reflection.generator is None
            assert m.store.db_path == tmp_cortex_dir / "cortex_memory.db"
        finally:
            await m.close()

    @pytest.mark.asyncio
    async def test_injected_generator_used(self, tmp_cortex_dir):
        gen = FakeGenerator()
        m = create_memory_manager(MemoryConfig(home=tmp_cortex_dir, enable_embeddings=False), generator=gen)
        try:
            assert m.reflection.generator is gen
        finally:
            await m.close()

    def test_from_env(self, tmp_cortex_dir, monkeypatch):
        monkeypatch.setenv("CORTEX_SKIP_EMBEDDINGS", "1")
        config = MemoryConfig.from_env()
        assert config.home == tmp_cortex_dir
        assert config.enable_embeddings is False
        assert config.backup_dir == tmp_cortex_dir / "backups"


class TestPromptFormatting:
    @pytest.mark.asyncio
    async def test_format_knowledge_for_prompt(self, manager):
        assert await manager.format_knowledge_for_prompt("dark mode preference") == ""
        await manager.store_knowledge("User prefers dark mode", "preference", importance=0.8)
        section = await manager.format_knowledge_for_prompt("dark mode preference")
        assert section == "## Relevant Knowledge\n\n- [preference] User prefers dark mode"
