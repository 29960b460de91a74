"""
Cortex Memory Manager -- the public façade over the memory subsystem.

Composition root: ``MemoryManager`` builds (or receives) the store,
embedder, backup manager, core context, retriever and reflection pipeline
and is the only object callers talk to.

Writes schedule the auto-backup check as a background task once they have
committed; backup failures are logged and never reach the caller.

Usage:
    manager = create_memory_manager()
    await manager.init()
    await manager.store_knowledge("User prefers dark mode", "preference", importance=0.8)
    results = await manager.query_knowledge("dark mode preference")
    prompt = await manager.build_augmented_prompt("You are a helpful assistant.")
    await manager.close()
"""

import asyncio
import logging
import secrets
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from cortex.backup import BackupManager
from cortex.config import MemoryConfig
from cortex.core_context import CoreContext
from cortex.embeddings import EmbeddingService
from cortex.errors import EmbeddingUnavailableError
from cortex.optimizer import ContentOptimizer
from cortex.reflection import ReflectionPipeline
from cortex.retrieval import KnowledgeRetriever
from cortex.sqlite_store import SQLiteStore
from cortex.types import (
    BackupRecord,
    CoreFact,
    Episode,
    KnowledgeSnippet,
    MemoryCategory,
    MemorySource,
    RankedResult,
    ReflectionResult,
    validate_importance,
)

logger = logging.getLogger("cortex.manager")

DEFAULT_KNOWLEDGE_IMPORTANCE = 0.5
DEFAULT_CORE_IMPORTANCE = 0.9

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id() -> str:
    """``session_<epoch ms>_<6 random chars>``."""
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(6))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class MemoryManager:
    """Async façade: knowledge, core facts, reflection, backups and stats."""

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        store: Optional[SQLiteStore] = None,
        embedder: Optional[EmbeddingService] = None,
        generator=None,
        backups: Optional[BackupManager] = None,
    ):
        self.config = config or MemoryConfig.from_env()
        self.store = store or SQLiteStore(db_path=self.config.db_path)
        if embedder is None:
            embedder = EmbeddingService(
                enabled=self.config.enable_embeddings,
                model_dir=self.config.onnx_model_dir,
            )
        self.embedder = embedder
        self.backups = backups or BackupManager(
            self.store.db_path,
            backup_dir=self.config.backup_dir,
            retention_days=self.config.backup_retention_days,
            max_backups=self.config.backup_max_files,
            interval_hours=self.config.backup_interval_hours,
        )
        self.core_context = CoreContext(self.store)
        self.retriever = KnowledgeRetriever(self.store, self.embedder, self.config.retrieval)
        self.reflection = ReflectionPipeline(
            self.store,
            self.core_context,
            generator,
            knowledge_writer=self.store_knowledge,
            max_chars=self.config.reflection_max_chars,
        )
        self.optimizer = ContentOptimizer()

        self.session_id = new_session_id()
        self.session_started_at = datetime.now(timezone.utc)
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Run the startup backup check (best-effort)."""
        await self._auto_backup()

    def new_session(self) -> str:
        self.session_id = new_session_id()
        self.session_started_at = datetime.now(timezone.utc)
        return self.session_id

    async def drain(self) -> None:
        """Wait for scheduled background work (auto-backups) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        await self.drain()
        self._closed = True
        self.store.close()
        self.embedder.close()

    async def __aenter__(self) -> "MemoryManager":
        await self.init()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Background backups
    # ------------------------------------------------------------------

    def _backup_if_due(self) -> Optional[BackupRecord]:
        empty = (
            self.store.count_knowledge() == 0
            and self.store.count_core_facts(active_only=False) == 0
            and self.store.count_episodes() == 0
        )
        if empty:
            return None  # nothing worth backing up yet
        return self.backups.check_and_backup()

    async def _auto_backup(self) -> Optional[BackupRecord]:
        try:
            record = await self.store.run(self._backup_if_due)
        except Exception as e:
            logger.warning("Auto-backup failed: %s", e)
            return None
        if record is not None:
            logger.info("Auto-backup created: %s", record.filename)
        return record

    def _schedule_backup(self) -> None:
        task = asyncio.get_running_loop().create_task(self._auto_backup())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    async def store_knowledge(
        self,
        content: str,
        category,
        importance: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        source=MemorySource.EXPLICIT,
        is_core_fact: bool = False,
    ) -> Union[KnowledgeSnippet, CoreFact]:
        """Store a knowledge snippet, or a core fact when ``is_core_fact``.

        The embedding is best-effort: if it cannot be produced the snippet is
        stored without one and stays keyword-searchable.
        """
        content = (content or "").strip()
        if not content:
            raise ValueError("content must be a non-empty string")
        category = MemoryCategory.parse(category)
        source = MemorySource(source)

        if is_core_fact:
            fact_id = await self.add_core_fact(
                content, category, DEFAULT_CORE_IMPORTANCE if importance is None else importance
            )
            return await self.store.run(self.store.get_core_fact, fact_id)

        importance = validate_importance(DEFAULT_KNOWLEDGE_IMPORTANCE if importance is None else importance)
        embedding = None
        if self.embedder.enabled:
            try:
                embedding = await self.embedder.embed(content)
            except EmbeddingUnavailableError as e:
                logger.warning("Storing snippet without embedding (keyword search only): %s", e)

        snippet = await self.store.run(
            self.store.insert_knowledge,
            content,
            category,
            importance,
            source,
            list(tags or []),
            self.session_id,
            embedding,
        )
        logger.info("Stored knowledge %d [%s/%s]", snippet.id, category.value, source.value)
        self._schedule_backup()
        return snippet

    async def query_knowledge(self, query: str, category=None, limit: Optional[int] = None) -> List[RankedResult]:
        return await self.retriever.query(query, category=category, limit=limit)

    async def get_knowledge(self, snippet_id: int) -> Optional[KnowledgeSnippet]:
        return await self.store.run(self.store.get_knowledge, snippet_id)

    async def delete_knowledge_by_id(self, snippet_id: int) -> bool:
        """Delete one snippet. False when it did not exist."""
        deleted = await self.store.run(self.store.delete_knowledge, int(snippet_id))
        if deleted:
            logger.info("Deleted knowledge %s", snippet_id)
        return deleted

    async def forget_knowledge(self, query: str, delete_all: bool = False) -> List[KnowledgeSnippet]:
        """Delete the best match for ``query`` (or every match). Returns what was deleted."""
        results = await self.retriever.query(query, limit=20 if delete_all else 1)
        if not results:
            return []
        targets = results if delete_all else results[:1]
        ids = [r.snippet.id for r in targets]
        await self.store.run(self.store.delete_knowledge_many, ids)
        logger.info("Forgot %d snippet(s) matching %r", len(ids), query)
        return [r.snippet for r in targets]

    async def format_knowledge_for_prompt(
        self, query: str, limit: Optional[int] = None, total_budget: int = 1000
    ) -> str:
        """Query and render the results as a token-budgeted prompt section."""
        results = await self.query_knowledge(query, limit=limit)
        return self.optimizer.format_results(results, total_budget=total_budget, context_query=query)

    # ------------------------------------------------------------------
    # Core facts
    # ------------------------------------------------------------------

    async def add_core_fact(self, content: str, category, importance: float = DEFAULT_CORE_IMPORTANCE) -> int:
        fact_id = await self.store.run(self.core_context.add_fact, content, category, importance)
        self._schedule_backup()
        return fact_id

    async def list_core_facts(self, category=None) -> List[CoreFact]:
        if category is not None:
            return await self.store.run(self.core_context.get_facts_by_category, category)
        return await self.store.run(self.core_context.get_active_facts)

    async def update_core_fact(
        self,
        fact_id: int,
        content: Optional[str] = None,
        category=None,
        importance: Optional[float] = None,
        active: Optional[bool] = None,
    ) -> bool:
        return await self.store.run(
            self.core_context.update_fact, fact_id, content, category, importance, active
        )

    async def deactivate_core_fact(self, fact_id: int) -> bool:
        return await self.store.run(self.core_context.deactivate_fact, fact_id)

    async def delete_core_fact(self, fact_id: int) -> bool:
        return await self.store.run(self.core_context.delete_fact, fact_id)

    async def build_augmented_prompt(self, base_prompt: str) -> str:
        """Append the core-context section to ``base_prompt`` (unchanged if there are no facts)."""
        section = await self.store.run(self.core_context.build_prompt_section)
        if not section:
            return base_prompt
        return f"{base_prompt}\n\n{section}"

    # ------------------------------------------------------------------
    # Reflection / episodes
    # ------------------------------------------------------------------

    async def reflect_and_summarize(self, turns: List[Mapping[str, Any]]) -> Optional[ReflectionResult]:
        result = await self.reflection.reflect(turns, self.session_id, self.session_started_at)
        if result is not None:
            self._schedule_backup()
        return result

    async def get_recent_episodes(self, limit: int = 5) -> List[Episode]:
        return await self.store.run(self.store.get_recent_episodes, limit)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def create_backup(self) -> Optional[BackupRecord]:
        return await self.store.run(self.backups.create_backup)

    async def list_backups(self) -> List[BackupRecord]:
        return await self.store.run(self.backups.list_backups)

    async def restore_from_backup(self, filename: str) -> bool:
        """Restore the store from a snapshot; the connection is reopened afterwards."""
        await self.drain()

        def _restore() -> bool:
            if not (self.backups.backup_dir / Path(filename).name).is_file():
                return self.backups.restore_from_backup(filename)
            self.store.close_connection()
            try:
                return self.backups.restore_from_backup(filename)
            finally:
                self.store.reopen()

        return await self.store.run(_restore)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        def _collect() -> Dict[str, Any]:
            return {
                "core_facts": self.store.count_core_facts(),
                "knowledge_snippets": self.store.count_knowledge(),
                "episodes": self.store.count_episodes(),
                "backup": self.backups.stats(),
            }

        return await self.store.run(_collect)


def create_memory_manager(config: Optional[MemoryConfig] = None, generator=None, **components) -> MemoryManager:
    """Build a manager from config, wiring the Anthropic generator when available."""
    config = config or MemoryConfig.from_env()
    if generator is None:
        generator = _default_generator(config)
    return MemoryManager(config=config, generator=generator, **components)


def _default_generator(config: MemoryConfig):
    import importlib.util
    import os

    if importlib.util.find_spec("anthropic") is None or not os.environ.get("ANTHROPIC_API_KEY"):
        logger.info("No text generator configured; reflection disabled")
        return None
    from cortex.generation import AnthropicGenerator

    return AnthropicGenerator(model=config.reflection_model, max_tokens=config.reflection_max_tokens)
