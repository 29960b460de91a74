"""
Cortex Reflection -- end-of-session summarization into an Episode.

A finished conversation is serialized, truncated to a character budget and
sent to the text generator with REFLECTION_PROMPT. A parseable response
produces exactly one Episode for the session, then each extracted fact is
stored as a core fact or a knowledge snippet (source=reflection).
Unparseable responses and generator failures produce nothing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional

from cortex.core_context import CoreContext
from cortex.extraction import parse_reflection
from cortex.sqlite_store import SQLiteStore
from cortex.types import ExtractedFact, MemorySource, ReflectionResult

logger = logging.getLogger("cortex.reflection")

MIN_TURNS = 2
DEFAULT_MAX_CHARS = 10000
TRUNCATION_MARKER = "\n\n[...truncated...]"

REFLECTION_PROMPT = """You are a memory reflection assistant. Analyze the conversation and extract what is worth remembering.

Return a JSON object with:
1. summary: a 1-2 sentence summary of what was discussed
2. keyTopics: array of main topics (strings)
3. keyTakeaways: array of important conclusions or decisions
4. extractedFacts: array of facts to remember, each with:
   - content: the fact as a clear statement
   - category: one of 'preference', 'fact', 'project', 'instruction', 'personal', 'technical'
   - importance: 0-1
   - isCoreFact: true if it should ALWAYS be in context (stable preferences, critical instructions)

Guidelines:
- Extract only information useful in future conversations
- Core facts are stable and important; regular facts are searchable but not auto-loaded
- Be concise and specific
- If nothing is worth remembering, return empty arrays

Respond with ONLY the JSON object, no other text."""

KnowledgeWriter = Callable[..., Awaitable[Any]]


def _turn_text(content: Any) -> str:
    """Flatten message content (a string or a list of content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, Mapping) and block.get("type", "text") == "text":
                parts.append(str(block.get("text", "")))
        return "\n".join(p for p in parts if p)
    return "" if content is None else str(content)


def format_conversation(turns: Iterable[Mapping[str, Any]], max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Render turns as 'User:'/'Assistant:' paragraphs, truncated to max_chars."""
    lines = []
    for turn in turns:
        text = _turn_text(turn.get("content")).strip()
        if not text:
            continue
        speaker = "User" if turn.get("role") == "user" else "Assistant"
        lines.append(f"{speaker}: {text}")
    conversation = "\n\n".join(lines)
    if len(conversation) > max_chars:
        conversation = conversation[:max_chars] + TRUNCATION_MARKER
    return conversation


class ReflectionPipeline:
    """Turns a finished conversation into an Episode plus new memories."""

    def __init__(
        self,
        store: SQLiteStore,
        core_context: CoreContext,
        generator,
        knowledge_writer: Optional[KnowledgeWriter] = None,
        max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self.store = store
        self.core_context = core_context
        self.generator = generator
        self.knowledge_writer = knowledge_writer
        self.max_chars = max_chars

    async def reflect(
        self,
        turns: List[Mapping[str, Any]],
        session_id: str,
        started_at: Optional[datetime] = None,
    ) -> Optional[ReflectionResult]:
        """Summarize a session. Returns None when skipped or when nothing parsed."""
        turns = list(turns or [])
        if len(turns) < MIN_TURNS:
            logger.debug("Reflection skipped: %d turn(s)", len(turns))
            return None
        if self.generator is None:
            logger.warning("Reflection skipped: no text generator configured")
            return None

        existing = await self.store.run(self.store.get_episode_by_session, session_id)
        if existing is not None:
            logger.info("Session %s already has episode %d, not reflecting again", session_id, existing.id)
            return None

        conversation = format_conversation(turns, self.max_chars)
        try:
            response = await self.generator.complete(
                f"Please reflect on and summarize this conversation:\n\n{conversation}",
                system=REFLECTION_PROMPT,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Reflection request failed: %s", e)
            return None

        result = parse_reflection(response)
        if result is None:
            return None

        ended_at = datetime.now(timezone.utc)
        episode = await self.store.run(
            self.store.insert_episode,
            session_id,
            result.summary,
            result.key_topics,
            result.key_takeaways,
            len(turns),
            started_at or ended_at,
            ended_at,
        )
        if episode is None:
            return None
        result.episode_id = episode.id
        logger.info(
            "Episode %d saved for %s (%d topics, %d facts)",
            episode.id, session_id, len(result.key_topics), len(result.extracted_facts),
        )

        for fact in result.extracted_facts:
            await self._apply_fact(fact, session_id)
        return result

    async def _apply_fact(self, fact: ExtractedFact, session_id: str) -> None:
        try:
            if fact.is_core_fact:
                await self.store.run(self.core_context.add_fact, fact.content, fact.category, fact.importance)
            elif self.knowledge_writer is not None:
                await self.knowledge_writer(
                    content=fact.content,
                    category=fact.category,
                    importance=fact.importance,
                    source=MemorySource.REFLECTION,
                )
            else:
                await self.store.run(
                    self.store.insert_knowledge,
                    fact.content,
                    fact.category,
                    fact.importance,
                    MemorySource.REFLECTION,
                    None,
                    session_id,
                )
        except ValueError as e:
            logger.warning("Skipping extracted fact %r: %s", fact.content[:60], e)
