"""Core Context -- always-loaded facts rendered into every prompt."""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from cortex.sqlite_store import SQLiteStore
from cortex.types import (
    CATEGORY_DISPLAY_NAMES,
    CATEGORY_PRIORITY,
    CoreFact,
    MemoryCategory,
    validate_importance,
)

logger = logging.getLogger("cortex.core_context")

SECTION_HEADER = (
    "## Core Context\n\n"
    "The following information has been established about the user and environment:\n\n"
)


class CoreContext:
    """Manages core facts and builds the prompt section from the active ones."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def add_fact(self, content: str, category, importance: float = 0.8) -> int:
        """Add an active fact, or return the id of an identical active one."""
        category = MemoryCategory.parse(category)
        importance = validate_importance(importance)
        content = (content or "").strip()
        if not content:
            raise ValueError("content must be a non-empty string")

        existing = self.store.find_similar_core_fact(content)
        if existing is not None and existing.content.strip().lower() == content.lower():
            logger.debug("Core fact already present (id=%d), not duplicating", existing.id)
            return existing.id

        fact_id = self.store.insert_core_fact(content, category, importance)
        logger.info("Added core fact %d [%s]", fact_id, category.value)
        return fact_id

    def get_fact(self, fact_id: int) -> Optional[CoreFact]:
        return self.store.get_core_fact(fact_id)

    def get_active_facts(self) -> List[CoreFact]:
        return self.store.get_active_core_facts()

    def get_facts_by_category(self, category) -> List[CoreFact]:
        return self.store.get_core_facts_by_category(MemoryCategory.parse(category))

    def find_similar_fact(self, content: str) -> Optional[CoreFact]:
        return self.store.find_similar_core_fact(content)

    def update_fact(
        self,
        fact_id: int,
        content: Optional[str] = None,
        category=None,
        importance: Optional[float] = None,
        active: Optional[bool] = None,
    ) -> bool:
        """Partial update. Returns False (and writes nothing) when no field is given."""
        if content is None and category is None and importance is None and active is None:
            return False
        if importance is not None:
            importance = validate_importance(importance)
        return self.store.update_core_fact(
            fact_id, content=content, category=category, importance=importance, active=active
        )

    def deactivate_fact(self, fact_id: int) -> bool:
        """Soft delete: the fact stays stored but is never surfaced."""
        return self.store.set_core_fact_active(fact_id, False)

    def reactivate_fact(self, fact_id: int) -> bool:
        return self.store.set_core_fact_active(fact_id, True)

    def delete_fact(self, fact_id: int) -> bool:
        return self.store.delete_core_fact(fact_id)

    def count(self) -> int:
        return self.store.count_core_facts()

    def build_prompt_section(self) -> str:
        """Render active facts grouped by category, or '' when there are none.

        Read-only: never writes to the store.
        """
        facts = self.get_active_facts()
        if not facts:
            return ""

        grouped: Dict[MemoryCategory, List[CoreFact]] = defaultdict(list)
        for fact in facts:
            grouped[fact.category].append(fact)

        sections = []
        for category in CATEGORY_PRIORITY:
            group = grouped.get(category)
            if not group:
                continue
            lines = [f"### {CATEGORY_DISPLAY_NAMES[category]}"]
            lines.extend(f"- {fact.content}" for fact in group)
            sections.append("\n".join(lines))

        return SECTION_HEADER + "\n\n".join(sections)
