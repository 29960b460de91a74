"""Shared types for the Cortex memory subsystem.

Enums subclass ``str`` so values compare equal to their database/JSON form
(``MemoryCategory.PREFERENCE == "preference"``).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MemoryCategory(str, Enum):
    """Category shared by core facts and knowledge snippets."""

    IDENTITY = "identity"
    INSTRUCTION = "instruction"
    PREFERENCE = "preference"
    PROJECT = "project"
    PERSONAL = "personal"
    FACT = "fact"
    TECHNICAL = "technical"

    @classmethod
    def parse(cls, value) -> "MemoryCategory":
        """Coerce a string (or member) to a category, raising ValueError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown category {value!r} (valid: {valid})") from None


# Render order of the core-context section.
CATEGORY_PRIORITY: List[MemoryCategory] = [
    MemoryCategory.IDENTITY,
    MemoryCategory.INSTRUCTION,
    MemoryCategory.PREFERENCE,
    MemoryCategory.PROJECT,
    MemoryCategory.PERSONAL,
    MemoryCategory.FACT,
    MemoryCategory.TECHNICAL,
]

CATEGORY_DISPLAY_NAMES: Dict[MemoryCategory, str] = {
    MemoryCategory.IDENTITY: "Agent Identity",
    MemoryCategory.INSTRUCTION: "Instructions",
    MemoryCategory.PREFERENCE: "User Preferences",
    MemoryCategory.PROJECT: "Project Context",
    MemoryCategory.PERSONAL: "Personal Information",
    MemoryCategory.FACT: "Known Facts",
    MemoryCategory.TECHNICAL: "Technical Details",
}


class MemorySource(str, Enum):
    """How a knowledge snippet came to exist."""

    EXPLICIT = "explicit"
    EXTRACTED = "extracted"
    REFLECTION = "reflection"


class MatchType(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"


def validate_importance(value: float) -> float:
    """Return importance as float, raising ValueError outside 0..1."""
    try:
        importance = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"importance must be a number, got {value!r}") from None
    if not 0.0 <= importance <= 1.0:
        raise ValueError(f"importance must be between 0 and 1, got {importance}")
    return importance


# ---------------------------------------------------------------------------
# Memory tiers
# ---------------------------------------------------------------------------


@dataclass
class CoreFact:
    id: int
    content: str
    category: MemoryCategory
    importance: float
    created_at: datetime
    updated_at: datetime
    active: bool = True


@dataclass
class KnowledgeSnippet:
    id: int
    content: str
    category: MemoryCategory
    importance: float
    source: MemorySource
    created_at: datetime
    updated_at: datetime
    tags: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    access_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category.value,
            "importance": self.importance,
            "source": self.source.value,
            "tags": list(self.tags),
            "session_id": self.session_id,
            "access_count": self.access_count,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Episode:
    """Immutable archival summary of one finished session."""

    id: int
    session_id: str
    summary: str
    key_topics: List[str]
    key_takeaways: List[str]
    message_count: int
    started_at: datetime
    ended_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class BackupRecord:
    filename: str
    timestamp: datetime
    size: int
    version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "timestamp": self.timestamp.isoformat(),
            "size": self.size,
            "version": self.version,
        }


# ---------------------------------------------------------------------------
# Retrieval pipeline stages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryAnalysis:
    """Classification of a query (stage 1 of retrieval)."""

    is_specific: bool
    is_factual: bool
    is_preference: bool
    complexity: float
    word_count: int
    min_semantic_score: float


@dataclass
class SearchCandidate:
    """A snippet found by keyword or semantic search, before ranking."""

    snippet: KnowledgeSnippet
    score: float
    match_type: MatchType


@dataclass
class RankedResult:
    """Final retrieval result.

    ``score`` is the raw search score (|bm25| for keyword hits, cosine
    similarity for semantic hits); ``relevance`` is the composite score the
    results were ranked by.
    """

    snippet: KnowledgeSnippet
    score: float
    relevance: float
    match_type: MatchType

    def to_dict(self) -> Dict[str, Any]:
        d = self.snippet.to_dict()
        d["score"] = round(self.score, 4)
        d["relevance"] = round(self.relevance, 4)
        d["match_type"] = self.match_type.value
        return d


# ---------------------------------------------------------------------------
# Reflection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractedFact:
    content: str
    category: MemoryCategory
    importance: float
    is_core_fact: bool = False


@dataclass
class ReflectionResult:
    summary: str
    key_topics: List[str]
    key_takeaways: List[str]
    extracted_facts: List[ExtractedFact]
    episode_id: Optional[int] = None
