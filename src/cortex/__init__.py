"""Cortex: tiered long-term memory for personal AI agents.

Direct Python API::

    from cortex import create_memory_manager
    manager = create_memory_manager()
    await manager.store_knowledge("User prefers dark mode", "preference", importance=0.8)
    results = await manager.query_knowledge("dark mode preference")
    prompt = await manager.build_augmented_prompt(system_prompt)

Semantic search needs an embedding backend:
``pip install cortex-memory[embeddings]``.
"""

__version__ = "0.3.0"

from cortex.backup import BackupManager
from cortex.config import MemoryConfig, RetrievalSettings
from cortex.core_context import CoreContext
from cortex.embeddings import EmbeddingService, cosine_similarity
from cortex.errors import CortexError, EmbeddingUnavailableError, StoreBusyError
from cortex.manager import MemoryManager, create_memory_manager
from cortex.reflection import ReflectionPipeline
from cortex.retrieval import KnowledgeRetriever
from cortex.sqlite_store import SQLiteStore
from cortex.types import (
    BackupRecord,
    CoreFact,
    Episode,
    KnowledgeSnippet,
    MatchType,
    MemoryCategory,
    MemorySource,
    RankedResult,
    ReflectionResult,
)

__all__ = [
    "MemoryManager",
    "create_memory_manager",
    "MemoryConfig",
    "RetrievalSettings",
    # Components
    "SQLiteStore",
    "EmbeddingService",
    "BackupManager",
    "CoreContext",
    "KnowledgeRetriever",
    "ReflectionPipeline",
    "cosine_similarity",
    # Types
    "CoreFact",
    "KnowledgeSnippet",
    "Episode",
    "BackupRecord",
    "RankedResult",
    "ReflectionResult",
    "MemoryCategory",
    "MemorySource",
    "MatchType",
    # Errors
    "CortexError",
    "StoreBusyError",
    "EmbeddingUnavailableError",
    # Meta
    "__version__",
]
