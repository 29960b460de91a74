"""
Cortex configuration -- paths, feature switches, and retrieval tunables.

Everything has a default; ``MemoryConfig.from_env()`` applies CORTEX_*
environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DB_FILENAME = "cortex_memory.db"
BACKUP_DIRNAME = "backups"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, min_val: int = 1, max_val: int = 1_000_000) -> int:
    try:
        v = int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(min_val, min(v, max_val))


def default_home() -> Path:
    return Path(os.environ.get("CORTEX_HOME", str(Path.home() / ".cortex"))).expanduser()


@dataclass
class RetrievalSettings:
    """Tunables for the knowledge retriever.

    The keyword floors apply to |bm25|, which has no fixed scale; they are
    starting points rather than derived constants.
    """

    default_limit: int = 10
    keyword_floor_specific: float = 0.5
    keyword_floor_general: float = 1.0
    candidate_multiplier: int = 2
    # Below this many rows bm25 idf is clamped near zero, so sub-floor
    # keyword hits are kept to fill slots semantic search leaves open.
    keyword_floor_min_corpus: int = 10

    # Minimum semantic similarity by query class.
    base_min_semantic: float = 0.4
    specific_min_semantic: float = 0.5
    preference_min_semantic: float = 0.6
    short_query_min_semantic: float = 0.7
    short_query_words: int = 3

    # Dynamic limit.
    low_complexity: float = 0.3
    high_complexity: float = 0.7
    specific_limit_floor: int = 3
    expand_factor: float = 1.2
    expand_cap: int = 12

    # Deduplication.
    dedup_min_results: int = 3
    dedup_overlap: float = 0.7

    # Re-scoring bonuses.
    recency_window_days: float = 30.0
    recency_weight: float = 0.1
    access_step: float = 0.02
    access_cap: float = 0.2
    importance_weight: float = 0.15
    preference_bonus: float = 0.3
    factual_bonus: float = 0.2

    # Adaptive final limiting.
    adaptive_std_factor: float = 0.5
    adaptive_max_ratio: float = 1.5


@dataclass
class MemoryConfig:
    """Installation-level settings for a memory manager."""

    home: Path = field(default_factory=default_home)
    db_filename: str = DB_FILENAME
    enable_embeddings: bool = True
    onnx_model_dir: Optional[str] = None

    reflection_model: str = "claude-3-haiku-20240307"
    reflection_max_tokens: int = 2048
    reflection_max_chars: int = 10000

    backup_retention_days: int = 7
    backup_max_files: int = 10
    backup_interval_hours: int = 24

    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)

    @property
    def db_path(self) -> Path:
        return Path(self.home) / self.db_filename

    @property
    def backup_dir(self) -> Path:
        return Path(self.home) / BACKUP_DIRNAME

    @classmethod
    def from_env(cls, **overrides) -> "MemoryConfig":
        """Build a config from CORTEX_* environment variables, then apply overrides."""
        values = {
            "home": default_home(),
            "enable_embeddings": not _env_flag("CORTEX_SKIP_EMBEDDINGS"),
            "onnx_model_dir": os.environ.get("CORTEX_ONNX_MODEL_DIR") or None,
            "reflection_model": os.environ.get("CORTEX_REFLECTION_MODEL", cls.reflection_model),
            "reflection_max_tokens": _env_int("CORTEX_REFLECTION_MAX_TOKENS", cls.reflection_max_tokens),
            "backup_retention_days": _env_int("CORTEX_BACKUP_RETENTION_DAYS", cls.backup_retention_days),
            "backup_max_files": _env_int("CORTEX_BACKUP_MAX_FILES", cls.backup_max_files),
        }
        values.update(overrides)
        return cls(**values)
