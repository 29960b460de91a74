"""Cortex test configuration."""
import hashlib
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

# Ensure the cortex package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cortex.config import MemoryConfig  # noqa: E402
from cortex.embeddings import EmbeddingService  # noqa: E402
from cortex.manager import MemoryManager  # noqa: E402
from cortex.sqlite_store import SQLiteStore  # noqa: E402

DIM = 384
_WORD_RE = re.compile(r"\w+")


def fake_encode(texts):
    """Deterministic bag-of-word-stems encoder (4-char prefixes hashed into 384 dims).

    Texts sharing word stems get high cosine similarity: "User prefers dark
    mode" vs "dark mode preference" is about 0.87.
    """
    out = np.zeros((len(texts), DIM), dtype=np.float32)
    for row, text in enumerate(texts):
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.md5(word[:4].encode()).hexdigest(), 16) % DIM
            out[row, bucket] = 1.0
    return out


FILLER_TOPICS = [
    "gardening tomatoes in raised beds",
    "baking sourdough bread on weekends",
    "repairing bicycle brakes",
    "watching documentaries about oceans",
    "knitting scarves for winter",
    "birdwatching near the lake",
    "painting watercolor landscapes",
    "learning chess openings",
    "hiking mountain trails",
    "brewing green tea",
    "restoring antique furniture",
    "collecting vinyl records",
]


def add_fillers(store, count=10, category="fact"):
    """Insert unrelated snippets so FTS5 bm25 has a realistic document count."""
    for i in range(count):
        topic = FILLER_TOPICS[i % len(FILLER_TOPICS)]
        store.insert_knowledge(f"Filler note {i}: {topic}", category)


class FakeGenerator:
    """TextGenerator stand-in returning canned responses and recording prompts."""

    def __init__(self, response="", error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def complete(self, prompt, system=None):
        self.calls.append((prompt, system))
        if self.error is not None:
            raise self.error
        return self.response


class FakeClock:
    """Injectable clock for backup tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def tmp_cortex_dir(tmp_path, monkeypatch):
    """Create a temporary CORTEX_HOME for testing."""
    home = tmp_path / ".cortex"
    home.mkdir()
    monkeypatch.setenv("CORTEX_HOME", str(home))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return home


@pytest.fixture
def store(tmp_cortex_dir):
    s = SQLiteStore(db_path=tmp_cortex_dir / "cortex_memory.db")
    yield s
    s.close()


@pytest.fixture
def embedder():
    e = EmbeddingService(encoder=fake_encode)
    yield e
    e.close()


@pytest.fixture
def config(tmp_cortex_dir):
    return MemoryConfig(home=tmp_cortex_dir)


@pytest.fixture
async def manager(config, embedder):
    m = MemoryManager(config=config, embedder=embedder)
    yield m
    await m.close()


@pytest.fixture
async def keyword_manager(tmp_cortex_dir):
    """Manager with embeddings disabled (keyword search only)."""
    m = MemoryManager(config=MemoryConfig(home=tmp_cortex_dir, enable_embeddings=False))
    yield m
    await m.close()
