"""
Cortex Knowledge Retriever -- hybrid keyword + semantic search over knowledge.

Pipeline per query:
  1. analyze_query      classify specific / factual / preference, min similarity
  2. dynamic_limit      shrink or grow the result budget for the query
  3. keyword search     FTS5 bm25, 2x candidates, quality floor on |score|
  4. semantic backfill  only when keyword hits fall short and embeddings work
  5. deduplicate        drop near-identical content (word Jaccard)
  6. rank               composite relevance (recency, access, importance, category)
  7. adaptive_limit     keep the high-scoring head, bounded by the budget
  8. access bookkeeping bump access_count / updated_at on returned snippets

Stages 1, 2, 5, 6 and 7 are pure functions so they can be tested alone.
Results never exceed the caller's requested limit.
"""

import logging
import math
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set, Tuple

import numpy as np

from cortex.config import RetrievalSettings
from cortex.embeddings import EmbeddingService
from cortex.errors import EmbeddingUnavailableError
from cortex.sqlite_store import SQLiteStore
from cortex.types import (
    MatchType,
    MemoryCategory,
    QueryAnalysis,
    RankedResult,
    SearchCandidate,
)

logger = logging.getLogger("cortex.retrieval")

# Years and capitalized two-word names ("Acme Corp") are case-sensitive;
# domain keywords are not.
_SPECIFIC_PATTERN_RE = re.compile(r"\b\d{4}\b|\b[A-Z][a-z]+\s+[A-Z][a-z]+\b")
_DOMAIN_KEYWORD_RE = re.compile(r"\b(?:api|config|system|setting)", re.IGNORECASE)
_WORD_RE = re.compile(r"\w+", re.UNICODE)

FACTUAL_KEYWORDS = frozenset({"what", "when", "where", "how", "which", "who"})
# Matched as word prefixes so "preference" and "likes" count.
PREFERENCE_KEYWORDS = ("prefer", "like", "want", "need", "favorite", "favourite", "setting")

_LONG_TOKEN_CHARS = 8
_DEDUP_MIN_WORD_CHARS = 3


def _tokens(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def analyze_query(query: str, settings: Optional[RetrievalSettings] = None) -> QueryAnalysis:
    """Classify a query and derive its minimum semantic similarity."""
    s = settings or RetrievalSettings()
    raw_words = query.split()
    word_count = len(raw_words)
    tokens = _tokens(query)

    is_specific = bool(
        _SPECIFIC_PATTERN_RE.search(query)
        or _DOMAIN_KEYWORD_RE.search(query)
        or any(len(t) > _LONG_TOKEN_CHARS for t in tokens)
    )
    is_factual = any(t in FACTUAL_KEYWORDS for t in tokens)
    is_preference = any(t.startswith(kw) for t in tokens for kw in PREFERENCE_KEYWORDS)
    complexity = min(word_count / 10.0, 1.0)

    min_semantic = s.base_min_semantic
    if is_specific:
        min_semantic = s.specific_min_semantic
    if is_preference:
        min_semantic = s.preference_min_semantic
    if word_count < s.short_query_words:
        min_semantic = s.short_query_min_semantic

    return QueryAnalysis(
        is_specific=is_specific,
        is_factual=is_factual,
        is_preference=is_preference,
        complexity=complexity,
        word_count=word_count,
        min_semantic_score=min_semantic,
    )


def dynamic_limit(analysis: QueryAnalysis, requested: int, settings: Optional[RetrievalSettings] = None) -> int:
    """Result budget for this query, before the final clamp to ``requested``."""
    s = settings or RetrievalSettings()
    if analysis.is_specific and analysis.complexity < s.low_complexity:
        return max(s.specific_limit_floor, requested // 2)
    if analysis.complexity > s.high_complexity:
        return min(int(math.floor(requested * s.expand_factor)), s.expand_cap)
    return requested


def corpus_threshold(corpus_size: int, word_count: int) -> float:
    """Similarity floor that tightens as the embedded corpus grows."""
    if corpus_size > 20:
        return 0.6
    if corpus_size > 10:
        return 0.5
    if word_count <= 2:
        return 0.45
    return 0.4


def _content_words(text: str) -> Set[str]:
    return {w for w in _tokens(text) if len(w) > _DEDUP_MIN_WORD_CHARS}


def word_overlap(a: Set[str], b: Set[str]) -> float:
    """Jaccard overlap of two word sets (0.0 when both are empty)."""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def deduplicate(candidates: List[SearchCandidate], settings: Optional[RetrievalSettings] = None) -> List[SearchCandidate]:
    """Drop candidates whose content overlaps an already-kept, higher-scored one."""
    s = settings or RetrievalSettings()
    if len(candidates) <= s.dedup_min_results:
        return list(candidates)

    kept: List[SearchCandidate] = []
    kept_words: List[Set[str]] = []
    for candidate in sorted(candidates, key=lambda c: c.score, reverse=True):
        words = _content_words(candidate.snippet.content)
        # Inclusive: an overlap of exactly dedup_overlap is a duplicate (see test_exact_threshold_collapses).
        if words and any(word_overlap(words, seen) >= s.dedup_overlap for seen in kept_words):
            logger.debug("Dropping near-duplicate snippet %d", candidate.snippet.id)
            continue
        kept.append(candidate)
        kept_words.append(words)
    return kept


def relevance_score(
    candidate: SearchCandidate,
    analysis: QueryAnalysis,
    now: Optional[datetime] = None,
    settings: Optional[RetrievalSettings] = None,
) -> float:
    """Raw search score plus recency, access, importance and category bonuses."""
    s = settings or RetrievalSettings()
    now = now or datetime.now(timezone.utc)
    snippet = candidate.snippet

    days = max(0.0, (now - snippet.updated_at).total_seconds() / 86400.0)
    recency = max(0.0, 1.0 - days / s.recency_window_days) * s.recency_weight
    access = min(snippet.access_count * s.access_step, s.access_cap)
    importance = snippet.importance * s.importance_weight

    category_bonus = 0.0
    if analysis.is_preference and snippet.category == MemoryCategory.PREFERENCE:
        category_bonus += s.preference_bonus
    if analysis.is_factual and snippet.category in (MemoryCategory.FACT, MemoryCategory.TECHNICAL):
        category_bonus += s.factual_bonus

    return candidate.score + recency + access + importance + category_bonus


def rank(
    candidates: Iterable[SearchCandidate],
    analysis: QueryAnalysis,
    now: Optional[datetime] = None,
    settings: Optional[RetrievalSettings] = None,
) -> List[RankedResult]:
    ranked = [
        RankedResult(
            snippet=c.snippet,
            score=c.score,
            relevance=relevance_score(c, analysis, now, settings),
            match_type=c.match_type,
        )
        for c in candidates
    ]
    ranked.sort(key=lambda r: r.relevance, reverse=True)
    return ranked


def adaptive_limit(
    ranked: List[RankedResult], limit: int, settings: Optional[RetrievalSettings] = None
) -> List[RankedResult]:
    """Keep results above mean + 0.5*std of relevance, else truncate to ``limit``."""
    s = settings or RetrievalSettings()
    if len(ranked) <= limit:
        return list(ranked)
    scores = np.array([r.relevance for r in ranked], dtype=np.float64)
    threshold = float(scores.mean() + s.adaptive_std_factor * scores.std())
    kept = [r for r in ranked if r.relevance >= threshold]
    if len(kept) <= limit * s.adaptive_max_ratio:
        return kept
    return ranked[:limit]


class KnowledgeRetriever:
    """Runs the retrieval pipeline against a store and (optionally) an embedder."""

    def __init__(
        self,
        store: SQLiteStore,
        embedder: Optional[EmbeddingService] = None,
        settings: Optional[RetrievalSettings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or RetrievalSettings()
        self._clock = clock

    @property
    def semantic_enabled(self) -> bool:
        return self.embedder is not None and self.embedder.enabled

    async def query(
        self, text: str, category=None, limit: Optional[int] = None
    ) -> List[RankedResult]:
        """Search knowledge. Returned snippets have their access bookkeeping applied."""
        text = (text or "").strip()
        requested = self.settings.default_limit if limit is None else int(limit)
        if not text or requested <= 0:
            return []
        category = MemoryCategory.parse(category) if category else None

        analysis = analyze_query(text, self.settings)
        budget = dynamic_limit(analysis, requested, self.settings)
        logger.debug("query %r: %s, budget=%d", text, analysis, budget)

        candidates, weak = await self._keyword_search(text, category, budget, analysis)
        if len(candidates) < budget and self.semantic_enabled:
            candidates.extend(await self._semantic_backfill(text, category, budget, analysis, candidates))
        if weak and len(candidates) < budget:
            seen_ids = {c.snippet.id for c in candidates}
            candidates.extend([c for c in weak if c.snippet.id not in seen_ids][: budget - len(candidates)])

        candidates = deduplicate(candidates, self.settings)
        ranked = rank(candidates, analysis, self._clock(), self.settings)
        results = adaptive_limit(ranked, budget, self.settings)[:requested]

        if results:
            results = await self._record_access(results)
        return results

    async def _keyword_search(
        self, text: str, category: Optional[MemoryCategory], budget: int, analysis: QueryAnalysis
    ) -> Tuple[List[SearchCandidate], List[SearchCandidate]]:
        """Return (hits clearing the quality floor, sub-floor hits kept on a tiny corpus)."""
        hits = await self.store.run(
            self.store.keyword_search, text, category, budget * self.settings.candidate_multiplier
        )
        floor = self.settings.keyword_floor_specific if analysis.is_specific else self.settings.keyword_floor_general
        strong: List[SearchCandidate] = []
        below: List[SearchCandidate] = []
        for snippet, score in hits:
            candidate = SearchCandidate(snippet=snippet, score=score, match_type=MatchType.KEYWORD)
            (strong if score >= floor else below).append(candidate)
        if below:
            corpus = await self.store.run(self.store.count_knowledge)
            if corpus >= self.settings.keyword_floor_min_corpus:
                below = []
            else:
                logger.debug("Keeping %d sub-floor keyword hit(s) on a %d-row corpus", len(below), corpus)
        return strong, below

    async def _semantic_backfill(
        self,
        text: str,
        category: Optional[MemoryCategory],
        budget: int,
        analysis: QueryAnalysis,
        found: List[SearchCandidate],
    ) -> List[SearchCandidate]:
        try:
            query_vec = await self.embedder.embed(text)
        except EmbeddingUnavailableError as e:
            logger.debug("Semantic backfill skipped: %s", e)
            return []

        scored = await self.store.run(self.store.semantic_scan, query_vec, category)
        floor = corpus_threshold(len(scored), analysis.word_count)
        seen_ids = {c.snippet.id for c in found}
        extra = [
            SearchCandidate(snippet=snippet, score=sim, match_type=MatchType.SEMANTIC)
            for snippet, sim in scored
            if sim > floor and sim >= analysis.min_semantic_score and snippet.id not in seen_ids
        ]
        return extra[: max(0, budget - len(found))]

    async def _record_access(self, results: List[RankedResult]) -> List[RankedResult]:
        touched_at = await self.store.run(self.store.record_access, [r.snippet.id for r in results])
        return [
            replace(
                r,
                snippet=replace(
                    r.snippet,
                    access_count=r.snippet.access_count + 1,
                    updated_at=touched_at or r.snippet.updated_at,
                ),
            )
            for r in results
        ]
