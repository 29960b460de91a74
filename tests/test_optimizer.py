"""Tests for token-budgeted content optimization."""
from datetime import datetime, timezone

from cortex.optimizer import (
    ContentOptimizer,
    estimate_tokens,
    extract_keywords,
    extract_technical_terms,
)
from cortex.types import KnowledgeSnippet, MatchType, MemoryCategory, MemorySource, RankedResult

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)

LONG_TEXT = (
    "The deployment pipeline builds the Docker image on every push. "
    "It should be noted that the weather was nice. "
    "Configure the staging cluster with three replicas and version 1.4.2 of the chart. "
    "Some unrelated remark follows here. "
    "Enable the feature flag named dark_mode_beta before release. "
    "Another sentence about lunch. "
    "Finally the release is tagged and pushed to the registry. "
) * 4


def _snippet(content, importance=0.5, id=1):
    return KnowledgeSnippet(
        id=id,
        content=content,
        category=MemoryCategory.TECHNICAL,
        importance=importance,
        source=MemorySource.EXPLICIT,
        created_at=NOW,
        updated_at=NOW,
    )


class TestHelpers:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_extract_keywords(self):
        words = extract_keywords("docker docker docker build build image the the the")
        assert words[:2] == ["docker", "build"]
        assert "the" not in words

    def test_extract_technical_terms(self):
        terms = extract_technical_terms("Use TypeScript with dark_mode_beta at v 1.4.2 via API")
        assert "TypeScript" in terms
        assert "dark_mode_beta" in terms
        assert "1.4.2" in terms
        assert "API" in terms


class TestOptimize:
    def test_short_content_unchanged(self):
        result = ContentOptimizer().optimize(_snippet("Prefers dark mode"))
        assert result.summary == "Prefers dark mode"
        assert result.compression_ratio == 1.0

    def test_long_content_within_budget(self):
        result = ContentOptimizer().optimize(_snippet(LONG_TEXT), max_tokens=60)
        assert estimate_tokens(result.summary) <= 60
        assert result.full_content == LONG_TEXT
        assert result.compression_ratio < 1.0

    def test_brief_mode(self):
        result = ContentOptimizer().optimize(_snippet(LONG_TEXT), max_tokens=80, mode="brief")
        assert result.summary.startswith("The deployment pipeline builds the Docker image on every push")
        assert "Key:" in result.summary

    def test_detail_query_picks_detailed(self):
        opt = ContentOptimizer()
        prose = "word " * 100
        assert opt.choose_strategy(prose) == "brief"
        assert opt.choose_strategy(prose, context_query="explain the steps") == "detailed"
        assert opt.choose_strategy("short") == "detailed"


class TestBatchAndFormat:
    def test_batch_floor(self):
        snippets = [_snippet(LONG_TEXT, importance=1.0, id=1), _snippet(LONG_TEXT, importance=0.0, id=2)]
        results = ContentOptimizer().optimize_batch(snippets, total_budget=200)
        assert estimate_tokens(results[0].summary) <= 200
        assert estimate_tokens(results[1].summary) <= 50

    def test_empty_batch(self):
        assert ContentOptimizer().optimize_batch([]) == []

    def test_format_results(self):
        results = [
            RankedResult(_snippet("Prefers dark mode"), score=0.9, relevance=1.2, match_type=MatchType.SEMANTIC),
        ]
        assert ContentOptimizer().format_results(results) == (
            "## Relevant Knowledge\n\n- [technical] Prefers dark mode"
        )
        assert ContentOptimizer().format_results([]) == ""
