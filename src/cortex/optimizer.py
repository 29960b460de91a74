"""
Cortex Content Optimizer -- fit retrieved knowledge into a token budget.

Token counts are estimated at 4 characters per token. Content over budget
is summarized: "detailed" keeps the best ~60% of sentences in their
original order; "brief" keeps the first and last sentence plus key terms.
A final hard cut guarantees the budget.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from cortex.types import KnowledgeSnippet, RankedResult

logger = logging.getLogger("cortex.optimizer")

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 150
DEFAULT_TOTAL_BUDGET = 1000
MIN_SNIPPET_TOKENS = 50
DETAILED_KEEP_RATIO = 0.6

_TECHNICAL_PATTERNS = [
    re.compile(r"\b[A-Z][a-z]+(?:[A-Z][a-z]*)+\b"),  # PascalCase
    re.compile(r"\b[a-z]+(?:_[a-z]+)+\b"),  # snake_case
    re.compile(r"\b[a-z]+(?:-[a-z]+)+\b"),  # kebab-case
    re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE),  # URLs
    re.compile(r"\b\d+(?:\.\d+)+\b"),  # versions
    re.compile(r"\b[A-Z]{2,}\b"),  # ACRONYMS
]
_NUMBER_RE = re.compile(r"\b\d+(?:\.\d+)*\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_CODE_HINT_RE = re.compile(r"```|`[^`]+`|[{}();]")
_LIST_HINT_RE = re.compile(r"^\s*(?:[-*]|\d+\.)\s", re.MULTILINE)

STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with by from up about into through during "
    "before after above below between among along this that these those".split()
)
_ACTION_WORDS = ("configure", "set", "enable", "disable", "create", "delete", "update", "install")
_FILLER_PHRASES = ("it should be noted", "it is important to", "please note", "keep in mind")
_DETAIL_HINTS = ("how", "explain", "detail", "steps")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class OptimizedContent:
    summary: str
    full_content: str
    token_estimate: int
    compression_ratio: float


def _sentences(content: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(content) if s.strip()]


def cleanup_summary(summary: str) -> str:
    summary = re.sub(r"\s+", " ", summary.strip())
    summary = re.sub(r"\.\s*\.", ".", summary)
    summary = re.sub(r",\s*,", ",", summary)
    summary = re.sub(r"\s+([.,:;!?])", r"\1", summary)
    return re.sub(r"([.!?])([A-Za-z])", r"\1 \2", summary)


def extract_keywords(content: str, limit: int = 10) -> List[str]:
    """Most frequent non-stop-words longer than 3 characters."""
    counts = {}
    for word in content.lower().split():
        word = word.strip(".,:;!?()[]{}\"'")
        if len(word) > 3 and word not in STOP_WORDS and word[:1].isalpha():
            counts[word] = counts.get(word, 0) + 1
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [w for w, _ in ranked[:limit]]


def extract_technical_terms(content: str) -> List[str]:
    """Identifiers, URLs, versions and acronyms, in first-seen order."""
    seen = {}
    for pattern in _TECHNICAL_PATTERNS:
        for match in pattern.findall(content):
            seen.setdefault(match, None)
    return list(seen)


def score_sentence(sentence: str, preserve_keywords: Sequence[str] = ()) -> int:
    lower = sentence.lower()
    words = len(sentence.split())
    score = 0
    if 5 <= words <= 20:
        score += 1
    if 8 <= words <= 15:
        score += 1
    score += sum(3 for kw in preserve_keywords if kw.lower() in lower)
    if any(p.search(sentence) for p in _TECHNICAL_PATTERNS):
        score += 2
    if _NUMBER_RE.search(sentence):
        score += 1
    if any(w in lower for w in _ACTION_WORDS):
        score += 2
    if any(p in lower for p in _FILLER_PHRASES):
        score -= 1
    return score


class ContentOptimizer:
    """Summarizes snippet content to a per-snippet or batch token budget."""

    def choose_strategy(self, content: str, context_query: Optional[str] = None) -> str:
        needs_detail = bool(context_query) and any(h in context_query.lower() for h in _DETAIL_HINTS)
        if len(content) < 200 or _CODE_HINT_RE.search(content) or needs_detail:
            return "detailed"
        if _LIST_HINT_RE.search(content):
            return "detailed"
        return "brief"

    def brief_summary(self, content: str, preserve_keywords: Sequence[str] = ()) -> str:
        sentences = _sentences(content)
        first = sentences[0] if sentences else ""
        last = sentences[-1] if len(sentences) > 1 else ""
        elements = list(preserve_keywords)
        elements += extract_keywords(content)[:5]
        elements += _NUMBER_RE.findall(content)[:3]
        elements += extract_technical_terms(content)[:5]
        elements = list(dict.fromkeys(e for e in elements if e))

        summary = first
        if elements:
            key = f"Key: {', '.join(elements)}."
            summary = f"{summary}. {key}" if summary else key
        if last and last != first:
            summary += f" {last}."
        return cleanup_summary(summary)

    def detailed_summary(self, content: str, preserve_keywords: Sequence[str] = ()) -> str:
        sentences = _sentences(content)
        if len(sentences) <= 2:
            return content
        target = max(1, math.ceil(len(sentences) * DETAILED_KEEP_RATIO))
        order = sorted(
            range(len(sentences)), key=lambda i: score_sentence(sentences[i], preserve_keywords), reverse=True
        )
        chosen = sorted(order[:target])
        summary = ". ".join(sentences[i] for i in chosen)
        if not summary.endswith("."):
            summary += "."
        return cleanup_summary(summary)

    def optimize(
        self,
        snippet: KnowledgeSnippet,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        mode: str = "auto",
        context_query: Optional[str] = None,
        preserve_keywords: Sequence[str] = (),
    ) -> OptimizedContent:
        """Return content unchanged if it fits, else a summary within max_tokens."""
        full = snippet.content
        tokens = estimate_tokens(full)
        if tokens <= max_tokens:
            return OptimizedContent(full, full, tokens, 1.0)

        strategy = self.choose_strategy(full, context_query) if mode == "auto" else mode
        if strategy == "brief":
            summary = self.brief_summary(full, preserve_keywords)
        else:
            summary = self.detailed_summary(full, preserve_keywords)

        max_chars = max_tokens * CHARS_PER_TOKEN
        if len(summary) > max_chars:
            summary = summary[: max_chars - 3].rstrip() + "..."
        summary_tokens = estimate_tokens(summary)
        return OptimizedContent(summary, full, summary_tokens, summary_tokens / tokens)

    def optimize_batch(
        self,
        snippets: Sequence[KnowledgeSnippet],
        total_budget: int = DEFAULT_TOTAL_BUDGET,
        **kwargs,
    ) -> List[OptimizedContent]:
        """Split total_budget across snippets by importance (50-token floor each)."""
        if not snippets:
            return []
        total_importance = sum(s.importance for s in snippets)
        results = []
        for s in snippets:
            if total_importance > 0:
                share = math.floor(s.importance / total_importance * total_budget)
            else:
                share = math.floor(total_budget / len(snippets))
            results.append(self.optimize(s, max_tokens=max(MIN_SNIPPET_TOKENS, share), **kwargs))
        return results

    def format_results(
        self,
        results: Iterable[RankedResult],
        total_budget: int = DEFAULT_TOTAL_BUDGET,
        context_query: Optional[str] = None,
    ) -> str:
        """Render ranked results as a prompt section, or '' when there are none."""
        results = list(results)
        if not results:
            return ""
        optimized = self.optimize_batch(
            [r.snippet for r in results], total_budget=total_budget, context_query=context_query
        )
        lines = ["## Relevant Knowledge", ""]
        for r, opt in zip(results, optimized):
            lines.append(f"- [{r.snippet.category.value}] {opt.summary}")
        return "\n".join(lines)
