"""
Structured-output parsing for model responses, plus standalone fact extraction.

Models are asked for JSON but often wrap it in prose or code fences. The
parser's contract is narrow: find the first balanced ``{...}`` or ``[...]``
block (string- and escape-aware), decode it, and return None on any failure.
Nothing downstream ever sees a partially parsed result.
"""

import json
import logging
from typing import Any, Iterable, List, Optional

from cortex.types import ExtractedFact, MemoryCategory, ReflectionResult

logger = logging.getLogger("cortex.extraction")

_PAIRS = {"{": "}", "[": "]"}

EXTRACTION_PROMPT = """You are a memory extraction assistant. Identify facts, preferences and instructions in the conversation that will be useful in future interactions.

Categories:
- preference: user preferences, likes/dislikes, workflow choices
- fact: important factual information about the user or their work
- project: projects the user is working on
- instruction: explicit instructions on how the assistant should behave
- personal: personal information about the user
- technical: technical details, configurations or specifications

Rules:
- Extract only information that will help in later conversations
- Each fact is a single, clear statement
- importance (0-1) is how likely the fact is to be needed again
- Skip transient information ("user asked about X")
- If nothing is worth remembering, return an empty array

Respond with a JSON array:
[
  {"content": "User prefers dark mode in all applications", "category": "preference", "importance": 0.8},
  {"content": "User is building a local AI agent framework", "category": "project", "importance": 0.9}
]"""

MIN_EXTRACTION_CHARS = 50


def extract_json_block(text: str, openers: str = "{[") -> Optional[str]:
    """Return the first balanced bracketed block in ``text``, or None.

    Brackets inside JSON strings are ignored. Only the first opening
    bracket found is tried; an unbalanced block yields None.
    """
    if not text:
        return None
    start = next((i for i, ch in enumerate(text) if ch in openers), -1)
    if start < 0:
        return None

    stack = [_PAIRS[text[start]]]
    in_string = False
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _PAIRS:
            stack.append(_PAIRS[ch])
        elif ch in ("}", "]"):
            if ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def parse_json_block(text: str, expect: type = dict) -> Optional[Any]:
    """Decode the first bracketed block of the expected JSON type, or None."""
    opener = "{" if expect is dict else "["
    block = extract_json_block(text, openers=opener)
    if block is None:
        return None
    try:
        value = json.loads(block)
    except (json.JSONDecodeError, ValueError) as e:
        logger.debug("JSON block did not decode: %s", e)
        return None
    return value if isinstance(value, expect) else None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def parse_facts(items: Iterable[Any], allow_core: bool = True) -> List[ExtractedFact]:
    """Keep well-formed fact entries and drop the rest.

    An entry needs non-empty string ``content``, a known ``category`` and a
    numeric ``importance`` within 0..1.
    """
    facts = []
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        try:
            category = MemoryCategory.parse(item.get("category", ""))
        except ValueError:
            continue
        importance = item.get("importance", 0.5)
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            continue
        if not 0.0 <= importance <= 1.0:
            continue
        is_core = bool(item.get("isCoreFact", item.get("is_core_fact", False))) and allow_core
        facts.append(ExtractedFact(content.strip(), category, float(importance), is_core))
    return facts


def parse_reflection(text: str) -> Optional[ReflectionResult]:
    """Parse a reflection response. Returns None if no JSON object decodes."""
    data = parse_json_block(text, dict)
    if data is None:
        logger.warning("Reflection response contained no parseable JSON object")
        return None
    summary = data.get("summary")
    facts = data.get("extractedFacts", data.get("extracted_facts", []))
    return ReflectionResult(
        summary=summary.strip() if isinstance(summary, str) else "",
        key_topics=_string_list(data.get("keyTopics", data.get("key_topics"))),
        key_takeaways=_string_list(data.get("keyTakeaways", data.get("key_takeaways"))),
        extracted_facts=parse_facts(facts if isinstance(facts, list) else []),
    )


class FactExtractor:
    """Asks a text generator for a JSON array of facts found in a conversation."""

    def __init__(self, generator):
        self.generator = generator

    async def extract(self, conversation_text: str) -> List[ExtractedFact]:
        if len((conversation_text or "").strip()) < MIN_EXTRACTION_CHARS:
            return []
        try:
            response = await self.generator.complete(
                f"Extract memorable facts from this conversation:\n\n{conversation_text}",
                system=EXTRACTION_PROMPT,
            )
        except Exception as e:
            logger.warning("Fact extraction request failed: %s", e)
            return []
        items = parse_json_block(response, list)
        if items is None:
            logger.debug("Fact extraction returned no JSON array")
            return []
        return parse_facts(items, allow_core=False)
