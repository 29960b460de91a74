"""
Cortex Tool Handlers -- maps tool names to async handler functions.

Each handler takes the MemoryManager and the tool arguments and returns a
response dict of the form ``{"content": [{"type": "text", "text": ...}]}``
(plus ``"isError": True`` on failure). ``build_handlers(manager)`` binds
them into the name → coroutine table an agent loop dispatches on.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Dict, List

from cortex.errors import CortexError
from cortex.types import MemoryCategory

logger = logging.getLogger("cortex.tools.handlers")

MAX_QUERY_LIMIT = 20
# identity facts are set by the agent's owner, never by the model
STORABLE_CATEGORIES = [c.value for c in MemoryCategory if c != MemoryCategory.IDENTITY]
BACKUP_ACTIONS = ("create", "list", "restore", "stats")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _parse_tags(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(t).strip() for t in value if str(t).strip()]


# ============================================================================
# Response Helpers
# ============================================================================


def tool_response(text: str) -> dict:
    """Build a successful tool response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def tool_error(text: str) -> dict:
    """Build an error tool response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def _format_result_line(index: int, result) -> str:
    snippet = result.snippet
    tags = f" [tags: {', '.join(snippet.tags)}]" if snippet.tags else ""
    if result.match_type.value == "semantic":
        score = f"{round(result.score * 100)}% semantic"
    else:
        score = f"score {result.score:.2f} keyword"
    return f"{index}. [{snippet.category.value}] ({score}) {snippet.content}{tags}"


# ============================================================================
# Handler: memory_store (memory_remember is the core-fact alias)
# ============================================================================


async def handle_memory_store(manager, arguments: dict) -> dict:
    """Store a knowledge snippet, or a core fact when is_core_fact is set."""
    content = (arguments.get("content") or arguments.get("text") or "").strip()
    if not content:
        return tool_error("content (or text) is required")

    category = str(arguments.get("category", "fact")).strip().lower()
    if category not in STORABLE_CATEGORIES:
        return tool_error(f"category must be one of: {', '.join(STORABLE_CATEGORIES)}")

    importance = arguments.get("importance")
    if importance is not None:
        try:
            importance = float(importance)
        except (TypeError, ValueError):
            return tool_error("importance must be a number between 0 and 1")
        if not 0.0 <= importance <= 1.0:
            return tool_error("importance must be between 0 and 1")

    is_core = bool(arguments.get("is_core_fact", False))
    tags = _parse_tags(arguments.get("tags"))

    try:
        stored = await manager.store_knowledge(
            content,
            category,
            importance=importance,
            tags=tags,
            is_core_fact=is_core,
        )
    except (CortexError, ValueError) as e:
        logger.error("memory_store failed: %s", e)
        return tool_error(f"Failed to store memory: {e}")

    kind = "core fact (always in context)" if is_core else "knowledge"
    return tool_response(f"Stored {kind} #{stored.id} [{category}]: {content[:120]}")


async def handle_memory_remember(manager, arguments: dict) -> dict:
    """Store a core fact (defaults to the preference category)."""
    args = {"category": "preference", **arguments, "is_core_fact": True}
    return await handle_memory_store(manager, args)


# ============================================================================
# Handler: memory_query
# ============================================================================


async def handle_memory_query(manager, arguments: dict) -> dict:
    """Search knowledge with the hybrid retriever."""
    query_text = (arguments.get("query") or "").strip()
    if not query_text:
        return tool_error("query is required")

    limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=MAX_QUERY_LIMIT)
    category = arguments.get("category")
    if category:
        try:
            category = MemoryCategory.parse(category)
        except ValueError as e:
            return tool_error(str(e))

    try:
        results = await manager.query_knowledge(query_text, category=category, limit=limit)
    except CortexError as e:
        logger.error("memory_query failed: %s", e)
        return tool_error(f"Failed to query memory: {e}")

    if not results:
        return tool_response(f'No relevant memories found for: "{query_text}"')
    lines = [_format_result_line(i, r) for i, r in enumerate(results, 1)]
    return tool_response(f"Found {len(results)} relevant memories:\n\n" + "\n".join(lines))


# ============================================================================
# Handler: memory_forget
# ============================================================================


async def handle_memory_forget(manager, arguments: dict) -> dict:
    """Delete by id, or the best match for a query (every match with confirm_all)."""
    memory_id = arguments.get("id")
    if memory_id is not None:
        try:
            deleted = await manager.delete_knowledge_by_id(int(memory_id))
        except (TypeError, ValueError):
            return tool_error("id must be an integer")
        if not deleted:
            return tool_response(f"No memory with id {memory_id}; nothing deleted")
        return tool_response(f"Deleted memory #{memory_id}")

    query_text = (arguments.get("query") or "").strip()
    if not query_text:
        return tool_error("query or id is required")
    confirm_all = bool(arguments.get("confirm_all", False))

    try:
        deleted = await manager.forget_knowledge(query_text, delete_all=confirm_all)
    except CortexError as e:
        logger.error("memory_forget failed: %s", e)
        return tool_error(f"Failed to delete memories: {e}")

    if not deleted:
        return tool_response(f'No memories found matching: "{query_text}"')
    lines = [f"{i}. [{s.category.value}] {s.content}" for i, s in enumerate(deleted, 1)]
    return tool_response(f"Deleted {len(deleted)} memory(ies):\n\n" + "\n".join(lines))


# ============================================================================
# Handler: memory_backup
# ============================================================================


async def handle_memory_backup(manager, arguments: dict) -> dict:
    """Create, list or restore backups, or show memory stats."""
    action = str(arguments.get("action", "create")).strip().lower()
    if action not in BACKUP_ACTIONS:
        return tool_error(f"action must be one of: {', '.join(BACKUP_ACTIONS)}")

    try:
        if action == "create":
            record = await manager.create_backup()
            if record is None:
                return tool_response("Nothing to back up yet (no database file)")
            return tool_response(f"Backup created: {record.filename} ({record.size / 1024:.1f} KB)")

        if action == "list":
            backups = await manager.list_backups()
            if not backups:
                return tool_response("No backups found")
            lines = [
                f"{i}. {b.filename} ({b.timestamp.isoformat()}, {b.size / 1024:.1f} KB)"
                for i, b in enumerate(backups, 1)
            ]
            return tool_response(f"{len(backups)} backup(s):\n\n" + "\n".join(lines))

        if action == "restore":
            filename = (arguments.get("filename") or "").strip()
            if not filename:
                return tool_error("filename is required for restore")
            if not await manager.restore_from_backup(filename):
                return tool_response(f"Backup not found: {filename}")
            return tool_response(f"Restored from {filename} (previous state saved as pre_restore snapshot)")

        stats = await manager.get_stats()
        b = stats["backup"]
        return tool_response(
            "Memory stats:\n"
            f"- Core facts: {stats['core_facts']}\n"
            f"- Knowledge snippets: {stats['knowledge_snippets']}\n"
            f"- Episodes: {stats['episodes']}\n"
            f"- Backups: {b['total_backups']} ({b['total_size_kb']} KB, newest {b['newest_backup'] or 'never'})"
        )
    except (CortexError, OSError) as e:
        logger.error("memory_backup %s failed: %s", action, e)
        return tool_error(f"Backup {action} failed: {e}")


# ============================================================================
# Handler: memory_facts
# ============================================================================


async def handle_memory_facts(manager, arguments: dict) -> dict:
    """List active core facts, or deactivate one by id."""
    deactivate = arguments.get("deactivate")
    if deactivate is not None:
        try:
            fact_id = int(deactivate)
        except (TypeError, ValueError):
            return tool_error("deactivate must be a fact id")
        if not await manager.deactivate_core_fact(fact_id):
            return tool_response(f"No core fact with id {fact_id}")
        return tool_response(f"Deactivated core fact #{fact_id}")

    category = arguments.get("category")
    try:
        facts = await manager.list_core_facts(category=category)
    except ValueError as e:
        return tool_error(str(e))
    if not facts:
        return tool_response("No core facts stored")
    lines = [f"#{f.id} [{f.category.value}] ({f.importance:.2f}) {f.content}" for f in facts]
    return tool_response(f"{len(facts)} core fact(s):\n\n" + "\n".join(lines))


# ============================================================================
# Handler table
# ============================================================================

_HANDLER_FUNCS: Dict[str, Callable[..., Awaitable[dict]]] = {
    "memory_store": handle_memory_store,
    "memory_remember": handle_memory_remember,
    "memory_query": handle_memory_query,
    "memory_forget": handle_memory_forget,
    "memory_backup": handle_memory_backup,
    "memory_facts": handle_memory_facts,
}


def build_handlers(manager) -> Dict[str, Callable[[dict], Awaitable[dict]]]:
    """Bind every handler to ``manager``: name → ``async (arguments) -> dict``."""
    return {name: functools.partial(fn, manager) for name, fn in _HANDLER_FUNCS.items()}


async def dispatch(handlers: Dict[str, Any], name: str, arguments: dict) -> dict:
    """Call a tool by name, turning unknown names into an error response."""
    handler = handlers.get(name)
    if handler is None:
        return tool_error(f"Unknown tool: {name}")
    return await handler(arguments or {})
