"""Cortex tool schemas -- JSON-schema definitions for the memory tools."""

from cortex.tools.handlers import BACKUP_ACTIONS, MAX_QUERY_LIMIT, STORABLE_CATEGORIES
from cortex.types import MemoryCategory

_CATEGORY_ENUM = STORABLE_CATEGORIES
_ALL_CATEGORIES = [c.value for c in MemoryCategory]

TOOL_SCHEMAS = [
    {
        "name": "memory_store",
        "description": "Store information in long-term memory. Use when the user shares a preference, fact or instruction worth remembering. Set is_core_fact for things that must always be in context.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The information to remember, as a clear statement"},
                "category": {"type": "string", "enum": _CATEGORY_ENUM, "description": "Memory category"},
                "importance": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 1,
                    "description": "0-1, how likely this is to matter again (default 0.5)",
                },
                "tags": {"type": "string", "description": "Comma-separated tags (e.g. 'editor,workflow')"},
                "is_core_fact": {"type": "boolean", "description": "Always load into context", "default": False},
            },
            "required": ["content", "category"],
        },
    },
    {
        "name": "memory_remember",
        "description": "Store a permanent core fact that is loaded into every prompt (defaults to category 'preference').",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The fact to remember"},
                "category": {"type": "string", "enum": _CATEGORY_ENUM},
                "importance": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["content"],
        },
    },
    {
        "name": "memory_query",
        "description": "Search long-term memory for relevant knowledge (keyword + semantic). Use before answering questions about the user's preferences, projects or past decisions.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
                "category": {"type": "string", "enum": _ALL_CATEGORIES, "description": "Restrict to one category"},
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_QUERY_LIMIT,
                    "default": 10,
                    "description": f"Maximum results (default 10, max {MAX_QUERY_LIMIT})",
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "memory_forget",
        "description": "Delete memories: by id, or the best match for a query. Set confirm_all to delete every match. Destructive; confirm with the user first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "Knowledge snippet id"},
                "query": {"type": "string", "description": "Query matching the memories to delete"},
                "confirm_all": {"type": "boolean", "default": False, "description": "Delete all matches, not just the best"},
            },
        },
    },
    {
        "name": "memory_backup",
        "description": "Manage memory backups: create a snapshot, list snapshots, restore one, or show stats.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": list(BACKUP_ACTIONS), "default": "create"},
                "filename": {"type": "string", "description": "Snapshot filename (restore only)"},
            },
            "required": ["action"],
        },
    },
    {
        "name": "memory_facts",
        "description": "List active core facts, optionally by category, or deactivate one by id.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "category": {"type": "string", "enum": _ALL_CATEGORIES},
                "deactivate": {"type": "integer", "description": "Core fact id to deactivate"},
            },
        },
    },
]
