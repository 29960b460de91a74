"""Tool-call layer over MemoryManager."""

from cortex.tools.handlers import build_handlers, dispatch, tool_error, tool_response
from cortex.tools.tool_schemas import TOOL_SCHEMAS

__all__ = ["TOOL_SCHEMAS", "build_handlers", "dispatch", "tool_error", "tool_response"]
