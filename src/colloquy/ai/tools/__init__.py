"""Tool contracts and registry."""

from .registry import DuplicateToolError, ToolRegistry
from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolOutcome, ToolSpec

__all__ = [
    "AsyncToolHandler",
    "DuplicateToolError",
    "SimpleTool",
    "Tool",
    "ToolHandler",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
]
