"""Closed name -> tool registry used for dispatch.

The engine builds one registry per run from the tools supplied on the
request. Lookup is by exact function name; there is no reflection or
dynamic loading.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Mapping

from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Registry mapping tool names to implementations.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            ToolSpec(name="greet", description="Greet"),
            lambda args: ToolOutcome.success(f"Hello, {args['name']}!"),
        )
        tool = registry.get("greet")
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool, *, allow_override: bool = False) -> Tool:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        allow_override: bool = False,
    ) -> Tool:
        """Register a plain function (sync or async) under ``spec.name``."""
        return self.register(SimpleTool(spec=spec, handler=handler), allow_override=allow_override)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def openai_tools(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI format, in registration order."""
        return [tool.spec.to_openai_tool() for tool in self._tools.values()]

    def as_mapping(self) -> Mapping[str, Tool]:
        return dict(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)
