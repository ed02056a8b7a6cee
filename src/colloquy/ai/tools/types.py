"""Tool system types.

A tool is a named, schema-described capability the model may request. The
engine only needs two things from it: the :class:`ToolSpec` sent to the
model, and a handler that turns decoded arguments into a
:class:`ToolOutcome`.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolOutcome",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required", ()) if self.parameters else ())


# -----------------------------------------------------------------------------
# Tool Outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """``{ok, output_text} | {error, reason}`` returned by a handler."""

    ok: bool
    text: str

    @classmethod
    def success(cls, text: str) -> ToolOutcome:
        return cls(ok=True, text=text)

    @classmethod
    def failure(cls, reason: str) -> ToolOutcome:
        return cls(ok=False, text=reason)


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    @property
    def is_async(self) -> bool:
        ...

    def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Run the tool; async tools return an awaitable."""
        ...


@dataclass(frozen=True)
class SimpleTool:
    """Tool wrapping a plain callable.

    Example:
        def greet(args):
            return ToolOutcome.success(f"Hello, {args.get('name', 'World')}!")

        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=greet,
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def execute(self, arguments: Mapping[str, Any]) -> Any:
        return self.handler(arguments)
