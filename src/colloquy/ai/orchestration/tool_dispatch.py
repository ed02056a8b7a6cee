"""Execution of a single requested tool call.

Every failure mode (unknown tool, undecodable or schema-invalid arguments,
handler errors, timeouts) is converted into tool output text so that the
model can react to it on its next turn.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..tools.registry import ToolRegistry
from ..tools.types import Tool, ToolOutcome, ToolSpec
from .errors import ToolExecutionError
from .types import Message, ToolCall

__all__ = [
    "DispatchUnit",
    "DispatchOutcome",
    "execute_unit",
    "format_tool_result_content",
    "parse_tool_arguments",
    "validate_arguments",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Units and Outcomes
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class DispatchUnit:
    """One tool call submitted to the dispatch pool."""

    tool_call_id: str
    function_name: str
    arguments: str

    @classmethod
    def from_call(cls, call: ToolCall) -> DispatchUnit:
        return cls(tool_call_id=call.id, function_name=call.name, arguments=call.arguments)

    def as_tool_call(self) -> ToolCall:
        return ToolCall(id=self.tool_call_id, name=self.function_name, arguments=self.arguments)


@dataclass(slots=True, frozen=True)
class DispatchOutcome:
    """Transcript messages produced for one unit.

    Attributes:
        request_echo_message: Assistant message carrying just this tool call.
        tool_response_message: Tool message answering it.
        ok: Whether the tool produced a successful result.
        duration_ms: Wall time spent on the unit.
    """

    request_echo_message: Message
    tool_response_message: Message
    ok: bool
    duration_ms: float = 0.0

    @classmethod
    def build(cls, unit: DispatchUnit, text: str, *, ok: bool, duration_ms: float = 0.0) -> DispatchOutcome:
        return cls(
            request_echo_message=Message.assistant(None, tool_calls=(unit.as_tool_call(),)),
            tool_response_message=Message.tool(text, unit.tool_call_id, name=unit.function_name),
            ok=ok,
            duration_ms=duration_ms,
        )


# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------


def format_tool_result_content(result: Any) -> str:
    """Format a tool result for inclusion in a message."""

    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, bool):
        return "true" if result else "false"
    if isinstance(result, (int, float)):
        return str(result)
    if isinstance(result, (dict, list, tuple)):
        try:
            return json.dumps(result, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            return str(result)
    return str(result)


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Decode the model's argument string into a mapping.

    Raises:
        ValueError: If the string is not JSON or not a JSON object.
    """
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def validate_arguments(spec: ToolSpec, arguments: Mapping[str, Any]) -> str | None:
    """Return an error description when ``arguments`` violate the tool's schema."""

    missing = [key for key in spec.required if key not in arguments]
    if missing:
        return f"Missing required argument '{missing[0]}'"
    if not spec.parameters:
        return None
    try:
        validator = Draft202012Validator(dict(spec.parameters))
        errors = sorted(validator.iter_errors(dict(arguments)), key=lambda error: list(error.path))
    except SchemaError as exc:
        LOGGER.warning("Tool %s has an invalid parameter schema: %s", spec.name, exc.message)
        return None
    if not errors:
        return None
    error = errors[0]
    location = ".".join(str(part) for part in error.path)
    return f"Invalid argument {location!r}: {error.message}" if location else f"Invalid arguments: {error.message}"


def _spec_text(spec: ToolSpec) -> str:
    return json.dumps(spec.to_openai_tool()["function"], ensure_ascii=False)


# -----------------------------------------------------------------------------
# Tool Execution
# -----------------------------------------------------------------------------


async def execute_unit(
    unit: DispatchUnit,
    registry: ToolRegistry,
    *,
    timeout_seconds: float | None = None,
) -> DispatchOutcome:
    """Run one unit; never raises for tool-level problems."""

    start = time.perf_counter()

    def _done(text: str, ok: bool) -> DispatchOutcome:
        return DispatchOutcome.build(unit, text, ok=ok, duration_ms=(time.perf_counter() - start) * 1000)

    tool = registry.get(unit.function_name)
    if tool is None:
        available = ", ".join(sorted(registry)) or "none"
        LOGGER.warning("Model requested unknown tool %r", unit.function_name)
        return _done(
            f"Error: Tool '{unit.function_name}' is not available. "
            f"Available tools: {available}. Arguments received: {unit.arguments}",
            False,
        )

    try:
        arguments = parse_tool_arguments(unit.arguments)
    except ValueError as exc:
        LOGGER.warning("Failed to parse arguments for tool %s: %s", unit.function_name, exc)
        return _done(
            f"Error: Invalid arguments for tool '{unit.function_name}': {exc}. "
            f"Arguments received: {unit.arguments}",
            False,
        )

    problem = validate_arguments(tool.spec, arguments)
    if problem is not None:
        LOGGER.warning("Rejected arguments for tool %s: %s", unit.function_name, problem)
        return _done(
            f"Error: {problem} for tool '{unit.function_name}'. "
            f"Arguments received: {unit.arguments}\nTool spec: {_spec_text(tool.spec)}",
            False,
        )

    try:
        result = await _invoke(tool, arguments, timeout_seconds)
    except asyncio.TimeoutError:
        LOGGER.warning("Tool %s timed out after %.1fs", unit.function_name, timeout_seconds)
        return _done(f"Error: Tool '{unit.function_name}' timed out after {timeout_seconds}s", False)
    except Exception as exc:
        failure = ToolExecutionError(str(exc) or type(exc).__name__, tool_name=unit.function_name)
        LOGGER.warning("Tool %s failed: %s", unit.function_name, failure.message, exc_info=True)
        return _done(f"Error: {failure.message}", False)

    if isinstance(result, ToolOutcome):
        if not result.ok:
            LOGGER.warning("Tool %s reported failure: %s", unit.function_name, result.text)
            return _done(f"Error: {result.text}", False)
        return _done(result.text, True)
    return _done(format_tool_result_content(result), True)


async def _invoke(tool: Tool, arguments: Mapping[str, Any], timeout_seconds: float | None) -> Any:
    if tool.is_async:
        pending = tool.execute(arguments)
    else:
        pending = asyncio.to_thread(tool.execute, arguments)
    if timeout_seconds is not None and timeout_seconds > 0:
        result = await asyncio.wait_for(pending, timeout=timeout_seconds)
    else:
        result = await pending
    if inspect.isawaitable(result):
        result = await result
    return result
