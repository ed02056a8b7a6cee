"""Tests for the tool registry and tool types."""

from __future__ import annotations

import pytest

from colloquy.ai.tools import DuplicateToolError, SimpleTool, ToolOutcome, ToolRegistry, ToolSpec

_SPEC = ToolSpec(
    name="greet",
    description="Greet someone",
    parameters={"type": "object", "properties": {"name": {"type": "string"}}, "required": ["name"]},
)


def _greet(args):
    return ToolOutcome.success(f"Hello, {args['name']}!")


async def _agreet(args):
    return ToolOutcome.success(f"Hi, {args['name']}!")


def test_register_function_and_lookup() -> None:
    registry = ToolRegistry()

    registry.register_function(_SPEC, _greet)

    tool = registry.get("greet")
    assert tool is not None
    assert tool.execute({"name": "Ada"}) == ToolOutcome(ok=True, text="Hello, Ada!")
    assert "greet" in registry
    assert len(registry) == 1
    assert registry.get("missing") is None


def test_duplicate_registration_is_rejected_unless_overridden() -> None:
    registry = ToolRegistry([SimpleTool(spec=_SPEC, handler=_greet)])

    with pytest.raises(DuplicateToolError):
        registry.register_function(_SPEC, _greet)

    registry.register_function(_SPEC, _agreet, allow_override=True)
    tool = registry.get("greet")
    assert tool is not None and tool.is_async


def test_openai_tools_preserve_registration_order() -> None:
    registry = ToolRegistry()
    registry.register_function(ToolSpec(name="b", description="second"), _greet)
    registry.register_function(_SPEC, _greet)

    definitions = registry.openai_tools()

    assert [item["function"]["name"] for item in definitions] == ["b", "greet"]
    assert definitions[0]["function"]["parameters"] == {"type": "object", "properties": {}}
    assert definitions[1]["function"]["parameters"]["required"] == ["name"]


def test_spec_required_reads_schema() -> None:
    assert _SPEC.required == ("name",)
    assert ToolSpec(name="x", description="").required == ()


def test_empty_registry_is_falsy() -> None:
    assert not ToolRegistry()
