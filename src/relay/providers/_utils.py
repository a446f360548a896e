"""Shared wire-shape conversions for backends and the adapter."""

from __future__ import annotations

from copy import deepcopy
from typing import TYPE_CHECKING, Any

from relay.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from relay.providers.models import Message, ToolDefinition


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict function-calling requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required'
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated: dict[str, Any] = {}
        for key, value in node.items():
            updated[key] = walk(value)

        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                if "required" not in updated:
                    updated["required"] = list(properties.keys())

        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise ConfigurationError("Invalid tool parameters: expected object schema")
    return result


def to_native_tools(tools: Iterable[ToolDefinition]) -> list[dict[str, Any]]:
    """Render tools in the item-protocol shape (flat function definitions)."""
    rendered: list[dict[str, Any]] = []
    for tool in tools:
        params = tool.parameters_schema()
        if tool.strict:
            params = to_strict_schema(params)
        rendered.append(
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": params,
                "strict": tool.strict,
            }
        )
    return rendered


def to_chat_tools(tools: Iterable[ToolDefinition]) -> list[dict[str, Any]]:
    """Render tools in the chat-completion shape (nested under ``function``)."""
    rendered: list[dict[str, Any]] = []
    for tool in tools:
        function: dict[str, Any] = {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters_schema(),
        }
        if tool.strict:
            function["parameters"] = to_strict_schema(function["parameters"])
            function["strict"] = True
        rendered.append({"type": "function", "function": function})
    return rendered


def to_native_input(messages: Iterable[Message]) -> list[dict[str, Any]]:
    """Convert conversation turns into item-protocol input items."""
    items: list[dict[str, Any]] = []
    for message in messages:
        # Tool result → function_call_output
        if message.role == "tool":
            if not message.tool_call_id:
                raise ConfigurationError(
                    "Tool messages need a tool_call_id",
                    hint="Set tool_call_id to the id of the call being answered.",
                )
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.tool_call_id,
                    "output": message.content,
                }
            )
            continue

        # Assistant tool calls → function_call items, after any text they followed
        if message.content:
            text_type = "output_text" if message.role == "assistant" else "input_text"
            items.append(
                {
                    "role": message.role,
                    "content": [{"type": text_type, "text": message.content}],
                }
            )
        for call in message.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.name,
                    "arguments": call.arguments,
                }
            )
    return items


def to_chat_messages(messages: Iterable[Message]) -> list[dict[str, Any]]:
    """Convert conversation turns into chat-completion messages."""
    rendered: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "tool":
            entry["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            entry["content"] = message.content or None
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        rendered.append(entry)
    return rendered
