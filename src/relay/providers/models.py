"""Domain models shared by the adapter and the backends."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Union
import uuid

from pydantic import BaseModel

from relay.errors import ConfigurationError

Role = Literal["system", "user", "assistant", "tool"]
_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})

# Keys of the request wire shape that are not generation parameters.
_REQUEST_KEYS: frozenset[str] = frozenset({"messages", "model", "tools", "stream"})


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model in an earlier assistant turn."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class Message:
    """A conversational message turn."""

    role: Role
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self) -> None:
        """Reject roles the wire protocols cannot express."""
        if self.role not in _ROLES:
            raise ConfigurationError(
                f"Unknown message role: {self.role!r}",
                hint="Use one of: system, user, assistant, tool.",
            )
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        """Build a Message from its wire shape."""
        tool_calls = []
        for raw in data.get("tool_calls") or ():
            function = raw.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=str(raw.get("id", "")),
                    name=str(raw.get("name") or function.get("name", "")),
                    arguments=raw.get("arguments") or function.get("arguments") or "{}",
                )
            )
        return cls(
            role=data.get("role", ""),
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tuple(tool_calls),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call.

    ``parameters`` is a JSON Schema dict or a Pydantic ``BaseModel`` subclass.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] | type[BaseModel] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    strict: bool = False

    def __post_init__(self) -> None:
        """Validate the tool shape early for clear errors."""
        if not isinstance(self.name, str) or not self.name:
            raise ConfigurationError("Tool name must be a non-empty string")
        if not (
            isinstance(self.parameters, dict)
            or (
                isinstance(self.parameters, type)
                and issubclass(self.parameters, BaseModel)
            )
        ):
            raise ConfigurationError(
                f"Tool {self.name!r}: parameters must be a JSON schema dict "
                "or a Pydantic model class",
            )

    def parameters_schema(self) -> dict[str, Any]:
        """Return the parameter JSON Schema."""
        if isinstance(self.parameters, dict):
            return self.parameters
        return self.parameters.model_json_schema()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolDefinition:
        """Accept the flat shape or the chat ``{"type": "function", "function": {...}}`` shape."""
        body = data.get("function") if isinstance(data.get("function"), Mapping) else data
        return cls(
            name=body.get("name", ""),
            description=body.get("description") or "",
            parameters=dict(body.get("parameters") or {"type": "object", "properties": {}}),
            strict=bool(body.get("strict", False)),
        )


@dataclass(frozen=True)
class CompletionRequest:
    """A backend-independent completion request.

    ``params`` holds generation parameters (temperature, max_tokens, top_p,
    stop, seed, ...) passed to the backend verbatim.
    """

    messages: tuple[Message, ...]
    model: str
    tools: tuple[ToolDefinition, ...] = ()
    stream: bool = False
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalize sequences and enforce unique tool names."""
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools or ()))
        if not isinstance(self.model, str) or not self.model:
            raise ConfigurationError("CompletionRequest.model must be a non-empty string")
        seen: set[str] = set()
        for tool in self.tools:
            if tool.name in seen:
                raise ConfigurationError(
                    f"Duplicate tool name in request: {tool.name!r}",
                    hint="Tool names must be unique within one request.",
                )
            seen.add(tool.name)
        overlap = _REQUEST_KEYS & set(self.params)
        if overlap:
            raise ConfigurationError(
                f"params must not contain request fields: {', '.join(sorted(overlap))}"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompletionRequest:
        """Parse the request wire shape; unknown keys become generation params."""
        return cls(
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or ()),
            model=data.get("model", ""),
            tools=tuple(ToolDefinition.from_dict(t) for t in data.get("tools") or ()),
            stream=bool(data.get("stream", False)),
            params={k: v for k, v in data.items() if k not in _REQUEST_KEYS},
        )


@dataclass(frozen=True)
class MessageItem:
    """Assistant text emitted by the backend."""

    text: str
    role: str = "assistant"
    type: Literal["message"] = "message"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "role": self.role, "content": self.text}


@dataclass(frozen=True)
class FunctionCallItem:
    """A structured tool call; ``arguments`` is the raw JSON string."""

    call_id: str
    name: str
    arguments: str
    type: Literal["function_call"] = "function_call"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
        }


OutputItem = Union[MessageItem, FunctionCallItem]


@dataclass(frozen=True)
class Usage:
    """Token usage in item-protocol terms."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> Usage:
        """Accept either item-protocol or chat (prompt/completion) field names."""
        if not raw:
            return cls()
        input_tokens = raw.get("input_tokens")
        if input_tokens is None:
            input_tokens = raw.get("prompt_tokens")
        output_tokens = raw.get("output_tokens")
        if output_tokens is None:
            output_tokens = raw.get("completion_tokens")
        input_tokens = int(input_tokens or 0)
        output_tokens = int(output_tokens or 0)
        total = raw.get("total_tokens")
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(total) if total is not None else input_tokens + output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CompletionResponse:
    """Normalized completion result; ``output`` keeps backend emission order."""

    id: str
    output: tuple[OutputItem, ...]
    usage: Usage = field(default_factory=Usage)
    model: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated assistant text across message items."""
        return "".join(item.text for item in self.output if isinstance(item, MessageItem))

    @property
    def function_calls(self) -> tuple[FunctionCallItem, ...]:
        return tuple(item for item in self.output if isinstance(item, FunctionCallItem))

    def to_dict(self) -> dict[str, Any]:
        """Render the response wire shape."""
        return {
            "id": self.id,
            "output": [item.to_dict() for item in self.output],
            "usage": self.usage.to_dict(),
            "model": self.model,
        }


def new_response_id() -> str:
    """Return a fresh identifier for responses that arrived without one."""
    return f"resp_{uuid.uuid4().hex}"
