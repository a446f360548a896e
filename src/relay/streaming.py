"""Fold streamed chat-completion deltas into one reply.

Tool-call argument fragments are string concatenations, so chunks must be
applied strictly in arrival order. A chunk carrying an ``error`` object aborts
the fold, and a stream that never delivered a choice is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from relay.errors import ResponseFormatError
from relay.providers._errors import error_from_body

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

log = logging.getLogger(__name__)


@dataclass
class _ToolCallBuffer:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ChatStreamAccumulator:
    """Accumulates chunks into the shape of a non-streamed chat completion."""

    id: str | None = None
    model: str | None = None
    role: str = "assistant"
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    provider: str = "stream"
    chunks_seen: int = 0
    choices_seen: int = 0
    _content: list[str] = field(default_factory=list)
    _tool_calls: dict[int, _ToolCallBuffer] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return "".join(self._content)

    def add(self, chunk: Mapping[str, Any]) -> None:
        """Apply one chunk. Call in arrival order."""
        self.chunks_seen += 1
        if not chunk:
            return
        if chunk.get("error"):
            raise error_from_body(chunk["error"], provider=self.provider, phase="stream")
        if chunk.get("id") and self.id is None:
            self.id = chunk["id"]
        if chunk.get("model") and self.model is None:
            self.model = chunk["model"]
        if chunk.get("usage"):
            self.usage = dict(chunk["usage"])

        choices = chunk.get("choices") or []
        if not choices:
            return
        self.choices_seen += 1
        choice = choices[0]
        delta = choice.get("delta") or {}

        if delta.get("role"):
            self.role = delta["role"]
        if delta.get("content"):
            self._content.append(delta["content"])

        for fragment in delta.get("tool_calls") or []:
            index = fragment.get("index", len(self._tool_calls))
            buf = self._tool_calls.setdefault(index, _ToolCallBuffer())
            if fragment.get("id"):
                buf.id += fragment["id"]
            function = fragment.get("function") or {}
            if function.get("name"):
                buf.name += function["name"]
            if function.get("arguments"):
                buf.arguments += function["arguments"]

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

    def to_chat_completion(self) -> dict[str, Any]:
        """Return the accumulated reply as a chat-completion mapping."""
        if not self.choices_seen:
            raise ResponseFormatError(
                f"{self.provider} stream ended without any choices "
                f"({self.chunks_seen} chunks received)"
            )
        message: dict[str, Any] = {"role": self.role, "content": self.content or None}
        if self._tool_calls:
            message["tool_calls"] = [
                {
                    "id": buf.id,
                    "type": "function",
                    "function": {"name": buf.name, "arguments": buf.arguments},
                }
                for _, buf in sorted(self._tool_calls.items())
            ]
        completion: dict[str, Any] = {
            "choices": [{"index": 0, "message": message, "finish_reason": self.finish_reason}],
        }
        if self.id is not None:
            completion["id"] = self.id
        if self.model is not None:
            completion["model"] = self.model
        if self.usage is not None:
            completion["usage"] = self.usage
        return completion


def accumulate_chat_stream(
    chunks: Iterable[Mapping[str, Any]], *, provider: str = "stream"
) -> dict[str, Any]:
    """Consume *chunks* and return the folded chat completion."""
    acc = ChatStreamAccumulator(provider=provider)
    for chunk in chunks:
        acc.add(chunk)
    log.debug(
        "Folded %d stream chunks (content_chars=%d, finish_reason=%s)",
        acc.chunks_seen,
        len(acc.content),
        acc.finish_reason,
    )
    return acc.to_chat_completion()
