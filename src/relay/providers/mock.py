"""Mock backend for offline use and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from relay.providers.base import CapabilitySet

if TYPE_CHECKING:
    from collections.abc import Iterator


@dataclass
class MockBackend:
    """Backend that answers from a script, or echoes the last user message.

    ``script`` entries are consumed in order: a dict is returned as the reply,
    an exception instance is raised. With an empty script the backend echoes.
    Every call is recorded in ``calls`` as ``(entry_point, kwargs)``.
    """

    capabilities: CapabilitySet = field(
        default_factory=lambda: CapabilitySet(
            native_completion=False,
            legacy_chat_completion=True,
            function_calling=True,
            streaming=True,
        )
    )
    provider_name: str = "mock"
    supported_models: list[str] = field(default_factory=lambda: ["mock-model"])
    script: list[dict[str, Any] | BaseException] = field(default_factory=list)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def responses_completion(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("responses_completion", kwargs))
        scripted = self._next()
        if scripted is not None:
            return scripted
        text = _last_text(kwargs.get("input") or [])
        return {
            "id": f"mock-{len(self.calls)}",
            "model": kwargs.get("model", "mock-model"),
            "output": [
                {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": f"echo: {text[:100]}"}],
                }
            ],
            "usage": {"input_tokens": 10, "output_tokens": 10, "total_tokens": 20},
        }

    def chat_completion(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("chat_completion", kwargs))
        scripted = self._next()
        if scripted is not None:
            return scripted
        return self._echo_completion(kwargs)

    def stream_completion(self, **kwargs: Any) -> Iterator[dict[str, Any]]:
        """Stream a scripted or echoed reply as one chunk per word."""
        self.calls.append(("stream_completion", kwargs))
        scripted = self._next()
        reply = scripted if scripted is not None else self._echo_completion(kwargs)
        if "choices" in reply and reply["choices"] and "delta" in reply["choices"][0]:
            # Already a chunk: stream it as-is.
            yield reply
            return
        message = reply["choices"][0]["message"]
        words = (message.get("content") or "").split(" ")
        for i, word in enumerate(words):
            yield {
                "id": reply.get("id"),
                "model": reply.get("model"),
                "choices": [{"index": 0, "delta": {"content": word if i == 0 else f" {word}"}}],
            }
        for i, call in enumerate(message.get("tool_calls") or []):
            yield {
                "id": reply.get("id"),
                "choices": [{"index": 0, "delta": {"tool_calls": [{"index": i, **call}]}}],
            }
        yield {
            "id": reply.get("id"),
            "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
            "usage": reply.get("usage"),
        }

    def _next(self) -> dict[str, Any] | None:
        if not self.script:
            return None
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def _echo_completion(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        text = _last_text(kwargs.get("messages") or [])
        return {
            "id": f"mock-{len(self.calls)}",
            "model": kwargs.get("model", "mock-model"),
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": f"echo: {text[:100]}"},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 10, "completion_tokens": 10, "total_tokens": 20},
        }


def _last_text(entries: list[dict[str, Any]]) -> str:
    for entry in reversed(entries):
        if entry.get("role") != "user":
            continue
        content = entry.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""
