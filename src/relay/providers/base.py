"""Backend protocols: the entry points a backend may declare."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping


@dataclass(frozen=True)
class CapabilitySet:
    """Feature flags a backend declares for itself."""

    native_completion: bool = False
    legacy_chat_completion: bool = False
    function_calling: bool = False
    streaming: bool = False


@runtime_checkable
class Backend(Protocol):
    """Minimal backend surface: a name, a model list and declared capabilities."""

    @property
    def provider_name(self) -> str:
        """Display name used in logs and errors."""
        ...

    @property
    def supported_models(self) -> list[str]:
        """Models this backend can serve."""
        ...

    @property
    def capabilities(self) -> CapabilitySet:
        """Statically declared capabilities."""
        ...


class NativeCompletionBackend(Backend, Protocol):
    """Backend speaking the item-based (Responses-style) protocol."""

    def responses_completion(
        self,
        *,
        model: str,
        input: list[dict[str, Any]],  # noqa: A002
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> Mapping[str, Any]:
        """Return ``{"id", "output": [...], "usage", "model"}``."""
        ...


class ChatCompletionBackend(Backend, Protocol):
    """Backend speaking the legacy chat-completion protocol."""

    def chat_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> Mapping[str, Any]:
        """Return ``{"id", "choices": [{"message": {...}}], "usage", "model"}``."""
        ...


class StreamingBackend(Backend, Protocol):
    """Backend that can stream chat-completion deltas."""

    def stream_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> Iterator[Mapping[str, Any]]:
        """Yield chat-completion chunks in arrival order."""
        ...
