"""Provider adapter: one calling convention over native and legacy backends.

The adapter probes the wrapped backend once, then serves every request
through ``universal_completion``:

- native backends get item-protocol input and return output items directly
- legacy backends get chat messages; replies are converted to output items
- legacy backends without function calling never receive tools; their reply
  text is scanned for a content-based handoff instead, and a detected target
  is attached to ``response.metadata["handoff"]`` (never executed)

Every backend call runs through the adapter's RetryHandler.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, Any

from relay.capabilities import CapabilityReport, probe_capabilities, provider_name_of
from relay.errors import ProviderError, ResponseFormatError
from relay.handoff import DetectionStats, HandoffFallbackDetector
from relay.providers._utils import (
    to_chat_messages,
    to_chat_tools,
    to_native_input,
    to_native_tools,
)
from relay.providers.models import (
    CompletionRequest,
    CompletionResponse,
    FunctionCallItem,
    MessageItem,
    OutputItem,
    Usage,
    new_response_id,
)
from relay.retry import RetryConfig, RetryHandler
from relay.streaming import accumulate_chat_stream

if TYPE_CHECKING:
    from collections.abc import Iterable

    from relay.providers.base import CapabilitySet

log = logging.getLogger(__name__)


class ProviderAdapter:
    """Wraps one backend behind a capability-aware completion entry point.

    Example:
        adapter = ProviderAdapter(backend, ["Support", "Billing"])
        response = adapter.universal_completion(request)
        for item in response.output:
            ...
    """

    def __init__(
        self,
        backend: Any,
        available_agents: Iterable[str] = (),
        *,
        retry: RetryHandler | RetryConfig | None = None,
    ) -> None:
        self._backend = backend
        self._provider_name = provider_name_of(backend)
        self._capabilities = probe_capabilities(backend)
        self._detector = HandoffFallbackDetector(available_agents)
        if isinstance(retry, RetryHandler):
            self._retry = retry
        else:
            self._retry = RetryHandler(retry)
        log.debug(
            "Adapter initialized for %s (capabilities=%s, fallback_enabled=%s)",
            self._provider_name,
            self._capabilities,
            not self._capabilities.function_calling,
        )

    @property
    def backend(self) -> Any:
        return self._backend

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def capabilities(self) -> CapabilitySet:
        """Capabilities computed at construction; never changes."""
        return self._capabilities

    @property
    def retry(self) -> RetryHandler:
        return self._retry

    @property
    def detector(self) -> HandoffFallbackDetector:
        return self._detector

    def configure_retry(self, **options: Any) -> ProviderAdapter:
        """Reconfigure the retry handler; chainable."""
        self._retry.configure_retry(**options)
        return self

    def universal_completion(self, request: CompletionRequest) -> CompletionResponse:
        """Run *request* on the backend's best protocol and normalize the result."""
        caps = self._capabilities
        log.debug(
            "Completion requested on %s (model=%s, messages=%d, tools=%d, stream=%s)",
            self._provider_name,
            request.model,
            len(request.messages),
            len(request.tools),
            request.stream,
        )

        if caps.native_completion:
            response = self._native_completion(request)
        elif caps.legacy_chat_completion:
            response = self._legacy_completion(request)
        else:
            raise ProviderError(
                f"Provider {self._provider_name} doesn't support any known completion API",
                hint="Declare native_completion or legacy_chat_completion in the "
                "backend's CapabilitySet and implement the matching entry point.",
            )

        log.debug(
            "Normalized response %s: %d item(s) [%s], usage=%s",
            response.id,
            len(response.output),
            ", ".join(item.type for item in response.output),
            response.usage,
        )
        return response

    def supports_handoffs(self) -> bool:
        """True with function calling, or when fallback agents are configured."""
        return self._capabilities.function_calling or bool(
            self._detector.available_agents
        )

    def update_available_agents(self, names: Iterable[str]) -> None:
        """Replace the fallback agent set; detection stats are kept."""
        self._detector.update_available_agents(names)

    def get_handoff_stats(self) -> DetectionStats:
        return self._detector.get_detection_stats()

    def detect_content_based_handoff(self, content: str) -> str | None:
        """Scan text for a handoff; always None when the backend has tool calls."""
        if self._capabilities.function_calling:
            return None
        return self._detector.detect_handoff_in_content(content)

    def enhanced_system_instructions(
        self, base_instructions: str, agent_names: Iterable[str] | None = None
    ) -> str:
        """Append handoff syntax instructions for backends without tool calls.

        Not applied automatically; callers opt in when building prompts.
        """
        if self._capabilities.function_calling:
            return base_instructions
        names = agent_names if agent_names is not None else self._detector.available_agents
        instructions = self._detector.generate_handoff_instructions(names)
        return f"{base_instructions}\n\n{instructions}"

    def capability_report(self) -> CapabilityReport:
        return CapabilityReport.for_capabilities(self._provider_name, self._capabilities)

    # --- dispatch ---------------------------------------------------------

    def _native_completion(self, request: CompletionRequest) -> CompletionResponse:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "input": to_native_input(request.messages),
            "tools": to_native_tools(request.tools) if request.tools else None,
            **request.params,
        }
        log.debug("Using native completion path for %s", self._provider_name)
        raw = self._retry.with_retry(
            "responses_completion",
            lambda: self._backend.responses_completion(**kwargs),
        )
        return normalize_native_response(raw, default_model=request.model)

    def _legacy_completion(self, request: CompletionRequest) -> CompletionResponse:
        caps = self._capabilities
        send_tools = bool(request.tools) and caps.function_calling
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": to_chat_messages(request.messages),
            "tools": to_chat_tools(request.tools) if send_tools else None,
            **request.params,
        }

        if request.stream and caps.streaming:
            log.debug("Using streamed chat completion path for %s", self._provider_name)
            raw = self._retry.with_retry(
                "stream_completion",
                lambda: accumulate_chat_stream(
                    self._backend.stream_completion(**kwargs), provider=self._provider_name
                ),
            )
        else:
            log.debug("Using chat completion path for %s", self._provider_name)
            raw = self._retry.with_retry(
                "chat_completion",
                lambda: self._backend.chat_completion(**kwargs),
            )
        response = normalize_chat_completion_response(raw, default_model=request.model)

        if request.tools and not caps.function_calling:
            response = self._attach_fallback_handoff(request, response)
        return response

    def _attach_fallback_handoff(
        self, request: CompletionRequest, response: CompletionResponse
    ) -> CompletionResponse:
        result = self._detector.detect_handoff_with_context(
            response.text,
            {
                "provider": self._provider_name,
                "model": request.model,
                "response_id": response.id,
            },
        )
        if not result.detected:
            return response
        log.info(
            "Content-based handoff to %s detected in %s reply (confidence=%.2f)",
            result.target_agent,
            self._provider_name,
            result.confidence,
        )
        return replace(response, metadata={**response.metadata, "handoff": result})


# --- normalization ----------------------------------------------------------


def _as_mapping(raw: Any, kind: str) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    model_dump = getattr(raw, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, Mapping):
            return dumped
    raise ResponseFormatError(
        f"Expected a mapping for the {kind} response, got {type(raw).__name__}"
    )


def _text_of(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text") or ""
            for part in content
            if isinstance(part, Mapping) and part.get("type") in {"output_text", "text"}
        )
    raise ResponseFormatError(f"Unsupported message content type: {type(content).__name__}")


def normalize_native_response(raw: Any, *, default_model: str = "") -> CompletionResponse:
    """Map a native response's output container 1:1 onto output items."""
    data = _as_mapping(raw, "native")
    output = data.get("output")
    if not isinstance(output, list):
        raise ResponseFormatError(
            "Native response has no 'output' list",
            hint=f"Received keys: {', '.join(sorted(map(str, data))) or '(none)'}",
        )

    items: list[OutputItem] = []
    for index, entry in enumerate(output):
        entry = _as_mapping(entry, "native output item")
        item_type = entry.get("type")
        if item_type == "message":
            items.append(
                MessageItem(
                    text=_text_of(entry.get("content")),
                    role=entry.get("role") or "assistant",
                )
            )
        elif item_type == "function_call":
            name = entry.get("name")
            call_id = entry.get("call_id") or entry.get("id")
            if not name or not call_id:
                raise ResponseFormatError(
                    f"Native function_call item {index} is missing its name or call id"
                )
            arguments = entry.get("arguments")
            items.append(
                FunctionCallItem(
                    call_id=call_id,
                    name=name,
                    arguments=arguments if arguments is not None else "{}",
                )
            )
        else:
            log.debug("Skipping native output item %d of type %r", index, item_type)

    return CompletionResponse(
        id=data.get("id") or new_response_id(),
        output=tuple(items),
        usage=Usage.from_raw(data.get("usage")),
        model=data.get("model") or default_model,
    )


def normalize_chat_completion_response(
    raw: Any, *, default_model: str = ""
) -> CompletionResponse:
    """Convert a chat-completion reply: text first, then one item per tool call."""
    data = _as_mapping(raw, "chat completion")
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ResponseFormatError(
            "Chat completion response has no choices",
            hint=f"Received keys: {', '.join(sorted(map(str, data))) or '(none)'}",
        )
    message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
    if not isinstance(message, Mapping):
        raise ResponseFormatError("First chat completion choice has no message")

    items: list[OutputItem] = []
    text = _text_of(message.get("content"))
    if text:
        items.append(MessageItem(text=text))

    for index, call in enumerate(message.get("tool_calls") or []):
        function = call.get("function") if isinstance(call, Mapping) else None
        if not isinstance(function, Mapping):
            raise ResponseFormatError(
                f"Tool call {index} is malformed",
                hint="Expected a mapping with a 'function' mapping.",
            )
        name = function.get("name")
        if not name:
            raise ResponseFormatError(f"Tool call {index} has no function name")
        arguments = function.get("arguments")
        items.append(
            FunctionCallItem(
                call_id=call.get("id") or f"call_{index}",
                name=name,
                arguments=arguments if arguments is not None else "{}",
            )
        )

    metadata: dict[str, Any] = {}
    provider_metadata = data.get("metadata")
    if isinstance(provider_metadata, Mapping) and provider_metadata:
        metadata["provider_metadata"] = dict(provider_metadata)

    return CompletionResponse(
        id=data.get("id") or new_response_id(),
        output=tuple(items),
        usage=Usage.from_raw(data.get("usage")),
        model=data.get("model") or default_model,
        metadata=metadata,
    )
