"""ProviderAdapter dispatch, normalization and fallback handoff behavior."""

from __future__ import annotations

from typing import Any

import pytest

from relay.adapter import (
    ProviderAdapter,
    normalize_chat_completion_response,
    normalize_native_response,
)
from relay.errors import (
    AuthenticationError,
    ConfigurationError,
    ProviderError,
    RateLimitError,
    ResponseFormatError,
    ServerError,
)
from relay.handoff import HandoffDetectionResult
from relay.providers.base import CapabilitySet
from relay.providers.models import (
    CompletionRequest,
    FunctionCallItem,
    Message,
    MessageItem,
    ToolCall,
    ToolDefinition,
)
from relay.retry import RetryConfig, RetryHandler
from tests.conftest import (
    CHAT_MODEL,
    BareBackend,
    FakeChatBackend,
    FakeNativeBackend,
    chat_reply,
    tool_call,
)

pytestmark = pytest.mark.unit

AGENTS = ("Support", "Billing")
TRANSFER_TOOL = ToolDefinition(
    "transfer_to_billing",
    "Hand the conversation to the Billing agent",
)


def _request(**kwargs: Any) -> CompletionRequest:
    kwargs.setdefault("messages", (Message("user", "My invoice is wrong"),))
    kwargs.setdefault("model", CHAT_MODEL)
    return CompletionRequest(**kwargs)


# =============================================================================
# Capability probing
# =============================================================================


def test_capabilities_are_probed_once_at_construction() -> None:
    backend = FakeChatBackend(function_calling=False)
    adapter = ProviderAdapter(backend)

    backend.function_calling = True

    assert adapter.capabilities.function_calling is False


def test_backend_without_declaration_supports_nothing(fast_retry: RetryHandler) -> None:
    adapter = ProviderAdapter(BareBackend(), retry=fast_retry)

    assert adapter.capabilities == CapabilitySet()
    with pytest.raises(ProviderError, match="doesn't support any known completion API"):
        adapter.universal_completion(_request())


def test_declared_protocol_without_entry_point_is_rejected() -> None:
    class Liar:
        provider_name = "liar"
        supported_models: list[str] = []
        capabilities = CapabilitySet(native_completion=True)

    with pytest.raises(ConfigurationError, match="responses_completion"):
        ProviderAdapter(Liar())


def test_wrong_capability_type_is_rejected() -> None:
    class Loose:
        provider_name = "loose"
        capabilities = {"legacy_chat_completion": True}

    with pytest.raises(ConfigurationError):
        ProviderAdapter(Loose())


def test_provider_name_falls_back_to_class_name() -> None:
    class Anonymous:
        capabilities = CapabilitySet(legacy_chat_completion=True)

        def chat_completion(self, **kwargs: Any) -> dict[str, Any]:
            return chat_reply()

    assert ProviderAdapter(Anonymous()).provider_name == "Anonymous"


# =============================================================================
# Native path
# =============================================================================


def test_native_backend_never_touches_legacy_entry_points(
    fast_retry: RetryHandler,
) -> None:
    backend = FakeNativeBackend(streaming=True)
    adapter = ProviderAdapter(backend, retry=fast_retry)

    response = adapter.universal_completion(_request(stream=True, tools=(TRANSFER_TOOL,)))

    assert backend.entry_points == ["responses_completion"]
    assert response.output == (MessageItem("ok"),)
    assert response.usage.total_tokens == 4


def test_native_request_shape(fast_retry: RetryHandler) -> None:
    backend = FakeNativeBackend()
    adapter = ProviderAdapter(backend, retry=fast_retry)

    adapter.universal_completion(
        _request(
            messages=(
                Message("system", "be brief"),
                Message("assistant", "", tool_calls=(ToolCall("c1", "lookup", "{}"),)),
                Message("tool", "found", tool_call_id="c1"),
            ),
            tools=(TRANSFER_TOOL,),
            params={"temperature": 0.2},
        )
    )

    kwargs = backend.calls[0][1]
    assert kwargs["input"] == [
        {"role": "system", "content": [{"type": "input_text", "text": "be brief"}]},
        {"type": "function_call", "call_id": "c1", "name": "lookup", "arguments": "{}"},
        {"type": "function_call_output", "call_id": "c1", "output": "found"},
    ]
    assert kwargs["tools"][0]["name"] == "transfer_to_billing"
    assert kwargs["temperature"] == 0.2


def test_native_output_keeps_item_order(fast_retry: RetryHandler) -> None:
    backend = FakeNativeBackend(
        native_script=[
            {
                "id": "resp_9",
                "output": [
                    {"type": "reasoning", "summary": []},
                    {"type": "function_call", "call_id": "c1", "name": "a", "arguments": "{}"},
                    {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "hi"}]},
                    {"type": "function_call", "call_id": "c2", "name": "b", "arguments": '{"x":1}'},
                ],
            }
        ]
    )

    response = ProviderAdapter(backend, retry=fast_retry).universal_completion(_request())

    assert response.output == (
        FunctionCallItem("c1", "a", "{}"),
        MessageItem("hi"),
        FunctionCallItem("c2", "b", '{"x":1}'),
    )
    assert response.id == "resp_9"
    assert response.model == CHAT_MODEL


# =============================================================================
# Legacy path
# =============================================================================


def test_legacy_reply_becomes_message_then_function_calls(
    fast_retry: RetryHandler,
) -> None:
    backend = FakeChatBackend(
        script=[
            chat_reply(
                "Let me check.",
                tool_calls=[
                    tool_call("call_1", "lookup_invoice", '{"id": 7}'),
                    tool_call("call_2", "transfer_to_billing"),
                ],
            )
        ]
    )
    adapter = ProviderAdapter(backend, AGENTS, retry=fast_retry)

    response = adapter.universal_completion(_request(tools=(TRANSFER_TOOL,)))

    assert backend.entry_points == ["chat_completion"]
    assert response.output == (
        MessageItem("Let me check."),
        FunctionCallItem("call_1", "lookup_invoice", '{"id": 7}'),
        FunctionCallItem("call_2", "transfer_to_billing", "{}"),
    )
    assert response.usage.input_tokens == 3
    assert response.usage.output_tokens == 2
    assert "handoff" not in response.metadata


def test_legacy_request_shape_with_function_calling(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend()
    adapter = ProviderAdapter(backend, retry=fast_retry)

    adapter.universal_completion(_request(tools=(TRANSFER_TOOL,), params={"max_tokens": 50}))

    kwargs = backend.calls[0][1]
    assert kwargs["messages"] == [{"role": "user", "content": "My invoice is wrong"}]
    assert kwargs["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "transfer_to_billing",
                "description": "Hand the conversation to the Billing agent",
                "parameters": {"type": "object", "properties": {}},
            },
        }
    ]
    assert kwargs["max_tokens"] == 50


def test_tool_calls_only_reply_has_no_message_item(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(script=[chat_reply(None, tool_calls=[tool_call("c", "f")])])

    response = ProviderAdapter(backend, retry=fast_retry).universal_completion(_request())

    assert response.output == (FunctionCallItem("c", "f", "{}"),)


def test_without_function_calling_tools_are_withheld(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(function_calling=False)
    adapter = ProviderAdapter(backend, AGENTS, retry=fast_retry)

    adapter.universal_completion(_request(tools=(TRANSFER_TOOL,)))

    assert backend.calls[0][1]["tools"] is None


def test_fallback_handoff_is_attached_not_executed(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(
        function_calling=False,
        script=[chat_reply('I will transfer you now. {"handoff_to": "Billing"}', response_id="r-7")],
    )
    adapter = ProviderAdapter(backend, AGENTS, retry=fast_retry)

    response = adapter.universal_completion(_request(tools=(TRANSFER_TOOL,)))

    assert response.function_calls == ()
    handoff = response.metadata["handoff"]
    assert isinstance(handoff, HandoffDetectionResult)
    assert handoff.target_agent == "Billing"
    assert handoff.method == "content_based"
    assert handoff.context == {"provider": "fake-chat", "model": CHAT_MODEL, "response_id": "r-7"}
    assert adapter.get_handoff_stats().successful_detections == 1


def test_fallback_scan_needs_tools_in_request(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(
        function_calling=False, script=[chat_reply('{"handoff_to": "Billing"}')]
    )
    adapter = ProviderAdapter(backend, AGENTS, retry=fast_retry)

    response = adapter.universal_completion(_request())

    assert "handoff" not in response.metadata
    assert adapter.get_handoff_stats().total_attempts == 0


def test_fallback_without_marker_leaves_metadata_empty(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(function_calling=False, script=[chat_reply("Sure, done.")])
    adapter = ProviderAdapter(backend, AGENTS, retry=fast_retry)

    response = adapter.universal_completion(_request(tools=(TRANSFER_TOOL,)))

    assert "handoff" not in response.metadata
    assert adapter.get_handoff_stats().total_attempts == 1


def test_streaming_is_folded_into_one_response(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(
        streaming=True,
        stream_script=[
            [
                {"id": "s1", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hi "}}]},
                {"choices": [{"index": 0, "delta": {"content": "there"}}]},
                {
                    "choices": [
                        {
                            "index": 0,
                            "delta": {
                                "tool_calls": [
                                    {"index": 0, "id": "c1", "function": {"name": "f", "arguments": "{}"}}
                                ]
                            },
                        }
                    ]
                },
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            ]
        ],
    )
    adapter = ProviderAdapter(backend, retry=fast_retry)

    response = adapter.universal_completion(_request(stream=True))

    assert backend.entry_points == ["stream_completion"]
    assert response.id == "s1"
    assert response.output == (MessageItem("Hi there"), FunctionCallItem("c1", "f", "{}"))


def test_stream_flag_ignored_without_streaming_capability(
    fast_retry: RetryHandler,
) -> None:
    backend = FakeChatBackend(streaming=False)

    ProviderAdapter(backend, retry=fast_retry).universal_completion(_request(stream=True))

    assert backend.entry_points == ["chat_completion"]


# =============================================================================
# Retry integration
# =============================================================================


def test_transient_backend_errors_are_retried(
    fast_retry: RetryHandler, sleeps: list[float]
) -> None:
    backend = FakeChatBackend(script=[RateLimitError("429"), ServerError("503"), chat_reply("ok")])
    adapter = ProviderAdapter(backend, retry=fast_retry)

    response = adapter.universal_completion(_request())

    assert response.text == "ok"
    assert backend.entry_points == ["chat_completion"] * 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_surface_the_last_error(fast_retry: RetryHandler) -> None:
    last = ServerError("still down")
    backend = FakeChatBackend(script=[ServerError("down"), ServerError("down"), last])
    adapter = ProviderAdapter(backend, retry=fast_retry)

    with pytest.raises(ServerError) as excinfo:
        adapter.universal_completion(_request())

    assert excinfo.value is last


def test_authentication_errors_are_not_retried(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(script=[AuthenticationError("bad key", status_code=401)])
    adapter = ProviderAdapter(backend, retry=fast_retry)

    with pytest.raises(AuthenticationError):
        adapter.universal_completion(_request())
    assert len(backend.calls) == 1


def test_stream_failure_retries_the_whole_stream(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(
        streaming=True,
        stream_script=[
            ServerError("dropped"),
            [{"choices": [{"index": 0, "delta": {"content": "done"}}]}],
        ],
    )

    response = ProviderAdapter(backend, retry=fast_retry).universal_completion(
        _request(stream=True)
    )

    assert response.text == "done"
    assert backend.entry_points == ["stream_completion"] * 2


def test_retry_config_is_accepted_directly() -> None:
    adapter = ProviderAdapter(FakeChatBackend(), retry=RetryConfig(max_attempts=2))

    assert adapter.retry.config.max_attempts == 2


def test_configure_retry_chains_through_adapter() -> None:
    adapter = ProviderAdapter(FakeChatBackend())

    returned = adapter.configure_retry(max_attempts=7)

    assert returned is adapter
    assert adapter.retry.config.max_attempts == 7


# =============================================================================
# Handoff helpers
# =============================================================================


def test_supports_handoffs() -> None:
    assert ProviderAdapter(FakeChatBackend(function_calling=True)).supports_handoffs()
    assert ProviderAdapter(FakeChatBackend(function_calling=False), AGENTS).supports_handoffs()
    assert not ProviderAdapter(FakeChatBackend(function_calling=False)).supports_handoffs()


def test_content_detection_is_disabled_with_function_calling() -> None:
    adapter = ProviderAdapter(FakeChatBackend(function_calling=True), AGENTS)

    assert adapter.detect_content_based_handoff("[HANDOFF:Billing]") is None
    assert adapter.get_handoff_stats().total_attempts == 0


def test_content_detection_without_function_calling() -> None:
    adapter = ProviderAdapter(FakeChatBackend(function_calling=False), AGENTS)

    assert adapter.detect_content_based_handoff("[HANDOFF:Billing]") == "Billing"


def test_update_available_agents_keeps_stats() -> None:
    adapter = ProviderAdapter(FakeChatBackend(function_calling=False), AGENTS)
    adapter.detect_content_based_handoff("[HANDOFF:Billing]")

    adapter.update_available_agents(["Sales"])

    stats = adapter.get_handoff_stats()
    assert stats.available_agents == ("Sales",)
    assert stats.total_attempts == 1
    assert adapter.detect_content_based_handoff("[HANDOFF:Billing]") is None


def test_enhanced_instructions_only_without_function_calling() -> None:
    native = ProviderAdapter(FakeChatBackend(function_calling=True), AGENTS)
    fallback = ProviderAdapter(FakeChatBackend(function_calling=False), AGENTS)

    assert native.enhanced_system_instructions("Be helpful.") == "Be helpful."
    text = fallback.enhanced_system_instructions("Be helpful.")
    assert text.startswith("Be helpful.\n\n# Handoff Instructions")
    assert "- Support\n- Billing" in text


def test_capability_report() -> None:
    report = ProviderAdapter(FakeChatBackend(function_calling=False)).capability_report()

    assert report.provider == "fake-chat"
    assert report.handoff_support == "Content-based"
    assert any(r.severity == "warning" for r in report.recommendations)


# =============================================================================
# Normalization edge cases
# =============================================================================


def test_missing_id_and_usage_are_filled_in() -> None:
    response = normalize_chat_completion_response(
        {"choices": [{"message": {"role": "assistant", "content": "hi"}}]},
        default_model="fallback",
    )

    assert response.id.startswith("resp_")
    assert response.usage.total_tokens == 0
    assert response.model == "fallback"


def test_tool_call_without_id_or_arguments_gets_defaults() -> None:
    response = normalize_chat_completion_response(
        {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [{"function": {"name": "f", "arguments": None}}],
                    }
                }
            ]
        }
    )

    assert response.output == (FunctionCallItem("call_0", "f", "{}"),)


def test_provider_metadata_passes_through() -> None:
    response = normalize_chat_completion_response(
        {**chat_reply("hi"), "metadata": {"route": "gpu-2"}}
    )

    assert response.metadata == {"provider_metadata": {"route": "gpu-2"}}


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"choices": []},
        {"choices": [{"index": 0}]},
        {"choices": [{"message": {"tool_calls": [{"id": "c", "function": {}}]}}]},
        "not a mapping",
    ],
)
def test_malformed_chat_replies_raise_format_error(raw: Any) -> None:
    with pytest.raises(ResponseFormatError):
        normalize_chat_completion_response(raw)


@pytest.mark.parametrize(
    "call",
    [
        "call_1",
        None,
        {"id": "c1"},
        {"id": "c1", "function": "transfer_to_billing"},
    ],
)
def test_malformed_tool_call_entries_raise_format_error(call: Any) -> None:
    raw = {"choices": [{"message": {"content": None, "tool_calls": [call]}}]}

    with pytest.raises(ResponseFormatError, match="Tool call 0 is malformed"):
        normalize_chat_completion_response(raw)


def test_native_empty_arguments_are_kept_verbatim() -> None:
    response = normalize_native_response(
        {
            "output": [
                {"type": "function_call", "call_id": "c1", "name": "f", "arguments": ""},
                {"type": "function_call", "call_id": "c2", "name": "g"},
            ]
        }
    )

    assert response.output == (FunctionCallItem("c1", "f", ""), FunctionCallItem("c2", "g", "{}"))


def test_chat_empty_arguments_are_kept_verbatim() -> None:
    response = normalize_chat_completion_response(
        chat_reply(None, tool_calls=[tool_call("c1", "f", "")])
    )

    assert response.output == (FunctionCallItem("c1", "f", ""),)


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "r"},
        {"output": "text"},
        {"output": [{"type": "function_call", "arguments": "{}"}]},
    ],
)
def test_malformed_native_replies_raise_format_error(raw: Any) -> None:
    with pytest.raises(ResponseFormatError):
        normalize_native_response(raw)


def test_malformed_reply_is_not_retried(fast_retry: RetryHandler) -> None:
    backend = FakeChatBackend(script=[{"choices": []}])

    with pytest.raises(ResponseFormatError):
        ProviderAdapter(backend, retry=fast_retry).universal_completion(_request())
    assert len(backend.calls) == 1


def test_sdk_objects_are_dumped() -> None:
    class _Completion:
        def model_dump(self) -> dict[str, Any]:
            return chat_reply("from sdk")

    assert normalize_chat_completion_response(_Completion()).text == "from sdk"


def test_response_to_dict_wire_shape() -> None:
    response = normalize_chat_completion_response(
        chat_reply("hi", tool_calls=[tool_call("c1", "f", '{"a":1}')])
    )

    assert response.to_dict() == {
        "id": "chatcmpl-1",
        "output": [
            {"type": "message", "role": "assistant", "content": "hi"},
            {"type": "function_call", "id": "c1", "name": "f", "arguments": '{"a":1}'},
        ],
        "usage": {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
        "model": CHAT_MODEL,
    }
