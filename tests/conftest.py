"""Pytest configuration and fixtures.

Provides backend doubles, environment isolation, logging configuration and
automatic API test skipping. Isolation fixtures are autouse unless noted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from relay.providers.base import CapabilitySet
from relay.retry import RetryConfig, RetryHandler

CHAT_MODEL = "llama3"
NATIVE_MODEL = "gpt-4.1-mini"

# =============================================================================
# Test Doubles
# =============================================================================


def chat_reply(
    text: str | None = "ok",
    *,
    tool_calls: list[dict[str, Any]] | None = None,
    response_id: str | None = "chatcmpl-1",
    model: str | None = CHAT_MODEL,
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    """Build a chat-completion reply mapping."""
    message: dict[str, Any] = {"role": "assistant", "content": text}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    reply: dict[str, Any] = {
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": usage
        if usage is not None
        else {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }
    if response_id is not None:
        reply["id"] = response_id
    if model is not None:
        reply["model"] = model
    return reply


def tool_call(call_id: str, name: str, arguments: str = "{}") -> dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


@dataclass
class FakeChatBackend:
    """Legacy chat-completion double.

    Replays ``script`` entries in order (dicts are returned, exceptions raised)
    and records every call as ``(entry_point, kwargs)``.
    """

    function_calling: bool = True
    streaming: bool = False
    provider_name: str = "fake-chat"
    supported_models: list[str] = field(default_factory=lambda: [CHAT_MODEL])
    script: list[Any] = field(default_factory=list)
    stream_script: list[Any] = field(default_factory=list)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    @property
    def capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            legacy_chat_completion=True,
            function_calling=self.function_calling,
            streaming=self.streaming,
        )

    def chat_completion(self, **kwargs: Any) -> Any:
        self.calls.append(("chat_completion", kwargs))
        return self._next(self.script, chat_reply)

    def stream_completion(self, **kwargs: Any) -> Any:
        self.calls.append(("stream_completion", kwargs))
        chunks = self._next(self.stream_script, list)
        yield from chunks

    @property
    def entry_points(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _next(self, script: list[Any], default: Any) -> Any:
        if not script:
            return default()
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@dataclass
class FakeNativeBackend(FakeChatBackend):
    """Native item-protocol double that also exposes a chat entry point."""

    provider_name: str = "fake-native"
    native_script: list[Any] = field(default_factory=list)

    @property
    def capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            native_completion=True,
            legacy_chat_completion=True,
            function_calling=True,
            streaming=self.streaming,
        )

    def responses_completion(self, **kwargs: Any) -> Any:
        self.calls.append(("responses_completion", kwargs))
        return self._next(
            self.native_script,
            lambda: {
                "id": "resp_1",
                "model": NATIVE_MODEL,
                "output": [
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": "ok"}],
                    }
                ],
                "usage": {"input_tokens": 3, "output_tokens": 1, "total_tokens": 4},
            },
        )


class BareBackend:
    """Backend that declares nothing."""

    provider_name = "bare"
    supported_models: list[str] = []


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sleeps() -> list[float]:
    """Delays recorded by the ``fast_retry`` handler instead of sleeping."""
    return []


@pytest.fixture
def fast_retry(sleeps: list[float]) -> RetryHandler:
    """RetryHandler that records delays and uses no jitter."""
    return RetryHandler(
        RetryConfig(max_attempts=3, base_delay=1.0, jitter=0.0),
        sleep=sleeps.append,
        rng=lambda: 0.5,
    )


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    monkeypatch.setattr(
        "relay.config.load_dotenv", lambda *_args, **_kwargs: False
    )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears OPENAI_* and RELAY_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.api
    """
    if "api" in request.node.keywords:
        return

    for key in list(os.environ.keys()):
        if key.startswith(("OPENAI_", "RELAY_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

_OPENAI_TEST_MODEL = "gpt-4.1-mini"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def openai_test_model():
    """Return the model to use for OpenAI API tests."""
    return _OPENAI_TEST_MODEL
