"""Relay: one completion interface over native and legacy LLM backends.

Public API:
    - ProviderAdapter: capability-aware completion entry point
    - RetryHandler / RetryConfig: bounded retries with exponential backoff
    - HandoffFallbackDetector: content-based handoff detection
    - Config / create_adapter: environment-driven construction
"""

from __future__ import annotations

import logging

from relay.adapter import (
    ProviderAdapter,
    normalize_chat_completion_response,
    normalize_native_response,
)
from relay.capabilities import CapabilityReport, probe_capabilities
from relay.config import Config, create_adapter
from relay.errors import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    RelayError,
    ResponseFormatError,
    RetryableResponseError,
    ServerError,
)
from relay.handoff import (
    DetectionPattern,
    DetectionStats,
    HandoffDetectionResult,
    HandoffFallbackDetector,
    PatternCategory,
)
from relay.providers.base import CapabilitySet
from relay.providers.models import (
    CompletionRequest,
    CompletionResponse,
    FunctionCallItem,
    Message,
    MessageItem,
    ToolCall,
    ToolDefinition,
    Usage,
)
from relay.retry import RetryConfig, RetryHandler, RetryStats, classify_error
from relay.streaming import ChatStreamAccumulator, accumulate_chat_stream

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("relay-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("relay").addHandler(logging.NullHandler())

__all__ = [
    "APIConnectionError",
    "APIError",
    "AuthenticationError",
    "CapabilityReport",
    "CapabilitySet",
    "ChatStreamAccumulator",
    "CompletionRequest",
    "CompletionResponse",
    "Config",
    "ConfigurationError",
    "DetectionPattern",
    "DetectionStats",
    "FunctionCallItem",
    "HandoffDetectionResult",
    "HandoffFallbackDetector",
    "Message",
    "MessageItem",
    "ModelNotFoundError",
    "PatternCategory",
    "ProviderAdapter",
    "ProviderError",
    "RateLimitError",
    "RelayError",
    "ResponseFormatError",
    "RetryConfig",
    "RetryHandler",
    "RetryStats",
    "RetryableResponseError",
    "ServerError",
    "ToolCall",
    "ToolDefinition",
    "Usage",
    "accumulate_chat_stream",
    "classify_error",
    "create_adapter",
    "normalize_chat_completion_response",
    "normalize_native_response",
    "probe_capabilities",
]
