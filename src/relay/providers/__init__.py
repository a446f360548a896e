"""Backend implementations."""

from .base import (
    Backend,
    CapabilitySet,
    ChatCompletionBackend,
    NativeCompletionBackend,
    StreamingBackend,
)
from .chat import ChatCompletionsBackend
from .mock import MockBackend
from .openai import OpenAIBackend

__all__ = [
    "Backend",
    "CapabilitySet",
    "ChatCompletionBackend",
    "ChatCompletionsBackend",
    "MockBackend",
    "NativeCompletionBackend",
    "OpenAIBackend",
    "StreamingBackend",
]
