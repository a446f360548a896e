"""Capability probing and human-readable capability reports."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Literal

from relay.errors import ConfigurationError
from relay.providers.base import CapabilitySet

log = logging.getLogger(__name__)

# Declared capability → entry point the backend must then provide.
_ENTRY_POINTS: dict[str, str] = {
    "native_completion": "responses_completion",
    "legacy_chat_completion": "chat_completion",
    "streaming": "stream_completion",
}

_DESCRIPTIONS: dict[str, tuple[str, str, str]] = {
    "native_completion": (
        "Native completion",
        "Item-based completion protocol with first-class tool calls",
        "high",
    ),
    "legacy_chat_completion": (
        "Chat completion",
        "Legacy chat-completion protocol",
        "high",
    ),
    "function_calling": (
        "Function calling",
        "Structured tool calls (required for native handoffs)",
        "high",
    ),
    "streaming": ("Streaming", "Incremental chat-completion deltas", "medium"),
}

Severity = Literal["critical", "warning", "info", "success"]


def provider_name_of(backend: Any) -> str:
    name = getattr(backend, "provider_name", None)
    return name if isinstance(name, str) and name else type(backend).__name__


def probe_capabilities(backend: Any) -> CapabilitySet:
    """Read the backend's declared capabilities and check them once.

    Backends declare a ``capabilities`` property. A backend without one is
    treated as supporting nothing. Declaring a protocol without providing its
    entry point is a ConfigurationError.
    """
    name = provider_name_of(backend)
    declared = getattr(backend, "capabilities", None)
    if declared is None:
        log.warning("Backend %s declares no capabilities; treating as unsupported", name)
        return CapabilitySet()
    if not isinstance(declared, CapabilitySet):
        raise ConfigurationError(
            f"Backend {name} declared capabilities of type {type(declared).__name__}",
            hint="Return a relay.CapabilitySet from the backend's capabilities property.",
        )

    for flag, method in _ENTRY_POINTS.items():
        if getattr(declared, flag) and not callable(getattr(backend, method, None)):
            raise ConfigurationError(
                f"Backend {name} declares {flag} but has no callable {method}()",
            )
    if declared.function_calling and not (
        declared.native_completion or declared.legacy_chat_completion
    ):
        raise ConfigurationError(
            f"Backend {name} declares function_calling without a completion protocol",
        )

    log.debug("Detected capabilities for %s: %s", name, declared)
    return declared


@dataclass(frozen=True)
class CapabilityRow:
    name: str
    description: str
    supported: bool
    priority: str


@dataclass(frozen=True)
class Recommendation:
    severity: Severity
    message: str


@dataclass(frozen=True)
class CapabilityReport:
    """What a backend can do and how best to drive it."""

    provider: str
    capabilities: tuple[CapabilityRow, ...]
    recommendations: tuple[Recommendation, ...] = field(default_factory=tuple)
    handoff_support: str = "None"
    optimal_usage: str = ""

    @classmethod
    def for_capabilities(cls, provider: str, caps: CapabilitySet) -> CapabilityReport:
        rows = tuple(
            CapabilityRow(
                name=title,
                description=description,
                supported=getattr(caps, flag),
                priority=priority,
            )
            for flag, (title, description, priority) in _DESCRIPTIONS.items()
        )
        return cls(
            provider=provider,
            capabilities=rows,
            recommendations=tuple(_recommendations(caps)),
            handoff_support=_handoff_support(caps),
            optimal_usage=_optimal_usage(caps),
        )


def _handoff_support(caps: CapabilitySet) -> str:
    if caps.function_calling:
        return "Full"
    if caps.legacy_chat_completion:
        return "Content-based"
    return "None"


def _recommendations(caps: CapabilitySet) -> list[Recommendation]:
    recs: list[Recommendation] = []
    if not (caps.native_completion or caps.legacy_chat_completion):
        recs.append(
            Recommendation(
                "critical",
                "Backend supports no completion protocol. Implement chat_completion().",
            )
        )
    if not caps.function_calling:
        recs.append(
            Recommendation(
                "warning",
                "Backend lacks function calling. Handoffs fall back to content-based "
                "detection; include handoff instructions in the system prompt.",
            )
        )
    if caps.native_completion:
        recs.append(
            Recommendation("success", "Backend supports the native item-based protocol.")
        )
    elif caps.legacy_chat_completion and caps.function_calling:
        recs.append(
            Recommendation(
                "success",
                "Chat completions with function calling; tool calls are converted "
                "to output items.",
            )
        )
    if caps.streaming:
        recs.append(Recommendation("info", "Backend supports streaming."))
    return recs


def _optimal_usage(caps: CapabilitySet) -> str:
    if caps.native_completion and caps.function_calling:
        return "Native item-based completion with structured tool calls"
    if caps.native_completion:
        return "Native item-based completion without tools"
    if caps.legacy_chat_completion and caps.function_calling:
        return "Chat completions converted to output items, full handoff support"
    if caps.legacy_chat_completion:
        return "Chat completions with content-based handoff detection"
    return "Not compatible: implement a completion entry point"
