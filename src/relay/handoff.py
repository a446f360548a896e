"""Content-based handoff detection for backends without tool calling.

When a backend cannot express structured tool calls, the model is asked to
signal a transfer in plain text (``{"handoff_to": "Billing"}``,
``[HANDOFF:Billing]``, "transfer to Billing", ``handoff("Billing")``). The
detector runs an ordered cascade of patterns over the reply, stops at the
first structural match, and validates the candidate against the agents that
currently exist.

Example:
    detector = HandoffFallbackDetector(["Support", "Billing"])
    detector.detect_handoff_in_content('Let me move you. [HANDOFF:Billing]')
    # -> "Billing"
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import re
from typing import Any

log = logging.getLogger(__name__)


class PatternCategory(str, Enum):
    """Pattern families, in cascade priority order."""

    STRUCTURED_JSON = "structured_json"
    STRUCTURED_TAG = "structured_tag"
    NATURAL_LANGUAGE = "natural_language"
    CODE_CALL = "code_call"


_CATEGORY_PRIORITY: dict[PatternCategory, int] = {
    category: rank for rank, category in enumerate(PatternCategory)
}

_AGENT_SUFFIX = re.compile(r"\s*agent\s*$", re.IGNORECASE)
_TRIGGER_KEYWORDS = re.compile(r"transfer|agent|handoff", re.IGNORECASE)

EXACT_NAME_BOOST = 0.15
AMBIGUITY_PENALTY = 0.05

_NAME = r"([a-zA-Z_][a-zA-Z0-9_]*(?:\s*agent)?)"


@dataclass(frozen=True)
class PatternMatch:
    """A structural match: the raw candidate and the span of the whole match."""

    candidate: str
    span: tuple[int, int]


@dataclass(frozen=True)
class DetectionPattern:
    """One matcher in the cascade."""

    id: str
    category: PatternCategory
    regex: re.Pattern[str]
    base_confidence: float
    confidence_band: tuple[float, float]

    def search(self, content: str) -> PatternMatch | None:
        m = self.regex.search(content)
        if m is None:
            return None
        return PatternMatch(candidate=m.group(1), span=m.span())


def _pattern(
    pattern_id: str,
    category: PatternCategory,
    regex: str,
    base: float,
    band: tuple[float, float],
) -> DetectionPattern:
    return DetectionPattern(
        id=pattern_id,
        category=category,
        regex=re.compile(regex, re.IGNORECASE),
        base_confidence=base,
        confidence_band=band,
    )


_JSON = (PatternCategory.STRUCTURED_JSON, 0.8, (0.7, 1.0))
_TAG = (PatternCategory.STRUCTURED_TAG, 0.7, (0.6, 0.9))
_NL = (PatternCategory.NATURAL_LANGUAGE, 0.5, (0.4, 0.7))
_CODE = (PatternCategory.CODE_CALL, 0.6, (0.5, 0.8))

DEFAULT_PATTERNS: tuple[DetectionPattern, ...] = (
    _pattern("json_handoff_to", _JSON[0], r'"handoff_to":\s*"([^"]+)"', *_JSON[1:]),
    _pattern("json_transfer_to", _JSON[0], r'"transfer_to":\s*"([^"]+)"', *_JSON[1:]),
    _pattern("json_assistant", _JSON[0], r'"assistant":\s*"([^"]+)"', *_JSON[1:]),
    _pattern("tag_handoff", _TAG[0], r"\[HANDOFF:([^\]]+)\]", *_TAG[1:]),
    _pattern("tag_transfer", _TAG[0], r"\[TRANSFER:([^\]]+)\]", *_TAG[1:]),
    _pattern("tag_agent", _TAG[0], r"\[AGENT:([^\]]+)\]", *_TAG[1:]),
    _pattern(
        "nl_transfer",
        _NL[0],
        r"transfer(?:ring)?\s+(?:to|you)\s+(?:to\s+)?" + _NAME,
        *_NL[1:],
    ),
    _pattern("nl_handoff", _NL[0], r"handoff?\s+to\s+" + _NAME, *_NL[1:]),
    _pattern("nl_switching", _NL[0], r"switching\s+to\s+" + _NAME, *_NL[1:]),
    _pattern("nl_forwarding", _NL[0], r"forwarding\s+to\s+" + _NAME, *_NL[1:]),
    _pattern("code_handoff", _CODE[0], r"""handoff\(["']([^"']+)["']\)""", *_CODE[1:]),
    _pattern("code_transfer", _CODE[0], r"""transfer\(["']([^"']+)["']\)""", *_CODE[1:]),
    _pattern("code_agent", _CODE[0], r"""agent\(["']([^"']+)["']\)""", *_CODE[1:]),
)

HANDOFF_INSTRUCTIONS = """\
# Handoff Instructions for Multi-Agent System

You are part of a multi-agent system. When you need to transfer control to another agent, use one of these formats:

## Preferred Format (JSON):
```json
{{"handoff_to": "AgentName"}}
```

## Alternative Formats:
- [HANDOFF:AgentName]
- [TRANSFER:AgentName]
- Transfer to AgentName

## Available Agents:
{available_agents}

## Important:
- Only handoff when necessary
- Use exact agent names
- Include handoff instruction in your response
- Continue with normal response after handoff instruction
"""


def _format_rate(numerator: int, denominator: int) -> str:
    if denominator <= 0:
        return "0.0%"
    return f"{round(numerator / denominator * 100, 2)}%"


@dataclass(frozen=True)
class DetectionStats:
    """Read-only snapshot of a detector's counters."""

    total_attempts: int = 0
    successful_detections: int = 0
    pattern_usage: dict[str, int] = field(default_factory=dict)
    available_agents: tuple[str, ...] = ()

    @property
    def success_rate(self) -> str:
        """Percentage rounded to two decimals, e.g. ``"66.67%"``."""
        return _format_rate(self.successful_detections, self.total_attempts)

    @property
    def most_effective_patterns(self) -> list[tuple[str, int]]:
        """The three most-used patterns as ``(pattern_id, count)``, busiest first."""
        ranked = sorted(self.pattern_usage.items(), key=lambda kv: -kv[1])
        return ranked[:3]


@dataclass(frozen=True)
class HandoffDetectionResult:
    """Detailed outcome of one detection call."""

    detected: bool
    target_agent: str | None = None
    method: str | None = None
    confidence: float = 0.0
    context: Mapping[str, Any] = field(default_factory=dict)
    pattern_id: str | None = None


@dataclass(frozen=True)
class DetectionTestDetail:
    content: str
    expected: str | None
    detected: str | None
    passed: bool


@dataclass(frozen=True)
class DetectionTestReport:
    total_tests: int
    passed: int
    failed: int
    success_rate: str
    details: tuple[DetectionTestDetail, ...]


@dataclass(frozen=True)
class _Detection:
    agent: str
    candidate: str
    pattern: DetectionPattern
    match: PatternMatch


class HandoffFallbackDetector:
    """Pattern cascade plus the set of agents a handoff may target.

    Statistics are owned by the detector and are not synchronized; callers
    sharing one detector across threads must serialize access.
    """

    def __init__(
        self,
        available_agents: Iterable[str] = (),
        *,
        patterns: Iterable[DetectionPattern] = DEFAULT_PATTERNS,
    ) -> None:
        self._agents: tuple[str, ...] = tuple(dict.fromkeys(available_agents))
        # Stable sort keeps the given order within each category.
        self._patterns: tuple[DetectionPattern, ...] = tuple(
            sorted(patterns, key=lambda p: _CATEGORY_PRIORITY[p.category])
        )
        self._attempts = 0
        self._successes = 0
        self._pattern_usage: dict[str, int] = {}

    @property
    def available_agents(self) -> tuple[str, ...]:
        return self._agents

    @property
    def patterns(self) -> tuple[DetectionPattern, ...]:
        return self._patterns

    def update_available_agents(self, agents: Iterable[str]) -> None:
        """Replace the agent set; statistics are kept."""
        self._agents = tuple(dict.fromkeys(agents))
        log.debug("Handoff agents updated: %s", ", ".join(self._agents))

    def detect_handoff_in_content(self, content: str) -> str | None:
        """Return the canonical agent name a handoff targets, or None."""
        detection = self._detect(content)
        return detection.agent if detection else None

    def detect_handoff_with_context(
        self, content: str, context: Mapping[str, Any] | None = None
    ) -> HandoffDetectionResult:
        """Detect a handoff and score it; *context* is echoed back unchanged."""
        context = context if context is not None else {}
        detection = self._detect(content)
        if detection is None:
            return HandoffDetectionResult(detected=False, context=context)
        result = HandoffDetectionResult(
            detected=True,
            target_agent=detection.agent,
            method="content_based",
            confidence=self._confidence(content, detection),
            context=context,
            pattern_id=detection.pattern.id,
        )
        log.debug(
            "Handoff detection result: agent=%s pattern=%s confidence=%.2f",
            result.target_agent,
            result.pattern_id,
            result.confidence,
        )
        return result

    def generate_handoff_instructions(self, agent_names: Iterable[str]) -> str:
        """Instruction block teaching a model the detectable handoff syntaxes."""
        agents_list = "\n".join(f"- {name}" for name in agent_names)
        return HANDOFF_INSTRUCTIONS.format(available_agents=agents_list)

    def generate_handoff_response(
        self, agent_name: str, message: str | None = None
    ) -> str:
        """Reply text that carries a machine-parsable handoff marker."""
        base_message = message if message is not None else f"Transferring to {agent_name}"
        marker = json.dumps({"handoff_to": agent_name}, separators=(",", ":"))
        return f"{base_message}\n\n{marker}"

    def get_detection_stats(self) -> DetectionStats:
        return DetectionStats(
            total_attempts=self._attempts,
            successful_detections=self._successes,
            pattern_usage=dict(self._pattern_usage),
            available_agents=self._agents,
        )

    def reset_stats(self) -> None:
        """Zero all counters; the agent set is untouched."""
        self._attempts = 0
        self._successes = 0
        self._pattern_usage = {}

    def test_detection(
        self, cases: Iterable[Mapping[str, Any]]
    ) -> DetectionTestReport:
        """Run detection over ``{"content", "expected_agent"}`` cases.

        Each case counts as a regular detection attempt in the statistics.
        """
        details: list[DetectionTestDetail] = []
        passed = 0
        for case in cases:
            content = case.get("content", "")
            expected = case.get("expected_agent")
            detected = self.detect_handoff_in_content(content)
            ok = detected == expected
            if ok:
                passed += 1
            preview = content if len(content) <= 100 else content[:100] + "..."
            details.append(
                DetectionTestDetail(
                    content=preview, expected=expected, detected=detected, passed=ok
                )
            )
        total = len(details)
        return DetectionTestReport(
            total_tests=total,
            passed=passed,
            failed=total - passed,
            success_rate=_format_rate(passed, total),
            details=tuple(details),
        )

    def _detect(self, content: Any) -> _Detection | None:
        self._attempts += 1
        if not isinstance(content, str) or not content:
            log.debug("Handoff detection skipped: empty or non-text content")
            return None

        log.debug(
            "Analyzing content for handoff patterns (length=%d, agents=%s)",
            len(content),
            ", ".join(self._agents),
        )
        for pattern in self._patterns:
            match = pattern.search(content)
            if match is None:
                continue

            # The cascade stops at the first structural match.
            candidate = _normalize_agent_name(match.candidate)
            agent = self._resolve_agent(candidate)
            if agent is None:
                log.debug(
                    "Handoff candidate %r (pattern=%s) is not an available agent",
                    candidate,
                    pattern.id,
                )
                return None

            self._successes += 1
            self._pattern_usage[pattern.id] = self._pattern_usage.get(pattern.id, 0) + 1
            log.debug(
                "Handoff detected: pattern=%s raw=%r agent=%s",
                pattern.id,
                match.candidate,
                agent,
            )
            return _Detection(agent=agent, candidate=candidate, pattern=pattern, match=match)

        log.debug("No handoff detected in content")
        return None

    def _resolve_agent(self, candidate: str) -> str | None:
        if not candidate:
            return None
        if candidate in self._agents:
            return candidate
        folded = candidate.casefold()
        for agent in self._agents:
            if agent.casefold() == folded:
                return agent
        return None

    def _confidence(self, content: str, detection: _Detection) -> float:
        pattern = detection.pattern
        _, high = pattern.confidence_band
        score = pattern.base_confidence
        if detection.candidate == detection.agent:
            score = min(score + EXACT_NAME_BOOST, high)
        start, end = detection.match.span
        extra_keywords = sum(
            1
            for kw in _TRIGGER_KEYWORDS.finditer(content)
            if kw.end() <= start or kw.start() >= end
        )
        score -= AMBIGUITY_PENALTY * extra_keywords
        return round(max(0.0, min(1.0, score)), 4)


def _normalize_agent_name(name: str) -> str:
    """Trim and drop a trailing "agent" (``"Support Agent"`` -> ``"Support"``)."""
    return _AGENT_SUFFIX.sub("", name.strip()).strip()
