"""Bounded synchronous retry with explicit error contracts.

Design goals:
- One wrapper type, composed explicitly around any callable
- Explicit state (config + stats), mutated only through the handler
- Status codes and exception types decide retries; message matching is a
  narrow fallback for transport errors that carry no structured signal
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import functools
import logging
import math
import random
import re
import time
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from relay.errors import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    ResponseFormatError,
    RetryableResponseError,
    ServerError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset(
    {408, 429, 500, 502, 503, 504}
)
DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    RateLimitError,
    ServerError,
    RetryableResponseError,
    TimeoutError,
    httpx.TimeoutException,
)

# Never retried, whatever the configured exception set says.
_FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    AuthenticationError,
    ProviderError,
    ResponseFormatError,
    ConfigurationError,
)

_TRANSIENT_PHRASES = re.compile(
    r"timeout|timed out|temporarily unavailable|service unavailable|"
    r"connection reset|too many requests|rate limit",
    re.IGNORECASE,
)

_ERROR_TYPE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "rate_limit",
        re.compile(r"rate limit|too many requests|quota exceeded|throttl|429", re.I),
    ),
    ("timeout", re.compile(r"timeout|timed out", re.I)),
    (
        "context_too_large",
        re.compile(
            r"context.*too large|maximum context length|context size.*exceed|"
            r"token limit|input.*too long",
            re.I,
        ),
    ),
    (
        "model_overloaded",
        re.compile(
            r"model.*overloaded|service unavailable|temporarily unavailable|"
            r"503|502|gateway",
            re.I,
        ),
    ),
    (
        "network_error",
        re.compile(r"network|connection|dns|socket|unreachable", re.I),
    ),
    (
        "authentication_error",
        re.compile(r"unauthorized|authentication|401|invalid.*key|forbidden|403", re.I),
    ),
)


@dataclass
class RetryConfig:
    """Retry settings: attempt bound, exponential backoff and jitter.

    Mutable through ``RetryHandler.configure_retry``; do not reconfigure while
    a retry loop on the same handler is running.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    #: Fraction of the delay used as a symmetric random offset. Also accepted
    #: as ``jitter_fraction`` by ``RetryHandler.configure_retry``.
    jitter: float = 0.1
    exceptions: tuple[type[BaseException], ...] = DEFAULT_RETRYABLE_EXCEPTIONS
    status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES

    def __post_init__(self) -> None:
        """Normalize collections and validate invariants."""
        self.exceptions = tuple(self.exceptions)
        self.status_codes = frozenset(self.status_codes)
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError when a field is out of range."""
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be >= 1, got {self.max_attempts!r}"
            )
        if self.base_delay < 0:
            raise ConfigurationError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < 0:
            raise ConfigurationError(f"max_delay must be >= 0, got {self.max_delay}")
        if self.multiplier <= 0:
            raise ConfigurationError(f"multiplier must be > 0, got {self.multiplier}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError(
                f"jitter must be within [0, 1], got {self.jitter}",
                hint="jitter is a fraction of the delay, e.g. 0.1 for 10%.",
            )
        for exc_type in self.exceptions:
            if not (isinstance(exc_type, type) and issubclass(exc_type, BaseException)):
                raise ConfigurationError(
                    f"exceptions must contain exception classes, got {exc_type!r}"
                )


@dataclass
class RetryStats:
    """Counters describing how a handler's retries went."""

    total_retries: int = 0
    successful_retries: int = 0
    failed_operations: int = 0
    by_error_type: dict[str, int] = field(default_factory=dict)

    @property
    def failure_rate(self) -> float:
        """Failed operations over everything recorded, rounded to 3 places."""
        total = self.total_retries + self.successful_retries + self.failed_operations
        if total == 0:
            return 0.0
        return round(self.failed_operations / total, 3)


def classify_error(exc: BaseException) -> str:
    """Return a coarse error type name used for logging and stats."""
    if isinstance(exc, AuthenticationError):
        return "authentication_error"
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, ServerError):
        return "model_overloaded"

    text = f"{type(exc).__name__} {exc}"
    for error_type, pattern in _ERROR_TYPE_PATTERNS:
        if pattern.search(text):
            return error_type

    if isinstance(exc, (APIConnectionError, ConnectionError, httpx.TransportError)):
        return "network_error"
    return "unknown_error"


def _status_code_of(value: Any) -> int | None:
    for attr in ("status_code", "status"):
        code = getattr(value, attr, None)
        if isinstance(code, int) and 100 <= code <= 599:
            return code
    return None


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


_OPTION_ALIASES: dict[str, str] = {"jitter_fraction": "jitter"}

class RetryHandler:
    """Runs operations with bounded retries and exponential backoff.

    Example:
        handler = RetryHandler(RetryConfig(max_attempts=3))
        reply = handler.with_retry("chat_completion", lambda: backend.chat_completion(...))
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Own a RetryConfig; *sleep* and *rng* are injectable for tests."""
        self._config = config if config is not None else RetryConfig()
        self._sleep = sleep
        self._rng = rng
        self._stats = RetryStats()

    @property
    def config(self) -> RetryConfig:
        """The live retry configuration."""
        return self._config

    @property
    def stats(self) -> RetryStats:
        """Snapshot of retry statistics."""
        return replace(self._stats, by_error_type=dict(self._stats.by_error_type))

    def reset_stats(self) -> None:
        """Zero all retry counters."""
        self._stats = RetryStats()

    def configure_retry(self, **options: Any) -> RetryHandler:
        """Update retry settings in place and return self for chaining.

        ``jitter_fraction`` is an alias for ``jitter``. Unknown option names and
        out-of-range values raise ConfigurationError; on error the previous
        configuration is kept.
        """
        for alias, name in _OPTION_ALIASES.items():
            if alias in options:
                if name in options:
                    raise ConfigurationError(
                        f"Retry options {alias} and {name} are the same setting",
                        hint=f"Pass only {name}.",
                    )
                options[name] = options.pop(alias)
        known = {f.name for f in fields(RetryConfig)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown retry option(s): {', '.join(unknown)}",
                hint=f"Supported options: {', '.join(sorted(known))}",
            )
        self._config = replace(self._config, **options)
        return self

    def calculate_delay(self, attempt: int) -> float:
        """Return the sleep before retrying after *attempt* (1-based)."""
        cfg = self._config
        try:
            base = cfg.base_delay * float(cfg.multiplier) ** max(0, attempt - 1)
        except OverflowError:
            base = math.inf if cfg.base_delay else 0.0
        delay = min(base, cfg.max_delay)
        jitter_amount = delay * cfg.jitter
        delay += (self._rng() * 2 * jitter_amount) - jitter_amount
        return max(0.0, delay)

    def is_retryable(self, exc: BaseException) -> bool:
        """Return True when *exc* is a transient fault under this config."""
        if isinstance(exc, _FATAL_EXCEPTIONS):
            return False
        cfg = self._config
        if isinstance(exc, cfg.exceptions):
            return True
        if isinstance(exc, APIError):
            if isinstance(exc.status_code, int) and exc.status_code in cfg.status_codes:
                return True
            if isinstance(exc, (ModelNotFoundError, APIConnectionError)):
                return _TRANSIENT_PHRASES.search(str(exc)) is not None
            return False
        if isinstance(exc, (ConnectionError, httpx.TransportError)):
            return any(
                _TRANSIENT_PHRASES.search(str(e)) for e in _walk_exception_chain(exc)
            )
        return False

    def with_retry(self, operation_label: str, operation: Callable[[], T]) -> T:
        """Run *operation*, retrying transient faults up to ``max_attempts``.

        After exhaustion the last error is re-raised unchanged. Errors that are
        not transient propagate immediately.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
                status = _status_code_of(result)
                if status is not None and status in self._config.status_codes:
                    raise RetryableResponseError(
                        f"HTTP {status}",
                        response=result,
                        status_code=status,
                        retryable=True,
                        phase=operation_label,
                    )
            except Exception as exc:
                if not self.is_retryable(exc):
                    self._stats.failed_operations += 1
                    raise
                error_type = classify_error(exc)
                if attempt >= self._config.max_attempts:
                    self._stats.failed_operations += 1
                    log.error(
                        "All %d retry attempts failed for %s (error_type: %s): %s: %s",
                        attempt,
                        operation_label,
                        error_type,
                        type(exc).__name__,
                        exc,
                    )
                    raise
                self._stats.total_retries += 1
                self._stats.by_error_type[error_type] = (
                    self._stats.by_error_type.get(error_type, 0) + 1
                )
                delay = self._delay_for(attempt, exc)
                log.warning(
                    "Retry attempt %d/%d for %s (error_type: %s): %s: %s; "
                    "sleeping %.2fs",
                    attempt,
                    self._config.max_attempts,
                    operation_label,
                    error_type,
                    type(exc).__name__,
                    exc,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
                continue

            if attempt > 1:
                self._stats.successful_retries += 1
            return result

    def wrap(self, operation_label: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """Return a decorator that runs the decorated callable via ``with_retry``."""

        def decorator(func: Callable[..., T]) -> Callable[..., T]:
            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> T:
                return self.with_retry(operation_label, lambda: func(*args, **kwargs))

            return wrapper

        return decorator

    def _delay_for(self, attempt: int, exc: BaseException) -> float:
        delay = self.calculate_delay(attempt)
        retry_after = _retry_after_from_error(exc)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self._config.max_delay)
        return delay
