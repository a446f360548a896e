"""Exception hierarchy for Relay."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class RelayError(Exception):
    """Base exception for all Relay errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(RelayError):
    """Configuration, request or backend declaration is invalid."""


class ProviderError(RelayError):
    """Backend cannot serve the request at all (capability mismatch).

    Never retried.
    """


class ResponseFormatError(RelayError):
    """Backend returned a response missing the fields needed to normalize it."""


class APIError(RelayError):
    """Backend call failed.

    Providers attach status and retry metadata so the retry wrapper can decide
    retryability without guessing.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class AuthenticationError(APIError):
    """Credentials rejected (HTTP 401/403)."""


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429).

    ``retry_after_s`` carries the backend's reset hint when it sent one.
    """


class ServerError(APIError):
    """Backend-side failure (HTTP 5xx)."""


class ModelNotFoundError(APIError):
    """Requested model is unknown to the backend."""


class APIConnectionError(APIError):
    """Transport-level failure before a usable response arrived."""


class RetryableResponseError(APIError):
    """A returned value carried a retryable HTTP status code."""

    def __init__(self, message: str, *, response: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.response = response


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
