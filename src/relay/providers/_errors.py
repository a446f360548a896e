"""Shared provider-side error helpers.

Backends translate SDK and transport failures into the Relay hierarchy so the
retry wrapper can decide retryability from types and status codes.
"""

from __future__ import annotations

from typing import Any

import httpx

from relay.errors import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    ModelNotFoundError,
    RateLimitError,
    ServerError,
    _walk_exception_chain,
)
from relay.retry import DEFAULT_RETRYABLE_STATUS_CODES


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def parse_retry_after(raw: Any) -> float | None:
    """Parse a ``Retry-After`` header value given in seconds."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None:
            seconds = parse_retry_after(headers.get("Retry-After"))
            if seconds is not None:
                return seconds
    return None


def _auth_hint(provider: str, status_code: int | None) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    if status_code in {401, 403}:
        env_var = "OPENAI_API_KEY" if provider == "openai" else "RELAY_CHAT_API_KEY"
        return f"Check credentials/permissions (try setting {env_var} or Config.api_key)."
    return None


def error_for_status(
    status_code: int,
    message: str,
    *,
    provider: str,
    phase: str,
    retry_after_s: float | None = None,
    hint: str | None = None,
) -> APIError:
    """Build the APIError subclass matching an HTTP status code."""
    err_cls: type[APIError] = APIError
    if status_code in {401, 403}:
        err_cls = AuthenticationError
    elif status_code == 404:
        err_cls = ModelNotFoundError
    elif status_code == 429:
        err_cls = RateLimitError
    elif status_code >= 500:
        err_cls = ServerError

    retryable = err_cls is not AuthenticationError and (
        status_code in DEFAULT_RETRYABLE_STATUS_CODES or retry_after_s is not None
    )
    return err_cls(
        message,
        hint=hint if hint is not None else _auth_hint(provider, status_code),
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


def _status_from_code(code: Any) -> int | None:
    if isinstance(code, bool):
        return None
    if isinstance(code, str) and code.strip().isdigit():
        code = int(code)
    if isinstance(code, int) and 100 <= code <= 599:
        return code
    return None


def error_from_body(
    error: Any,
    *,
    provider: str,
    phase: str,
    default_status: int | None = None,
    retry_after_s: float | None = None,
) -> APIError:
    """Build an APIError from an ``error`` object embedded in a payload.

    Some chat-completions servers report failures inside a 200 body or as a
    stream chunk. A numeric ``code`` is treated as the HTTP status; otherwise
    *default_status* applies, and with neither the error is not retryable.
    """
    if isinstance(error, dict):
        message = str(error.get("message") or error.get("type") or "unknown error")
        status_code = _status_from_code(error.get("code"))
    else:
        message = str(error) if error else "unknown error"
        status_code = None
    if status_code is None:
        status_code = default_status

    msg = f"{provider} {phase} returned an error: {message}"
    if status_code is None:
        return APIError(msg, retryable=False, provider=provider, phase=phase)
    return error_for_status(
        status_code,
        msg,
        provider=provider,
        phase=phase,
        retry_after_s=retry_after_s,
    )


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Map backend SDK exceptions into APIError with stable retry metadata."""
    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    msg = message or f"{provider} {phase} failed"
    cause = str(exc)
    status_code = extract_status_code(exc)
    if isinstance(status_code, int):
        return error_for_status(
            status_code,
            f"{msg} (status={status_code}): {cause}" if cause else f"{msg} (status={status_code})",
            provider=provider,
            phase=phase,
            retry_after_s=extract_retry_after_s(exc),
            hint=hint,
        )

    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            return APIConnectionError(
                f"{msg}: timeout: {cause}" if cause else f"{msg}: timeout",
                hint=hint,
                retryable=True,
                provider=provider,
                phase=phase,
            )
        if isinstance(e, (httpx.TransportError, ConnectionError)):
            return APIConnectionError(
                f"{msg}: {cause}" if cause else msg,
                hint=hint,
                retryable=False,
                provider=provider,
                phase=phase,
            )

    return APIError(
        f"{msg}: {cause}" if cause else msg,
        hint=hint,
        retryable=False,
        provider=provider,
        phase=phase,
    )
