"""OpenAI-compatible ``/chat/completions`` backend over httpx.

Covers self-hosted and third-party servers (vLLM, Ollama, OpenRouter, ...).
Many models served this way cannot emit tool calls, so function calling is a
per-deployment switch rather than an assumption.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from relay.errors import APIError, ResponseFormatError
from relay.providers._errors import (
    error_for_status,
    error_from_body,
    parse_retry_after,
    wrap_provider_error,
)
from relay.providers.base import CapabilitySet

if TYPE_CHECKING:
    from collections.abc import Iterator

log = logging.getLogger(__name__)

_SSE_PREFIX = "data:"
_SSE_DONE = "[DONE]"


class ChatCompletionsBackend:
    """Legacy chat-completion backend for OpenAI-compatible HTTP servers."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        models: list[str] | None = None,
        function_calling: bool = True,
        provider_name: str = "chat",
        timeout_s: float = 60.0,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Configure the endpoint; *transport* lets tests swap the network layer."""
        self._provider_name = provider_name
        self._function_calling = function_calling
        self._models = list(models or [])
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        for key, value in (extra_headers or {}).items():
            if key.lower() in {"authorization", "content-type"}:
                continue
            headers[key] = value
        self._client = httpx.Client(
            base_url=base_url, headers=headers, timeout=timeout_s, transport=transport
        )

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def supported_models(self) -> list[str]:
        return list(self._models)

    @property
    def capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            native_completion=False,
            legacy_chat_completion=True,
            function_calling=self._function_calling,
            streaming=True,
        )

    def chat_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        body = self._build_body(model, messages, tools, params)
        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.HTTPError as e:
            raise wrap_provider_error(
                e, provider=self._provider_name, phase="chat_completion"
            ) from e
        self._raise_for_status(response, phase="chat_completion")
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ResponseFormatError(
                f"{self._provider_name} returned a non-JSON chat completion body"
            ) from e
        # Some servers report failures in a 200 body instead of the status line.
        if isinstance(data, dict) and data.get("error") and not data.get("choices"):
            raise error_from_body(
                data["error"],
                provider=self._provider_name,
                phase="chat_completion",
                default_status=500,
                retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
            )
        return data

    def stream_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> Iterator[dict[str, Any]]:
        """Yield server-sent chunks as dicts until ``[DONE]``."""
        body = self._build_body(model, messages, tools, params)
        body["stream"] = True
        try:
            with self._client.stream("POST", "/chat/completions", json=body) as response:
                if response.status_code >= 400:
                    response.read()
                    self._raise_for_status(response, phase="stream_completion")
                for line in response.iter_lines():
                    chunk = _parse_sse_line(line)
                    if chunk is _DONE:
                        return
                    if chunk is not None:
                        yield chunk
        except httpx.HTTPError as e:
            raise wrap_provider_error(
                e, provider=self._provider_name, phase="stream_completion"
            ) from e

    def list_models(self) -> list[str]:
        """Fetch model ids from ``/models`` and remember them."""
        try:
            response = self._client.get("/models")
        except httpx.HTTPError as e:
            raise wrap_provider_error(
                e, provider=self._provider_name, phase="list_models"
            ) from e
        self._raise_for_status(response, phase="list_models")
        data = response.json().get("data") or []
        self._models = [entry["id"] for entry in data if isinstance(entry, dict) and "id" in entry]
        return list(self._models)

    def close(self) -> None:
        self._client.close()

    def _build_body(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            if not self._function_calling:
                log.debug("Dropping %d tool(s) for %s: no function calling", len(tools), self._provider_name)
            else:
                body["tools"] = tools
        for key, value in params.items():
            if value is not None:
                body[key] = value
        return body

    def _raise_for_status(self, response: httpx.Response, *, phase: str) -> None:
        if response.status_code < 400:
            return
        raise error_for_status(
            response.status_code,
            f"{self._provider_name} {phase} failed (status={response.status_code}): "
            f"{_error_detail(response)}",
            provider=self._provider_name,
            phase=phase,
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )


_DONE = object()


def _parse_sse_line(line: str) -> Any:
    line = line.strip()
    if not line.startswith(_SSE_PREFIX):
        return None
    payload = line[len(_SSE_PREFIX):].strip()
    if payload == _SSE_DONE:
        return _DONE
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise APIError(f"Malformed stream chunk: {payload[:100]}", phase="stream_completion") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return response.text[:200]
