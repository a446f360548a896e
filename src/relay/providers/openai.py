"""OpenAI backend: Responses (native), Chat Completions (legacy) and streaming."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from relay.errors import APIError, ConfigurationError
from relay.providers._errors import wrap_provider_error
from relay.providers.base import CapabilitySet

if TYPE_CHECKING:
    from collections.abc import Iterator

DEFAULT_MODELS: tuple[str, ...] = ("gpt-4.1", "gpt-4.1-mini", "gpt-4o", "gpt-4o-mini")


class OpenAIBackend:
    """OpenAI SDK backend declaring every capability."""

    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        models: tuple[str, ...] = DEFAULT_MODELS,
        client: Any = None,
    ) -> None:
        """Initialize with an API key; *client* injects a prebuilt SDK client."""
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_s = timeout_s
        self._models = list(models)
        self._client: Any = client

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_s,
                # Retries belong to relay's RetryHandler.
                max_retries=0,
            )
        return self._client

    @property
    def supported_models(self) -> list[str]:
        return list(self._models)

    @property
    def capabilities(self) -> CapabilitySet:
        """Return supported feature flags."""
        return CapabilitySet(
            native_completion=True,
            legacy_chat_completion=True,
            function_calling=True,
            streaming=True,
        )

    def responses_completion(
        self,
        *,
        model: str,
        input: list[dict[str, Any]],  # noqa: A002
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        """Call the Responses endpoint and return the response as a dict."""
        client = self._get_client()
        create_kwargs: dict[str, Any] = {"model": model, "input": input, **params}
        if tools:
            create_kwargs["tools"] = tools
        if "max_tokens" in create_kwargs:
            create_kwargs["max_output_tokens"] = create_kwargs.pop("max_tokens")
        try:
            response = client.responses.create(**create_kwargs)
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.provider_name,
                phase="responses_completion",
                message="OpenAI responses request failed",
            ) from e
        return _dump(response)

    def chat_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        """Call the Chat Completions endpoint and return the reply as a dict."""
        client = self._get_client()
        create_kwargs: dict[str, Any] = {"model": model, "messages": messages, **params}
        if tools:
            create_kwargs["tools"] = tools
        try:
            completion = client.chat.completions.create(**create_kwargs)
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.provider_name,
                phase="chat_completion",
                message="OpenAI chat completion failed",
            ) from e
        return _dump(completion)

    def stream_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        **params: Any,
    ) -> Iterator[dict[str, Any]]:
        """Yield Chat Completions chunks as dicts, in arrival order."""
        client = self._get_client()
        create_kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            **params,
        }
        if tools:
            create_kwargs["tools"] = tools
        try:
            stream = client.chat.completions.create(**create_kwargs)
            for chunk in stream:
                yield _dump(chunk)
        except APIError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.provider_name,
                phase="stream_completion",
                message="OpenAI streamed chat completion failed",
            ) from e

    def close(self) -> None:
        """Close underlying client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        client.close()


def _dump(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    model_dump = getattr(obj, "model_dump", None)
    if callable(model_dump):
        return model_dump()
    raise APIError(f"Unexpected OpenAI SDK object: {type(obj).__name__}", provider="openai")
