"""Configuration: frozen Config and the adapter factory."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from typing import Literal

from dotenv import find_dotenv, load_dotenv

from relay.adapter import ProviderAdapter
from relay.errors import ConfigurationError
from relay.retry import RetryConfig, RetryHandler

ProviderName = Literal["openai", "chat", "mock"]
_PROVIDERS: tuple[str, ...] = ("openai", "chat", "mock")

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "chat": "RELAY_CHAT_API_KEY",
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Config:
    """Immutable configuration for building a ProviderAdapter.

    Provider and model are required. API keys are auto-resolved from standard
    environment variables.

    Example:
        config = Config(provider="chat", model="llama3", base_url="http://localhost:11434/v1",
                        function_calling=False, available_agents=("Support", "Billing"))
        adapter = create_adapter(config)
    """

    provider: ProviderName
    model: str
    #: Auto-resolved from ``OPENAI_API_KEY`` or ``RELAY_CHAT_API_KEY`` when *None*.
    api_key: str | None = None
    base_url: str | None = None
    #: Chat backends only; OpenAI always calls functions natively.
    function_calling: bool = True
    available_agents: tuple[str, ...] = ()
    timeout_s: float = 60.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(map(repr, _PROVIDERS))}",
            )
        if not self.model:
            raise ConfigurationError("model is required", hint="Pass model='gpt-4.1-mini'.")
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This is the per-request HTTP timeout in seconds.",
            )
        if not isinstance(self.available_agents, tuple):
            object.__setattr__(self, "available_agents", tuple(self.available_agents))

        env_var = _API_KEY_ENV_VARS.get(self.provider)
        if self.api_key is None and env_var is not None:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if self.provider == "openai" and not self.api_key:
            raise ConfigurationError(
                "API key required for openai",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )
        if self.provider == "chat" and not self.base_url:
            raise ConfigurationError(
                "base_url required for chat provider",
                hint="Pass base_url='http://localhost:8000/v1' or set RELAY_BASE_URL.",
            )

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Build a Config from ``RELAY_*`` environment variables.

        A ``.env`` file found from the working directory upward is loaded
        first; variables already set in the environment win over it.
        """
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ
        values: dict[str, object] = {}
        if "RELAY_PROVIDER" in env:
            values["provider"] = env["RELAY_PROVIDER"].strip().lower()
        if "RELAY_MODEL" in env:
            values["model"] = env["RELAY_MODEL"].strip()
        if env.get("RELAY_BASE_URL"):
            values["base_url"] = env["RELAY_BASE_URL"].strip()
        if "RELAY_FUNCTION_CALLING" in env:
            values["function_calling"] = _parse_bool(
                "RELAY_FUNCTION_CALLING", env["RELAY_FUNCTION_CALLING"]
            )
        if env.get("RELAY_AGENTS"):
            values["available_agents"] = tuple(
                name.strip() for name in env["RELAY_AGENTS"].split(",") if name.strip()
            )
        retry_values: dict[str, object] = {}
        if "RELAY_MAX_ATTEMPTS" in env:
            retry_values["max_attempts"] = _parse_number(
                "RELAY_MAX_ATTEMPTS", env["RELAY_MAX_ATTEMPTS"], int
            )
        if "RELAY_BASE_DELAY" in env:
            retry_values["base_delay"] = _parse_number(
                "RELAY_BASE_DELAY", env["RELAY_BASE_DELAY"], float
            )
        if "RELAY_MAX_DELAY" in env:
            retry_values["max_delay"] = _parse_number(
                "RELAY_MAX_DELAY", env["RELAY_MAX_DELAY"], float
            )
        if retry_values:
            values["retry"] = RetryConfig(**retry_values)  # type: ignore[arg-type]

        values.update(overrides)
        if "provider" not in values or "model" not in values:
            raise ConfigurationError(
                "provider and model are required",
                hint="Set RELAY_PROVIDER and RELAY_MODEL or pass them as overrides.",
            )
        return cls(**values)  # type: ignore[arg-type]

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"base_url={self.base_url!r}, function_calling={self.function_calling})"
        )

    __repr__ = __str__


def create_adapter(config: Config) -> ProviderAdapter:
    """Build the configured backend and wrap it in a ProviderAdapter."""
    if config.provider == "openai":
        from relay.providers.openai import OpenAIBackend

        backend: object = OpenAIBackend(
            config.api_key or "",
            base_url=config.base_url,
            timeout_s=config.timeout_s,
        )
    elif config.provider == "chat":
        from relay.providers.chat import ChatCompletionsBackend

        backend = ChatCompletionsBackend(
            base_url=config.base_url or "",
            api_key=config.api_key,
            models=[config.model],
            function_calling=config.function_calling,
            timeout_s=config.timeout_s,
        )
    else:
        from relay.providers.base import CapabilitySet
        from relay.providers.mock import MockBackend

        backend = MockBackend(
            capabilities=CapabilitySet(
                legacy_chat_completion=True,
                function_calling=config.function_calling,
                streaming=True,
            ),
            supported_models=[config.model],
        )

    # The handler gets its own copy so reconfiguring it leaves Config untouched.
    handler = RetryHandler(replace(config.retry))
    return ProviderAdapter(backend, config.available_agents, retry=handler)


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigurationError(
        f"{name} must be a boolean, got {raw!r}", hint="Use true/false, 1/0, yes/no."
    )


def _parse_number(name: str, raw: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a {kind.__name__}, got {raw!r}") from e
