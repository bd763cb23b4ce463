"""LLM abstraction layer: the text-completion collaborator.

The agents only ever see ReasoningEngine.complete(). Providers plug in by
subclassing it; create_engine() picks one from ReasoningSettings.

ReasoningSettings is the only pydantic-settings model in the package. The
n8n client keeps a plain frozen dataclass so it can be built without it.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("n8n_automation_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single turn sent to the LLM.

    role values:
      "user"       the end user's turn, or an agent-built prompt
      "assistant"  a previous LLM turn
    """

    role: str  # "user" | "assistant"
    content: str | None = None


@dataclass
class EngineResponse:
    """Response from the reasoning engine."""

    content: str | None
    stop_reason: str = "end_turn"  # "end_turn" | "max_tokens"
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response.

        Args:
            messages:    Conversation history (user/assistant turns).
            system:      Optional system prompt injected before the conversation.
            temperature: Sampling temperature (0.0-1.0). Lower = more focused.
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string for logging, e.g. 'anthropic/claude-sonnet-4-6'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires the anthropic package (a core dependency).
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6") -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install anthropic"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _merge_consecutive_roles(messages),
            "max_tokens": 4096,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        logger.debug("ClaudeEngine.complete: %d messages", len(messages))
        response = await self._client.messages.create(**kwargs)

        content_text = "".join(
            block.text for block in response.content if block.type == "text"
        )
        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=content_text or None,
            stop_reason=response.stop_reason or "end_turn",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


def _merge_consecutive_roles(messages: list[Message]) -> list[dict[str, Any]]:
    """Anthropic requires alternating roles; join consecutive same-role turns."""
    result: list[dict[str, Any]] = []
    for m in messages:
        text = m.content or ""
        if result and result[-1]["role"] == m.role:
            result[-1]["content"] += "\n\n" + text
        else:
            result.append({"role": m.role, "content": text})
    return result


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI API (GPT-4o, etc.).

    Requires: pip install 'n8n-automation-agent[openai]'
    """

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'n8n-automation-agent[openai]'"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend({"role": m.role, "content": m.content or ""} for m in messages)

        logger.debug("OpenAIEngine.complete: %d messages", len(messages))
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=oai_messages,
            temperature=temperature,
        )
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=choice.message.content,
            stop_reason="max_tokens" if choice.finish_reason == "length" else "end_turn",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


# ---------------------------------------------------------------------------
# JSON extraction from LLM text
# ---------------------------------------------------------------------------

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def parse_json_reply(text: str | None) -> dict[str, Any] | None:
    """Pull a JSON object out of an LLM reply.

    Accepts a fenced ```json block, a bare object, or an object embedded in
    prose. Returns None when nothing parses to a dict.
    """
    if not text:
        return None
    candidates: list[str] = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    candidates.append(text.strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      REASONING_ENGINE        LLM provider: "claude" | "openai" (default: "claude")
      REASONING_MODEL         Model name override; leave unset for provider default
      ANTHROPIC_API_KEY       Required when provider is "claude"
      OPENAI_API_KEY          Required when provider is "openai"
      REASONING_TEMPERATURE   Sampling temperature 0.0-1.0 (default: 0.2)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="claude", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.2, validation_alias="REASONING_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        """Treat empty string REASONING_MODEL as unset (use provider default)."""
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine from ReasoningSettings."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
