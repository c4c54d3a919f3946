from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, Union, runtime_checkable
from uuid import uuid4

from convo_engine.models import Message, MessageChunk
from convo_engine.tool import Tool


class ModelAbility:
    TOOL = "tool"
    REASONING = "reasoning"


@dataclass(frozen=True)
class Model:
    model_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    display_name: str = ""
    abilities: frozenset[str] = frozenset()

    def supports(self, ability: str) -> bool:
        return ability in self.abilities


@dataclass(frozen=True)
class AnthropicSetting:
    api_key: str = ""
    base_url: str | None = None
    prompt_caching: bool = False


@dataclass(frozen=True)
class OpenAISetting:
    api_key: str = ""
    base_url: str | None = None


ProviderSetting = Union[AnthropicSetting, OpenAISetting]


@dataclass(frozen=True)
class TextGenerationParams:
    model: Model
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    tools: tuple[Tool, ...] = ()
    thinking_budget: int | None = None


@runtime_checkable
class LLMProvider(Protocol):
    def build_request(
        self,
        setting: ProviderSetting,
        messages: list[Message],
        params: TextGenerationParams,
        stream: bool,
    ) -> dict:
        """Translate the conversation into the vendor's wire request body."""
        ...

    def stream_text(
        self,
        setting: ProviderSetting,
        messages: list[Message],
        params: TextGenerationParams,
    ) -> AsyncIterator[MessageChunk]:
        """Stream the response as provider-agnostic chunks."""
        ...

    def convert_tools(self, tools: tuple[Tool, ...] | list[Tool]) -> list[dict]:
        """Convert Tool protocol objects to provider-specific tool schema."""
        ...


def create_provider(provider_name: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from convo_engine.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider()
    if name == "openai":
        from convo_engine.providers.openai_provider import OpenAIProvider
        return OpenAIProvider()
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")


def create_setting(provider_name: str, api_key: str, base_url: str | None = None, *, prompt_caching: bool = False) -> ProviderSetting:
    name = provider_name.strip().lower()
    if name == "anthropic":
        return AnthropicSetting(api_key=api_key, base_url=base_url, prompt_caching=prompt_caching)
    if name == "openai":
        return OpenAISetting(api_key=api_key, base_url=base_url)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
