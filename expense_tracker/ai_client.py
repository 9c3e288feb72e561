from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterator, Mapping, Protocol, Sequence

from openai import OpenAI, OpenAIError

from expense_tracker.errors import UpstreamError

logger = logging.getLogger(__name__)

Message = Mapping[str, str]


class AiProvider(enum.Enum):
    OPENAI = "openai"
    GROQ = "groq"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    NONE = "none"


@dataclass(frozen=True)
class ProviderConfig:
    provider: AiProvider
    env_key: str
    base_url: str
    model: str


# Lookup order when several keys are configured.
PROVIDER_PRIORITY = (
    ProviderConfig(AiProvider.OPENAI, "OPENAI_API_KEY", "https://api.openai.com/v1", "gpt-4o-mini"),
    ProviderConfig(
        AiProvider.GROQ, "GROQ_API_KEY", "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile"
    ),
    ProviderConfig(
        AiProvider.GEMINI,
        "GEMINI_API_KEY",
        "https://generativelanguage.googleapis.com/v1beta/openai",
        "gemini-2.0-flash",
    ),
    ProviderConfig(AiProvider.DEEPSEEK, "DEEPSEEK_API_KEY", "https://api.deepseek.com", "deepseek-chat"),
)


class ChatClient(Protocol):
    provider: AiProvider

    def complete(
        self, messages: Sequence[Message], *, max_tokens: int = 500, temperature: float = 0
    ) -> str:
        ...

    def stream(
        self, messages: Sequence[Message], *, max_tokens: int = 1000, temperature: float = 0.7
    ) -> Iterator[str]:
        ...


class OpenAICompatibleClient:
    """Chat completions against any OpenAI-compatible endpoint."""

    def __init__(self, config: ProviderConfig, api_key: str, client: OpenAI | None = None) -> None:
        self.provider = config.provider
        self.model = config.model
        self._client = client or OpenAI(api_key=api_key, base_url=config.base_url)

    def complete(
        self, messages: Sequence[Message], *, max_tokens: int = 500, temperature: float = 0
    ) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=list(messages),
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except OpenAIError as exc:
            raise UpstreamError(f"{self.provider.value} request failed.") from exc
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def stream(
        self, messages: Sequence[Message], *, max_tokens: int = 1000, temperature: float = 0.7
    ) -> Iterator[str]:
        try:
            chunks = self._client.chat.completions.create(
                model=self.model,
                messages=list(messages),
                max_tokens=max_tokens,
                temperature=temperature,
                stream=True,
            )
            for chunk in chunks:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except OpenAIError as exc:
            raise UpstreamError(f"{self.provider.value} stream failed.") from exc


class DisabledChatClient:
    provider = AiProvider.NONE

    def complete(self, messages, *, max_tokens=500, temperature=0) -> str:
        raise UpstreamError("No AI provider configured.")

    def stream(self, messages, *, max_tokens=1000, temperature=0.7) -> Iterator[str]:
        raise UpstreamError("No AI provider configured.")


def resolve_provider(env: Mapping[str, str | None]) -> tuple[ProviderConfig | None, str | None]:
    for config in PROVIDER_PRIORITY:
        api_key = env.get(config.env_key)
        if api_key:
            return config, api_key
    return None, None


def build_chat_client(env: Mapping[str, str | None]) -> ChatClient:
    config, api_key = resolve_provider(env)
    if config is None:
        logger.warning("No AI API key configured!")
        return DisabledChatClient()
    logger.info("Using %s API", config.provider.value)
    return OpenAICompatibleClient(config, api_key)
