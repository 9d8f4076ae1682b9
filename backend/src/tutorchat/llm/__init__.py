"""LLM client implementations for the chat engine.

Currently supported providers:
- OpenAI (Responses, Conversations and Embeddings APIs)
- Anthropic (Messages API; embeddings delegated to OpenAI)

Usage:
    from tutorchat.llm import create_llm_client

    llm = create_llm_client()
    obj = llm.generate_json(system, user, "chat_route_v1", schema)
"""

import logging
from typing import Literal, Optional

from tutorchat.config import settings
from tutorchat.llm.base import LLMClient, LLMResponse

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic"]


def create_llm_client(
    provider_type: Optional[ProviderType] = None,
    model: Optional[str] = None,
) -> LLMClient:
    """Factory function to create the configured LLM client.

    Args:
        provider_type: "openai" or "anthropic" (default: settings.llm_provider)
        model: Optional chat model override

    Returns:
        Configured LLMClient instance

    Raises:
        ValueError: If the provider is unknown or its API key is missing
    """
    provider_type = provider_type or settings.llm_provider  # type: ignore[assignment]

    if provider_type == "openai":
        from tutorchat.llm.openai_client import OpenAIClient

        return OpenAIClient(
            api_key=settings.openai_api_key,
            model=model or settings.chat_model,
            base_url=settings.openai_base_url or None,
        )

    elif provider_type == "anthropic":
        from tutorchat.llm.anthropic_client import AnthropicClient

        embedder: Optional[LLMClient] = None
        if settings.openai_api_key:
            from tutorchat.llm.openai_client import OpenAIClient

            embedder = OpenAIClient(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url or None,
            )
        else:
            logger.warning("Anthropic provider without OPENAI_API_KEY: embeddings disabled")

        configured = settings.chat_model if settings.chat_model.startswith("claude") else None
        return AnthropicClient(
            api_key=settings.anthropic_api_key,
            model=model or configured,
            embedder=embedder,
        )

    else:
        raise ValueError(
            f"Unknown provider type: {provider_type}. "
            f"Supported providers: openai, anthropic"
        )


__all__ = [
    "LLMClient",
    "LLMResponse",
    "ProviderType",
    "create_llm_client",
]
