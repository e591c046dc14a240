"""
Provider adapters for remote and on-device backends.
"""

from ai_orchestrator.config.loader import ProviderKind, ProviderSettings

from .anthropic_adapter import AnthropicAdapter
from .base import CodeBlock, ProviderAdapter, ProviderResponse
from .local_adapter import LocalFallbackAdapter
from .openai_adapter import OpenAIAdapter

__all__ = [
    "AnthropicAdapter",
    "CodeBlock",
    "LocalFallbackAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderResponse",
    "create_adapter",
]


def create_adapter(settings: ProviderSettings) -> ProviderAdapter:
    """Build the adapter for a configured provider.

    Args:
        settings: Validated provider settings

    Returns:
        ProviderAdapter instance for settings.kind
    """
    if settings.kind == ProviderKind.LOCAL:
        return LocalFallbackAdapter(provider_id=settings.id)

    if settings.kind == ProviderKind.ANTHROPIC:
        kwargs = {}
        if settings.base_url:
            kwargs["base_url"] = settings.base_url
        return AnthropicAdapter(
            provider_id=settings.id,
            model=settings.model,
            api_key=settings.api_key(),
            max_tokens=settings.max_tokens,
            **kwargs,
        )

    return OpenAIAdapter(
        provider_id=settings.id,
        model=settings.model,
        api_key=settings.api_key(),
        base_url=settings.base_url,
        max_tokens=settings.max_tokens,
    )
