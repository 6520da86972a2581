"""
Provider registry.

Resolves each requested model identifier to the adapter that serves it.
The lookup table is built once, when the registry is constructed.
"""
from typing import Dict, Iterable, List, Optional, Set

from app.core.exceptions import ConfigurationError, UnknownProviderError
from app.core.logging import get_logger
from .base import BaseProvider

logger = get_logger(__name__)


class ProviderRegistry:
    """model id -> adapter lookup plus per-provider access."""

    def __init__(self, providers: Iterable[BaseProvider]):
        self._providers: Dict[str, BaseProvider] = {}
        self._by_model: Dict[str, BaseProvider] = {}

        for provider in providers:
            if provider.name in self._providers:
                raise ConfigurationError(f"Provider registered twice: {provider.name}")
            self._providers[provider.name] = provider
            for model_id in sorted(provider.supported_models()):
                owner = self._by_model.get(model_id)
                if owner is not None:
                    raise ConfigurationError(
                        f"Model {model_id} claimed by both {owner.name} and {provider.name}"
                    )
                self._by_model[model_id] = provider

        logger.info(f"Registered {len(self._by_model)} models across {len(self._providers)} providers")

    def adapter_for(self, model_id: str) -> Optional[BaseProvider]:
        return self._by_model.get(model_id)

    def provider(self, name: str) -> BaseProvider:
        try:
            return self._providers[name.lower()]
        except KeyError:
            raise UnknownProviderError(name)

    def supported_models(self) -> Set[str]:
        return set(self._by_model)

    def models_by_provider(self) -> Dict[str, List[str]]:
        return {
            name: sorted(provider.supported_models())
            for name, provider in self._providers.items()
        }

    def provider_names(self) -> List[str]:
        return list(self._providers)

    async def validate_credential(self, provider: str, credential: str) -> bool:
        return await self.provider(provider).validate_credential(credential)


def build_default_registry() -> ProviderRegistry:
    """Registry with every built-in provider."""
    from .openai import OpenAIProvider
    from .anthropic import AnthropicProvider
    from .google import GoogleProvider
    from .cohere import CohereProvider

    return ProviderRegistry([
        OpenAIProvider(),
        AnthropicProvider(),
        GoogleProvider(),
        CohereProvider(),
    ])
