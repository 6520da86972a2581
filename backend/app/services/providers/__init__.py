"""
Completion providers for multi-model comparison.

Each provider is implemented in its own module for maintainability.
All calls are async so a query can fan out to every model at once.

To add a new provider:
1. Create a new file (e.g., mistral.py) with a BaseProvider subclass
2. Export it here
3. Add it to build_default_registry() in registry.py
"""
from .base import (
    BaseProvider,
    ContentFilteredError,
    ProviderError,
    ProviderErrorKind,
    ProviderResult,
    RawCompletion,
)
from .openai import OpenAIProvider
from .anthropic import AnthropicProvider
from .google import GoogleProvider
from .cohere import CohereProvider
from .registry import ProviderRegistry, build_default_registry

__all__ = [
    "BaseProvider",
    "ContentFilteredError",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderResult",
    "RawCompletion",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "CohereProvider",
    "ProviderRegistry",
    "build_default_registry",
]
