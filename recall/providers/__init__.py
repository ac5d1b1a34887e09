"""
Embedding providers for recall.

Concrete providers are auto-registered when this module is imported.
Providers needing optional libraries import them in their constructors,
so registration never fails.
"""

from .base import (
    EmbeddingProvider,
    ProviderRegistry,
    get_registry,
)

# Import concrete providers to trigger registration
from . import embeddings
from .embeddings import HashEmbedding, OllamaEmbedding, OpenAIEmbedding

__all__ = [
    "EmbeddingProvider",
    "ProviderRegistry",
    "get_registry",
    "HashEmbedding",
    "OllamaEmbedding",
    "OpenAIEmbedding",
]
