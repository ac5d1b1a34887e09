"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Protocol, runtime_checkable

from ..errors import IntegrationError


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and querying
    to ensure consistent vectors. The remote collection is created with
    ``dimension``, and every vector the engine sends must have that length.

    Example implementation:
        class CharCountEmbedding:
            dimension = 26
            model_name = "char-count-26"

            def embed(self, text: str) -> list[float]:
                counts = [0.0] * 26
                for ch in text.lower():
                    if "a" <= ch <= "z":
                        counts[ord(ch) - ord("a")] += 1
                norm = sum(c * c for c in counts) ** 0.5 or 1.0
                return [c / norm for c in counts]

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [self.embed(t) for t in texts]

    See HashEmbedding for the built-in model-free provider.
    """

    @property
    def dimension(self) -> int:
        """
        The dimensionality of the embedding vectors.

        This must be consistent across all calls.
        """
        ...

    @property
    def model_name(self) -> str:
        """Identifier recorded alongside the collection."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, one per input text
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows recall.toml to specify providers by name rather than
    requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("ollama", OllamaEmbedding)

        # Later, from config:
        provider = registry.create_embedding("ollama", {"model": "nomic-embed-text"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True

        # Import provider modules to trigger registration.
        # Optional SDKs are imported inside the provider constructors.
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """
        Create an embedding provider instance.

        Raises:
            IntegrationError: Unknown provider name, missing optional
                library, or a provider constructor failure.
        """
        self._ensure_providers_loaded()
        if name not in self._embedding_providers:
            available = ", ".join(self._embedding_providers.keys()) or "none"
            raise IntegrationError.tool_missing(
                f"embedding provider '{name}'",
                f"Available providers: {available}",
            )
        try:
            return self._embedding_providers[name](**(params or {}))
        except ImportError as e:
            raise IntegrationError.tool_missing(
                f"embedding provider '{name}'",
                f"Install required dependencies: {e}",
            ) from e
        except IntegrationError:
            raise
        except Exception as e:
            raise IntegrationError(
                f"Failed to create embedding provider '{name}': {e}",
                {"tool": name},
            ) from e

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
