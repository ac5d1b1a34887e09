"""
Embedding providers.

- hash: deterministic local feature hashing, no model or network needed
- ollama: Ollama's /api/embed endpoint
- openai: OpenAI embeddings API (requires the 'openai' extra)
"""

import hashlib
import math
import os

from ..errors import ConfigurationError, IntegrationError
from ..lexical import tokenize
from . import ollama_utils
from .base import get_registry

DEFAULT_DIMENSION = 384


class HashEmbedding:
    """
    Signed feature hashing over word tokens and character trigrams.

    Vectors are L2-normalized so cosine similarity equals the dot product.
    Texts sharing vocabulary land near each other; there is no semantic
    generalization beyond that. Used when no model is configured.
    """

    def __init__(self, dimension: int = DEFAULT_DIMENSION):
        if dimension <= 0:
            raise ConfigurationError.invalid_config("embedding.dimension", dimension, "must be positive")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"hash-{self._dimension}"

    def _features(self, text: str) -> list[tuple[str, float]]:
        words = tokenize(text)
        features = [(f"w:{w}", 1.0) for w in words]
        for w in words:
            padded = f"^{w}$"
            features.extend((f"c:{padded[i:i + 3]}", 0.5) for i in range(len(padded) - 2))
        if not features:
            stripped = text.strip().lower()
            if stripped:
                features.append((f"t:{stripped}", 1.0))
        return features

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for feature, weight in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign * weight
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    The dimension is discovered by embedding a short string at startup.
    """

    def __init__(self, model: str = "nomic-embed-text", base_url: str | None = None):
        self.model = model
        self.base_url = ollama_utils.ollama_base_url(base_url)
        ollama_utils.ollama_ensure_model(self.base_url, self.model)
        self._dimension = ollama_utils.ollama_detect_dimension(self.base_url, self.model)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"ollama/{self.model}"

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return ollama_utils.ollama_embed(self.base_url, self.model, texts)


# Known output sizes; text-embedding-3-* also accept a smaller `dimensions`
OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    Requires: RECALL_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        dimensions: int | None = None,
    ):
        try:
            from openai import OpenAI
        except ImportError as e:
            raise IntegrationError.tool_missing("openai", "Install with: pip install 'recall-memory[openai]'") from e

        key = api_key or os.environ.get("RECALL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError.missing_config("RECALL_OPENAI_API_KEY or OPENAI_API_KEY")

        if dimensions is None and model not in OPENAI_DIMENSIONS:
            raise ConfigurationError.invalid_config(
                "embedding.dimensions", None, f"required for unknown model {model}",
            )

        self.model = model
        self._requested_dimensions = dimensions
        self._dimension = dimensions or OPENAI_DIMENSIONS[model]
        self._client = OpenAI(api_key=key)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"openai/{self.model}"

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        kwargs = {}
        if self._requested_dimensions:
            kwargs["dimensions"] = self._requested_dimensions
        response = self._client.embeddings.create(model=self.model, input=texts, **kwargs)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


# Register providers
_registry = get_registry()
_registry.register_embedding("hash", HashEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_embedding("openai", OpenAIEmbedding)
