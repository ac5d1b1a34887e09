"""
Ollama REST helpers for the embedding provider.

Every failure surfaces as an IntegrationError whose context names the
server, the model and the endpoint, so the error log says which of the
three was wrong.
"""

import json
import logging
import os
from typing import Any

import requests

from ..errors import IntegrationError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"

# (connect, read) seconds
EMBED_TIMEOUT = (10, 120)
PULL_TIMEOUT = 600


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama server URL: explicit value, then OLLAMA_HOST, then default."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def _context(base_url: str, model: str, endpoint: str, **extra: Any) -> dict[str, Any]:
    return {"tool": "ollama", "base_url": base_url, "model": model, "endpoint": endpoint, **extra}


def ollama_installed_models(base_url: str) -> set[str]:
    """Names reported by /api/tags, each with and without its ``:latest`` suffix."""
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise IntegrationError.tool_missing(
            "ollama",
            f"Cannot reach Ollama at {base_url}. Is Ollama running? Start it with: ollama serve",
        ) from e

    names = set()
    for entry in resp.json().get("models", []):
        name = entry.get("name", "")
        names.add(name)
        names.add(name.removesuffix(":latest"))
    return names


def ollama_pull(base_url: str, model: str) -> None:
    """Pull a model, logging each progress phase once."""
    logger.info("Pulling Ollama model %s (first use)", model)
    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"name": model, "stream": True},
            stream=True,
            timeout=PULL_TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise IntegrationError(
            f"Failed to pull Ollama model '{model}': {e}",
            _context(base_url, model, "/api/pull"),
        ) from e

    last_status = ""
    for line in resp.iter_lines():
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if data.get("error"):
            raise IntegrationError(
                f"Ollama pull failed for '{model}': {data['error']}",
                _context(base_url, model, "/api/pull"),
            )
        status = data.get("status", "")
        if status and status != last_status:
            logger.info("ollama pull %s: %s", model, status)
            last_status = status
    logger.info("Ollama model %s ready", model)


def ollama_ensure_model(base_url: str, model: str) -> None:
    """Pull ``model`` unless the server already has it (with or without a tag)."""
    installed = ollama_installed_models(base_url)
    if model in installed or model.split(":")[0] in installed:
        return
    ollama_pull(base_url, model)


def ollama_embed(base_url: str, model: str, texts: list[str]) -> list[list[float]]:
    """
    Embed ``texts`` with /api/embed.

    Raises:
        IntegrationError: unreachable server, HTTP error, or a response
            whose vector count does not match the input
    """
    endpoint = "/api/embed"
    try:
        response = requests.post(
            f"{base_url}{endpoint}",
            json={"model": model, "input": texts},
            timeout=EMBED_TIMEOUT,
        )
    except requests.RequestException as e:
        raise IntegrationError(
            f"Ollama embedding request failed (model={model}): {e}",
            _context(base_url, model, endpoint),
        ) from e

    if not response.ok:
        detail = response.text[:200] if response.text else ""
        raise IntegrationError(
            f"Ollama embedding failed (model={model}): "
            f"HTTP {response.status_code} from {base_url}. {detail}",
            _context(base_url, model, endpoint, status_code=response.status_code),
        )

    vectors = response.json().get("embeddings") or []
    if len(vectors) != len(texts):
        raise IntegrationError(
            f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs (model={model})",
            _context(base_url, model, endpoint),
        )
    return vectors


def ollama_detect_dimension(base_url: str, model: str) -> int:
    """Output size of ``model``, found by embedding a short string."""
    vector = ollama_embed(base_url, model, ["dimension check"])[0]
    if not vector:
        raise IntegrationError(
            f"Ollama model {model} returned an empty embedding",
            _context(base_url, model, "/api/embed"),
        )
    logger.debug("Ollama model %s has dimension %d", model, len(vector))
    return len(vector)
