"""
Configuration management for recall.

The configuration is stored as a TOML file (recall.toml) in the data
directory. It specifies the embedding provider, the optional remote vector
backend, and retry/circuit-breaker tuning.

Environment variables override the file without being written back:
    RECALL_DATA_DIR            - data directory (default ~/.recall)
    RECALL_QDRANT_URL          - remote vector backend URL
    RECALL_QDRANT_API_KEY      - remote vector backend API key
    RECALL_EMBEDDING_PROVIDER  - embedding provider name
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w

from .errors import ConfigurationError


CONFIG_FILENAME = "recall.toml"
CONFIG_VERSION = 1
DB_FILENAME = "recall.db"
QUEUE_DIRNAME = "queue"

DEFAULT_COLLECTION = "recall_memory"


def get_data_dir() -> Path:
    """Resolve the data directory, respecting RECALL_DATA_DIR."""
    data_dir = os.environ.get("RECALL_DATA_DIR")
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".recall"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class RemoteConfig:
    """Remote vector backend. An empty url means local-only."""
    url: str = ""
    api_key: str = ""
    collection: str = DEFAULT_COLLECTION
    timeout: float = 5.0
    score_threshold: float = 0.7

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class ResilienceConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    failure_threshold: int = 5
    cooldown_period: float = 60.0
    recovery_attempts: int = 2


@dataclass
class RecallConfig:
    """Complete configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("hash"))
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)

    # Local search
    local_threshold: float = 0.1
    default_limit: int = 10

    # Queue processor (seconds)
    processor_interval: float = 5.0
    grace_period: float = 5.0

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / DB_FILENAME

    @property
    def queue_dir(self) -> Path:
        return self.path / QUEUE_DIRNAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _number(section: dict, key: str, default: float, *, name: str, minimum: float = 0.0,
            maximum: float | None = None, integer: bool = False) -> Any:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError.invalid_config(name, value, "must be a number")
    if integer and not isinstance(value, int):
        raise ConfigurationError.invalid_config(name, value, "must be an integer")
    if value < minimum:
        raise ConfigurationError.invalid_config(name, value, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigurationError.invalid_config(name, value, f"must be <= {maximum}")
    return value


def _string(section: dict, key: str, default: str, *, name: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise ConfigurationError.invalid_config(name, value, "must be a string")
    return value


def _table(data: dict, key: str) -> dict:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigurationError.invalid_config(key, value, "must be a table")
    return value


def load_config(data_dir: Path) -> RecallConfig:
    """
    Load configuration from a data directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigurationError: If config is unreadable or invalid
    """
    config_path = data_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(
            f"Invalid TOML in {config_path}: {e}", {"path": str(config_path)}
        ) from e

    store = _table(data, "store")
    version = _number(store, "version", 1, name="store.version", minimum=1, integer=True)
    if version > CONFIG_VERSION:
        raise ConfigurationError.invalid_config(
            "store.version", version, f"newer than supported ({CONFIG_VERSION})"
        )

    embedding = _table(data, "embedding")
    remote = _table(data, "remote")
    resilience = _table(data, "resilience")
    search = _table(data, "search")
    processor = _table(data, "processor")

    config = RecallConfig(
        path=data_dir,
        version=version,
        created=store.get("created", ""),
        embedding=ProviderConfig(
            name=_string(embedding, "name", "hash", name="embedding.name"),
            params={k: v for k, v in embedding.items() if k != "name"},
        ),
        remote=RemoteConfig(
            url=_string(remote, "url", "", name="remote.url"),
            api_key=_string(remote, "api_key", "", name="remote.api_key"),
            collection=_string(remote, "collection", DEFAULT_COLLECTION, name="remote.collection"),
            timeout=_number(remote, "timeout", 5.0, name="remote.timeout", minimum=0.1),
            score_threshold=_number(remote, "score_threshold", 0.7, name="remote.score_threshold",
                                    maximum=1.0),
        ),
        resilience=ResilienceConfig(
            max_attempts=_number(resilience, "max_attempts", 3, name="resilience.max_attempts",
                                 minimum=1, integer=True),
            initial_delay=_number(resilience, "initial_delay", 1.0, name="resilience.initial_delay"),
            max_delay=_number(resilience, "max_delay", 30.0, name="resilience.max_delay"),
            multiplier=_number(resilience, "multiplier", 2.0, name="resilience.multiplier", minimum=1.0),
            jitter=_number(resilience, "jitter", 0.1, name="resilience.jitter", maximum=1.0),
            failure_threshold=_number(resilience, "failure_threshold", 5,
                                      name="resilience.failure_threshold", minimum=1, integer=True),
            cooldown_period=_number(resilience, "cooldown_period", 60.0,
                                    name="resilience.cooldown_period"),
            recovery_attempts=_number(resilience, "recovery_attempts", 2,
                                      name="resilience.recovery_attempts", minimum=1, integer=True),
        ),
        local_threshold=_number(search, "local_threshold", 0.1, name="search.local_threshold",
                                maximum=1.0),
        default_limit=_number(search, "limit", 10, name="search.limit", minimum=1, integer=True),
        processor_interval=_number(processor, "interval", 5.0, name="processor.interval", minimum=0.1),
        grace_period=_number(processor, "grace_period", 5.0, name="processor.grace_period"),
    )
    if not config.embedding.name:
        raise ConfigurationError.missing_config("embedding.name")
    return config


def save_config(config: RecallConfig) -> None:
    """
    Save configuration to the data directory.

    Creates the directory if it doesn't exist. The API key is written only
    if it came from the file; environment overrides are never persisted.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    remote = {
        "url": config.remote.url,
        "collection": config.remote.collection,
        "timeout": config.remote.timeout,
        "score_threshold": config.remote.score_threshold,
    }
    if config.remote.api_key:
        remote["api_key"] = config.remote.api_key

    r = config.resilience
    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": provider_to_dict(config.embedding),
        "remote": remote,
        "resilience": {
            "max_attempts": r.max_attempts,
            "initial_delay": r.initial_delay,
            "max_delay": r.max_delay,
            "multiplier": r.multiplier,
            "jitter": r.jitter,
            "failure_threshold": r.failure_threshold,
            "cooldown_period": r.cooldown_period,
            "recovery_attempts": r.recovery_attempts,
        },
        "search": {
            "local_threshold": config.local_threshold,
            "limit": config.default_limit,
        },
        "processor": {
            "interval": config.processor_interval,
            "grace_period": config.grace_period,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def apply_env_overrides(config: RecallConfig) -> RecallConfig:
    """Apply RECALL_* environment overrides in place and return the config."""
    url = os.environ.get("RECALL_QDRANT_URL")
    if url is not None:
        config.remote.url = url
    api_key = os.environ.get("RECALL_QDRANT_API_KEY")
    if api_key is not None:
        config.remote.api_key = api_key
    provider = os.environ.get("RECALL_EMBEDDING_PROVIDER")
    if provider:
        if provider != config.embedding.name:
            config.embedding = ProviderConfig(provider)
    return config


def load_or_create_config(data_dir: Path | None = None) -> RecallConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    data_dir = Path(data_dir) if data_dir is not None else get_data_dir()
    config_path = data_dir / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(data_dir)
    else:
        config = RecallConfig(path=data_dir)
        save_config(config)
    return apply_env_overrides(config)
