"""Configuration for project-memory-mcp.

Environment variables take precedence over the JSON config file written by the
setup tooling (``{"connectionString": "..."}``).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from errors import ConfigurationError

logger = logging.getLogger(__name__)

EMBEDDING_PROVIDERS = frozenset({"ollama", "google", "hash"})


def get_config_path() -> Path:
    """Location of the config file, overridable via PROJECT_MEMORY_CONFIG."""
    override = os.environ.get("PROJECT_MEMORY_CONFIG")
    if override:
        return Path(override)
    return Path.home() / ".config" / "project-memory-mcp" / "config.json"


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Read the config file. Missing or unreadable files yield an empty dict."""
    path = path or get_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return data


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    connection_string: str
    table_name: str = "memories"
    embedding_provider: str = "ollama"  # ollama | google | hash
    embedding_model: str = "qwen3-embedding:0.6b"
    embedding_dim: int = 1024
    ollama_base_url: str = "http://localhost:11434"
    pool_size: int = 10
    default_limit: int = 5
    default_threshold: float = 0.5
    default_list_limit: int = 20

    def __post_init__(self) -> None:
        if not self.connection_string or not self.connection_string.strip():
            raise ConfigurationError("connection string is empty")
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigurationError(
                f"Unknown embedding provider '{self.embedding_provider}'. "
                f"Valid: {sorted(EMBEDDING_PROVIDERS)}"
            )
        if self.embedding_dim <= 0:
            raise ConfigurationError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.pool_size <= 0:
            raise ConfigurationError(f"pool_size must be positive, got {self.pool_size}")

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Config:
        """Build the config from environment variables merged over the config file.

        Raises:
            ConfigurationError: no connection string is configured anywhere.
        """
        file_config = load_config_file(config_path)
        connection_string = (
            os.environ.get("LANCEDB_MEMORY_URI")
            or os.environ.get("DATABASE_URL")
            or file_config.get("connectionString")
        )
        if not connection_string:
            raise ConfigurationError(
                "Configuration not found. Set LANCEDB_MEMORY_URI or add "
                f"'connectionString' to {config_path or get_config_path()}"
            )
        return cls(
            connection_string=str(connection_string).strip(),
            table_name=os.environ.get("MEMORY_TABLE", "memories"),
            embedding_provider=os.environ.get("EMBEDDING_PROVIDER", "ollama").lower(),
            embedding_model=os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b"),
            embedding_dim=_env_int("EMBEDDING_DIM", 1024),
            ollama_base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            pool_size=_env_int("MEMORY_POOL_SIZE", 10),
        )
