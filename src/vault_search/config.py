"""Configuration module for the vault search service."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from vault_search import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls
_USER_ENV = Path.home() / ".vault-search" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

SEARCH_MODES = ("auto", "plugin", "files", "lexical")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


def _env_optional_path(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_optional_str(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


class VaultSearchConfig(BaseModel):
    """Configuration for the retrieval pipeline."""

    # Obsidian Local REST API (vault listing/fetch and the remote search tier)
    obsidian_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "OBSIDIAN_BASE_URL", "http://127.0.0.1:27123"
        )
    )
    obsidian_api_key: Optional[str] = Field(
        default_factory=lambda: _env_optional_str("OBSIDIAN_API_KEY")
    )
    obsidian_verify_ssl: bool = Field(
        default_factory=lambda: _env_flag("OBSIDIAN_VERIFY_SSL", "true")
    )
    # Tier selection: "auto" tries plugin -> files -> lexical
    search_mode: str = Field(
        default_factory=lambda: os.getenv("SMART_SEARCH_MODE", "auto").strip().lower()
    )
    # Precomputed embedding store (Smart Connections environment directory)
    smart_env_dir: Optional[Path] = Field(
        default_factory=lambda: _env_optional_path("SMART_ENV_DIR")
    )
    smart_env_cache_ttl: float = Field(
        default_factory=lambda: float(os.getenv("SMART_ENV_CACHE_TTL", "60"))
    )
    # Remote semantic search (plugin tier)
    plugin_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("PLUGIN_TIMEOUT_MS", "15000"))
    )
    plugin_retries: int = Field(
        default_factory=lambda: int(os.getenv("PLUGIN_RETRIES", "2"))
    )
    plugin_backoff_ms: int = Field(
        default_factory=lambda: int(os.getenv("PLUGIN_BACKOFF_MS", "0"))
    )
    # Local query encoding (files tier with a free-text query)
    query_embedding_enabled: bool = Field(
        default_factory=lambda: _env_flag("ENABLE_QUERY_EMBEDDING", "false")
    )
    query_embedding_model: Optional[str] = Field(
        default_factory=lambda: _env_optional_str("QUERY_EMBEDDING_MODEL")
    )
    embed_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("EMBED_TIMEOUT_MS", "20000"))
    )
    embed_max_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("EMBED_MAX_CONCURRENCY", "1"))
    )
    embedding_cache_dir: Optional[Path] = Field(
        default_factory=lambda: _env_optional_path("EMBEDDING_CACHE_DIR")
    )
    # ONNX execution provider preference: "auto" (detect GPU/CPU), "cpu", or
    # comma-separated list like "CUDAExecutionProvider,CPUExecutionProvider"
    onnx_providers: str = Field(
        default_factory=lambda: os.getenv("ONNX_PROVIDERS", "auto")
    )
    # Content cache
    note_extension: str = Field(
        default_factory=lambda: os.getenv("VAULT_NOTE_EXTENSION", ".md")
    )
    # Result sizing
    default_limit: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_DEFAULT_LIMIT", "10"))
    )
    max_limit: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_MAX_LIMIT", "100"))
    )
    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("VAULT_SEARCH_LOG_LEVEL", "INFO")
    )
    log_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv(
                "VAULT_SEARCH_LOG_DIR",
                str(Path.home() / ".vault-search" / "logs"),
            )
        )
    )
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_search_config(self) -> "VaultSearchConfig":
        """Reject settings the pipeline cannot run with."""
        if self.search_mode not in SEARCH_MODES:
            raise ValueError(
                f"search_mode must be one of {', '.join(SEARCH_MODES)}, "
                f"got {self.search_mode!r}"
            )
        if self.plugin_timeout_ms <= 0:
            raise ValueError("plugin_timeout_ms must be > 0")
        if self.plugin_retries < 0:
            raise ValueError("plugin_retries must be >= 0")
        if self.plugin_backoff_ms < 0:
            raise ValueError("plugin_backoff_ms must be >= 0")
        if self.embed_timeout_ms <= 0:
            raise ValueError("embed_timeout_ms must be > 0")
        if self.embed_max_concurrency < 1:
            raise ValueError("embed_max_concurrency must be >= 1")
        if self.max_limit < 1:
            raise ValueError("max_limit must be >= 1")
        if not 1 <= self.default_limit <= self.max_limit:
            raise ValueError("default_limit must be between 1 and max_limit")
        if not self.note_extension.startswith("."):
            self.note_extension = f".{self.note_extension}"

        if self.query_embedding_enabled and self.smart_env_dir is None:
            logger.warning(
                "ENABLE_QUERY_EMBEDDING is set but SMART_ENV_DIR is not; "
                "query encoding will never be used."
            )
        return self

    @property
    def plugin_attempts(self) -> int:
        """Total remote attempts (first try plus retries)."""
        return self.plugin_retries + 1

    @property
    def plugin_timeout_seconds(self) -> float:
        return self.plugin_timeout_ms / 1000.0

    @property
    def plugin_backoff_seconds(self) -> float:
        return self.plugin_backoff_ms / 1000.0

    @property
    def embed_timeout_seconds(self) -> float:
        return self.embed_timeout_ms / 1000.0

    @property
    def remote_search_configured(self) -> bool:
        """Whether the remote tier has both an endpoint and a credential."""
        return bool(self.obsidian_base_url and self.obsidian_api_key)

    def get_smart_env_dir(self) -> Optional[Path]:
        """Get the embedding store root, expanded, or None when unset."""
        if self.smart_env_dir is None:
            return None
        return self.smart_env_dir.expanduser()


# Create a global config instance
config = VaultSearchConfig()
