"""
Configuration Management for the Librarian service

Loads configuration from ~/.librarian/config.json and environment variables.
Per-application tunables (thresholds, prompts, models) are not here: they
live in the configuration store and are read by the ConfigResolver.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("librarian.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".librarian"
CONFIG_PATH = CONFIG_DIR / "config.json"


@dataclass
class StoreConfig:
    """Configuration/corpus/conversation store (PostgREST + storage API)"""
    url: str = ""
    service_key: str = ""
    default_bucket: str = "documents"


@dataclass
class EmbeddingConfig:
    """Query embedding configuration"""
    model: str = "text-embedding-3-small"


@dataclass
class LLMConfig:
    """LLM provider credentials shared by both generation paths"""
    chat_provider: str = "openai"  # bounded-excerpt path: "openai" or "anthropic"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    google_api_key: str = ""


@dataclass
class TimeoutConfig:
    """Per-call timeouts in seconds"""
    store: float = 15.0
    embedding: float = 20.0
    upload: float = 120.0
    generation: float = 120.0
    stream_idle: float = 45.0


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8090
    default_app_id: str = "arpet"


@dataclass
class ServiceConfig:
    """Main Librarian service configuration"""
    store: StoreConfig = field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store section from config dict"""
    store_data = data.get("store", {})
    return StoreConfig(
        url=store_data.get("url", ""),
        service_key=store_data.get("service_key", ""),
        default_bucket=store_data.get("default_bucket", "documents"),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    return EmbeddingConfig(
        model=embedding_data.get("model", "text-embedding-3-small"),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        chat_provider=llm_data.get("chat_provider", "openai"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-20250514"),
        google_api_key=llm_data.get("google_api_key", ""),
    )


def _parse_timeout_config(data: dict) -> TimeoutConfig:
    """Parse timeouts section from config dict"""
    timeout_data = data.get("timeouts", {})
    defaults = TimeoutConfig()
    return TimeoutConfig(
        store=float(timeout_data.get("store", defaults.store)),
        embedding=float(timeout_data.get("embedding", defaults.embedding)),
        upload=float(timeout_data.get("upload", defaults.upload)),
        generation=float(timeout_data.get("generation", defaults.generation)),
        stream_idle=float(timeout_data.get("stream_idle", defaults.stream_idle)),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        host=server_data.get("host", "0.0.0.0"),
        port=int(server_data.get("port", 8090)),
        default_app_id=server_data.get("default_app_id", "arpet"),
    )


def load_config() -> ServiceConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.librarian/config.json)
    3. Default values
    """
    config = ServiceConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.store = _parse_store_config(data)
            config.embedding = _parse_embedding_config(data)
            config.llm = _parse_llm_config(data)
            config.timeouts = _parse_timeout_config(data)
            config.server = _parse_server_config(data)
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning("Failed to load config file: %s", e)

    # Environment variable overrides
    if os.getenv("SUPABASE_URL"):
        config.store.url = os.getenv("SUPABASE_URL")
        config._env_sourced_keys.add("store_url")
    if os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        config.store.service_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        config._env_sourced_keys.add("service_key")

    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    _env_llm_map = {
        "OPENAI_API_KEY": "openai_api_key",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "LIBRARIAN_CHAT_PROVIDER": "chat_provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("LIBRARIAN_HOST"):
        config.server.host = os.getenv("LIBRARIAN_HOST")
    if os.getenv("LIBRARIAN_PORT"):
        config.server.port = int(os.getenv("LIBRARIAN_PORT"))
    if os.getenv("LIBRARIAN_DEFAULT_APP_ID"):
        config.server.default_app_id = os.getenv("LIBRARIAN_DEFAULT_APP_ID")

    return config


def save_config(config: ServiceConfig) -> None:
    """Save configuration to file.

    Secrets that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "chat_provider": config.llm.chat_provider,
        "openai_api_key": config.llm.openai_api_key,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "google_api_key": config.llm.google_api_key,
    }
    for key in ("openai_api_key", "anthropic_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "store": {
            "url": config.store.url,
            "service_key": "" if "service_key" in env_sourced else config.store.service_key,
            "default_bucket": config.store.default_bucket,
        },
        "embedding": {
            "model": config.embedding.model,
        },
        "llm": llm_section,
        "timeouts": {
            "store": config.timeouts.store,
            "embedding": config.timeouts.embedding,
            "upload": config.timeouts.upload,
            "generation": config.timeouts.generation,
            "stream_idle": config.timeouts.stream_idle,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
            "default_app_id": config.server.default_app_id,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
