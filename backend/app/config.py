"""Relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml  — non-secret configuration
  * relay.secrets.yaml   — secrets (never committed)

Both are optional; missing files fall back to defaults with a warning.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")

IN_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    log_level:       str       = "info"


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class StoreSettings(BaseModel):
    db_path: str = "relay.duckdb"


class AuthSettings(BaseModel):
    token_query_param: str = "token"
    identity_claim:    str = "id"


class RealtimeSettings(BaseModel):
    """Tuning for the synchronization engine."""
    typing_ttl_seconds:    float = Field(default=5.0, gt=0)
    max_text_length:       int   = Field(default=5000, gt=0)
    outbound_queue_size:   int   = Field(default=256, gt=0)
    dedup_cache_size:      int   = Field(default=1000, gt=0)
    max_group_name_length: int   = Field(default=100, gt=0)
    sync_page_size:        int   = Field(default=100, gt=0)


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Relative DuckDB paths resolve from the settings file's directory."""
    if db_path == IN_MEMORY_DB:
        return db_path
    path = Path(db_path)
    if path.is_absolute():
        return db_path
    return str(settings_path.resolve().parent / path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    if settings_path.exists():
        config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, typing_ttl=%ss)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.realtime.typing_ttl_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide configuration (None forces a reload)."""
    global _config
    _config = config
