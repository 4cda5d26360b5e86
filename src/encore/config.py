"""Configuration management for the Encore import service."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".encore"
_CONFIG_FILE = "config.toml"
_DB_FILE = "encore.db"
_LOG_DIR = "logs"

ResyncMode = Literal["all", "stale", "auto"]


def get_base_dir() -> Path:
    """Return the base directory for all Encore runtime files (~/.encore/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Settings for the HTTP server hosting the API and RPC endpoints."""

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=8470, description="Port for the HTTP API")
    log_level: str = Field(default="info", description="Logging level")
    cron_secret: SecretStr = Field(default=SecretStr(""), description="Bearer token required by the cron endpoint")
    keepalive_seconds: int = Field(default=30, description="Seconds between SSE keep-alive pings")


class SyncConfig(BaseModel):
    """Settings that control imports and periodic resync."""

    interval_minutes: int = Field(default=60, description="Minutes between scheduled resync runs")
    default_mode: ResyncMode = Field(default="auto", description="Resync mode used by the scheduler")
    batch_limit: int = Field(default=10, description="Maximum artists per resync run")
    inter_artist_delay_seconds: float = Field(default=2.0, description="Pause between artists in a resync run")
    stuck_after_minutes: int = Field(default=30, description="Age after which a running import counts as stuck")
    max_age_hours: int = Field(default=24, description="Age after which a sync counts as stale")
    status_retention_minutes: int = Field(default=60, description="How long progress snapshots are kept")
    setlist_pages: int = Field(default=3, description="Setlist.fm pages fetched per import")
    predicted_setlist_size: int = Field(default=10, description="Songs pre-seeded into predicted setlists")


class SpotifyConfig(BaseModel):
    """Spotify client-credentials app."""

    client_id: str = Field(default="", description="Spotify Developer App client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="Spotify Developer App client secret")
    market: str = Field(default="US", description="Market used for catalog lookups")


class TicketmasterConfig(BaseModel):
    """Ticketmaster Discovery API credentials."""

    api_key: SecretStr = Field(default=SecretStr(""), description="Ticketmaster consumer key")


class SetlistFmConfig(BaseModel):
    """Setlist.fm API credentials."""

    api_key: SecretStr = Field(default=SecretStr(""), description="Setlist.fm API key")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    spotify: SpotifyConfig = Field(default_factory=SpotifyConfig)
    ticketmaster: TicketmasterConfig = Field(default_factory=TicketmasterConfig)
    setlistfm: SetlistFmConfig = Field(default_factory=SetlistFmConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    def is_spotify_configured(self) -> bool:
        """Return True if Spotify client credentials are set."""
        return bool(self.spotify.client_id and self.spotify.client_secret.get_secret_value())

    def is_ticketmaster_configured(self) -> bool:
        return bool(self.ticketmaster.api_key.get_secret_value())

    def is_setlistfm_configured(self) -> bool:
        return bool(self.setlistfm.api_key.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string (tables of scalars only)."""
    lines: list[str] = []
    for section_name in AppConfig.model_fields:
        section_model: BaseModel = getattr(config, section_name)
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
