"""Configuration management using Pydantic models."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_OAUTH_PORT,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    PUSH_ON_DEMAND_TIMEOUT_SECONDS,
    SYNC_PASS_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


# Placeholder values that indicate unconfigured credentials
INVALID_PLACEHOLDERS = {
    "YOUR_ANILIST_CLIENT_ID_HERE",
    "YOUR_MAL_CLIENT_ID_HERE",
    "YOUR_ANILIST_CLIENT_SECRET_HERE",
    "YOUR_MAL_CLIENT_SECRET_HERE",
    "",
}

CONFIG_ENV_VAR = "ANITRACK_CONFIG"

CONFIG_TEMPLATE = """\
# anitrack-sync configuration
oauth:
  port: 18080
  redirect_uri: "http://localhost:18080/callback"

anilist:
  client_id: "YOUR_ANILIST_CLIENT_ID_HERE"
  client_secret: "YOUR_ANILIST_CLIENT_SECRET_HERE"

mal:
  client_id: "YOUR_MAL_CLIENT_ID_HERE"
  client_secret: "YOUR_MAL_CLIENT_SECRET_HERE"

store:
  database_path: "data/anitrack.db"

sync:
  log_level: "INFO"
  request_timeout: 30

token_file_path: "data/tokens.json"
"""


class OAuthConfig(BaseModel):
    """OAuth callback configuration."""
    port: int = DEFAULT_OAUTH_PORT
    redirect_uri: str = f"http://localhost:{DEFAULT_OAUTH_PORT}/callback"


class AniListConfig(BaseModel):
    """AniList API configuration."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    auth_url: str = "https://anilist.co/api/v2/oauth/authorize"
    token_url: str = "https://anilist.co/api/v2/oauth/token"


class MALConfig(BaseModel):
    """MyAnimeList API configuration."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    auth_url: str = "https://myanimelist.net/v1/oauth2/authorize"
    token_url: str = "https://myanimelist.net/v1/oauth2/token"


class StoreConfig(BaseModel):
    """Local database settings."""
    database_path: str = "data/anitrack.db"


class SyncConfig(BaseModel):
    """Synchronization settings."""
    log_level: str = "INFO"
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT_SECONDS, gt=0)
    pass_timeout: float = Field(default=SYNC_PASS_TIMEOUT_SECONDS, gt=0)
    push_timeout: float = Field(default=PUSH_ON_DEMAND_TIMEOUT_SECONDS, gt=0)

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()


class Config(BaseModel):
    """Root configuration model."""
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    anilist: AniListConfig = Field(default_factory=AniListConfig)
    mal: Optional[MALConfig] = None
    myanimelist: Optional[MALConfig] = None
    store: StoreConfig = Field(default_factory=StoreConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    token_file_path: str = "data/tokens.json"

    @property
    def mal_config(self) -> MALConfig:
        """Support both "mal" and "myanimelist" keys."""
        return self.myanimelist or self.mal or MALConfig()


def default_config_path() -> Path:
    """Get config file path based on environment."""
    if os.environ.get(CONFIG_ENV_VAR):
        return Path(os.environ[CONFIG_ENV_VAR])
    if os.path.exists("/.dockerenv"):
        return Path("/app/data/config.yaml")
    return Path("data/config.yaml")


class Settings:
    """Application settings loaded from config.yaml."""

    def __init__(self, config_path: Optional[Path] = None):
        """Load and validate configuration."""
        self.config_path = Path(config_path) if config_path else default_config_path()

        if not self.config_path.exists():
            self._create_config_template()

        self.config = self._load_config()

    def _create_config_template(self) -> None:
        """Write a config template with placeholder credentials."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
        logger.info(f"Created config template: {self.config_path}")
        logger.info("Please edit the config file with your tracker credentials")

    def _load_config(self) -> Config:
        """Load configuration from YAML using Pydantic."""
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f) or {}

            config = Config(**raw_config)
            logger.debug(f"Loaded configuration from {self.config_path}")
            return config
        except Exception as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")
            raise

    def _resolve(self, path: str) -> Path:
        """Resolve relative paths against the config file's parent directory."""
        p = Path(path)
        if p.is_absolute():
            return p
        return self.config_path.parent.parent / p

    @property
    def oauth(self) -> OAuthConfig:
        return self.config.oauth

    @property
    def anilist(self) -> AniListConfig:
        return self.config.anilist

    @property
    def mal(self) -> MALConfig:
        return self.config.mal_config

    @property
    def sync(self) -> SyncConfig:
        return self.config.sync

    @property
    def database_path(self) -> Path:
        return self._resolve(self.config.store.database_path)

    @property
    def token_file(self) -> Path:
        return self._resolve(self.config.token_file_path)

    @property
    def log_level(self) -> str:
        return self.config.sync.log_level


def _is_placeholder(value: Optional[str]) -> bool:
    return not value or value in INVALID_PLACEHOLDERS


def validate_credentials(settings: Settings) -> dict[str, list[str]]:
    """Return the missing/placeholder credential fields per remote tracker.

    A tracker with an empty list is fully configured.
    """
    problems: dict[str, list[str]] = {}
    for service, section in (("anilist", settings.anilist), ("mal", settings.mal)):
        problems[service] = [
            f"{service}.{field}"
            for field in ("client_id", "client_secret")
            if _is_placeholder(getattr(section, field))
        ]
    return problems


def configured_trackers(settings: Settings) -> list[str]:
    """Names of remote trackers whose credentials are filled in."""
    return [name for name, missing in validate_credentials(settings).items() if not missing]
