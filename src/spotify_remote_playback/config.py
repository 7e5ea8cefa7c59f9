"""Configuration management for remote playback.

Tunable values (polling cadence, token store limits) come from a YAML file.
Credentials and secrets come from environment variables through pydantic-settings
with an env_prefix per concern.
"""

import pathlib

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpotifySettings(BaseSettings):
    """Spotify API credentials and OAuth settings.

    Environment variables (with SPOTIFY_ prefix):
        SPOTIFY_CLIENT_ID: Application client ID from Spotify developer dashboard.
        SPOTIFY_CLIENT_SECRET: Application client secret.
        SPOTIFY_REDIRECT_URI: OAuth redirect URI configured in Spotify app settings.
        SPOTIFY_SCOPE: Space-separated API scopes required for playback control.
    """

    model_config = SettingsConfigDict(env_prefix="SPOTIFY_")

    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = "user-read-playback-state user-modify-playback-state user-read-private"


class RedisSettings(BaseSettings):
    """Redis connection settings for the playback snapshot store.

    Environment variables (with REDIS_ prefix):
        REDIS_HOST: Redis server hostname (default: localhost).
        REDIS_PORT: Redis server port (default: 6379).
        REDIS_USERNAME: Redis ACL username (optional, default: None).
        REDIS_PASSWORD: Redis password (optional, default: None).
        REDIS_DB: Redis database number (default: 0).
    """

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    username: str | None = None
    password: str | None = None
    db: int = 0

    @property
    def url(self) -> str:
        """Build Redis connection URL from components."""
        if self.username and self.password:
            return f"redis://{self.username}:{self.password}@{self.host}:{self.port}/{self.db}"
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class EncryptionSettings(BaseSettings):
    """Secret used to encrypt refresh tokens at rest.

    Environment variables (with TOKEN_ prefix):
        TOKEN_ENCRYPTION_KEY: 64 hex characters (32 bytes), optional 0x prefix.
    """

    model_config = SettingsConfigDict(env_prefix="TOKEN_")

    encryption_key: SecretStr


class TokenStoreSettings(BaseModel):
    """Durable token store location and rotation limits."""

    database_url: str = "sqlite:///spotify_tokens.db"
    history_limit: int = Field(default=5, ge=1)
    max_rotations_per_hour: int = Field(default=12, ge=1)


class PlaybackSettings(BaseModel):
    """Timing of the remote adapter and the local position clock."""

    poll_interval: float = Field(default=1.0, gt=0)
    tick_interval: float = Field(default=0.2, gt=0)
    device_settle_delay: float = Field(default=0.8, ge=0)
    finish_tolerance_ms: int = Field(default=500, ge=0)
    requests_timeout: float = Field(default=10.0, gt=0)
    requests_retries: int = Field(default=3, ge=0)


class AppConfig(BaseModel):
    """Root configuration combining YAML tunables and environment secrets.

    Attributes:
        token_store: Durable token store settings.
        playback: Adapter and state machine timing.
        spotify: Spotify API credentials and OAuth settings.
        redis: Redis connection settings for snapshot persistence.
        encryption: Refresh token encryption secret.
    """

    token_store: TokenStoreSettings = Field(default_factory=TokenStoreSettings)
    playback: PlaybackSettings = Field(default_factory=PlaybackSettings)

    # AIDEV-NOTE: default_factory delays env lookups until AppConfig is created
    spotify: SpotifySettings = Field(default_factory=lambda: SpotifySettings())
    redis: RedisSettings = Field(default_factory=lambda: RedisSettings())
    encryption: EncryptionSettings = Field(default_factory=lambda: EncryptionSettings())


def load_config(config_path: pathlib.Path) -> AppConfig:
    """Load and validate the YAML configuration file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated application configuration.
    """
    with config_path.open("r") as file:
        config_data = yaml.safe_load(file) or {}
    return AppConfig.model_validate(config_data)
