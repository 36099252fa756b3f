"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionsConfig(Base):
    """Tenant limits and lifecycle."""

    max_sessions: int = Field(default=5, ge=1)
    auth_dir: str = "~/.groupcast/auth"
    idle_timeout_s: float = Field(default=24 * 60 * 60, gt=0)
    cleanup_interval_s: float = Field(default=60 * 60, gt=0)
    send_delay_s: float = Field(default=0.5, ge=0)
    self_display_name: str = "You"

    @property
    def auth_path(self) -> Path:
        return Path(self.auth_dir).expanduser()


class CacheConfig(Base):
    """Per-conversation message cache."""

    capacity: int = Field(default=200, ge=1)


class ConnectionConfig(Base):
    """Pairing throttle, retry budget and reconnect backoff."""

    challenge_throttle_s: float = Field(default=3.0, ge=0)
    challenge_budget: int = Field(default=5, ge=1)
    reset_delay_s: float = Field(default=5.0, ge=0)
    reconnect_delay_s: float = Field(default=5.0, ge=0)
    timeout_reconnect_delay_s: float = Field(default=2.0, ge=0)
    error_reconnect_delay_s: float = Field(default=15.0, ge=0)
    reconnect_factor: float = Field(default=2.0, ge=1.0)
    reconnect_max_s: float = Field(default=60.0, ge=0)
    logout_restart_delay_s: float = Field(default=2.0, ge=0)


class ReplyConfig(Base):
    """Reply resolution windows (characters of normalized text)."""

    prefix_window: int = Field(default=50, ge=1)
    contains_window: int = Field(default=30, ge=1)
    sender_window: int = Field(default=8, ge=1)
    sender_text_window: int = Field(default=20, ge=1)
    min_fragment: int = Field(default=10, ge=1)
    fallback_quote_chars: int = Field(default=50, ge=1)


class BridgeConfig(Base):
    """Node bridge hosting the protocol library."""

    http_url: str = "http://localhost:3000"
    ws_url: str = "ws://localhost:3001"
    timeout_s: float = Field(default=30.0, gt=0)


class LoggingConfig(Base):
    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str | None = None
    rotation: str = "10 MB"


class Config(BaseSettings):
    """Root configuration for groupcast."""

    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="GROUPCAST_",
        env_nested_delimiter="__",
        alias_generator=to_camel,
        populate_by_name=True,
    )
