"""Configuration schema using Pydantic.

Persisted to ~/.electrumsync/config.json (camelCase on disk), overridable with
ELECTRUMSYNC_* environment variables.
"""

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from electrumsync.core.retry import DEFAULT_MAX_RETRY, PersistencePolicy


class ServerConfig(BaseModel):
    """One Electrum server endpoint."""
    host: str
    port: int = 50002
    secure: bool = True  # TLS; Electrum convention is 50001 plain, 50002 TLS

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        scheme = "ssl" if self.secure else "tcp"
        return f"{scheme}://{self.host}:{self.port}"


class HandshakeConfig(BaseModel):
    """Values sent with server.version."""
    client_name: str = "electrumsync"
    protocol_version: str = "1.4"


class PersistenceConfig(BaseModel):
    """Reconnect behaviour after a failed connect or a dropped connection."""
    max_retry: int | None = Field(default=DEFAULT_MAX_RETRY, ge=0)  # None means unlimited
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    resubscribe_on_reconnect: bool = True

    def to_policy(self, on_exhausted=None) -> PersistencePolicy:
        return PersistencePolicy(
            max_retry=self.max_retry,
            on_exhausted=on_exhausted,
            retry_delay_seconds=self.retry_delay_seconds,
        )


class KeepAliveConfig(BaseModel):
    """Idle probing while connected."""
    enabled: bool = True
    interval_seconds: float = Field(default=5.0, gt=0)
    idle_seconds: float = Field(default=5.0, ge=0)
    ping_timeout_seconds: float = Field(default=9.0, gt=0)


class RequestsConfig(BaseModel):
    """Per-request and socket-level settings."""
    timeout_seconds: float | None = Field(default=30.0, gt=0)  # None disables per-call timeouts
    teardown_on_timeout: bool = False
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    use_batch: bool = True  # JSON-RPC array frames for call_batch
    verify_tls: bool = False
    max_line_bytes: int = Field(default=8 * 1024 * 1024, gt=0)


class BatchConfig(BaseModel):
    """Batch query engine settings."""
    max_concurrency: int | None = Field(default=None, gt=0)  # None means all in flight at once


class Config(BaseSettings):
    """Root configuration for electrumsync."""
    network: Literal["mainnet", "testnet"] = "mainnet"
    handshake: HandshakeConfig = Field(default_factory=HandshakeConfig)
    servers: list[ServerConfig] = Field(default_factory=list)  # overrides the built-in seed list
    custom_servers: list[ServerConfig] = Field(default_factory=list)  # always tried first
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    keepalive: KeepAliveConfig = Field(default_factory=KeepAliveConfig)
    requests: RequestsConfig = Field(default_factory=RequestsConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ELECTRUMSYNC_",
        env_nested_delimiter="__",
    )
