"""Configuration module for electrumsync."""

from electrumsync.config.loader import get_config_path, load_config, save_config
from electrumsync.config.schema import (
    BatchConfig,
    Config,
    HandshakeConfig,
    KeepAliveConfig,
    PersistenceConfig,
    RequestsConfig,
    ServerConfig,
)

__all__ = [
    "BatchConfig",
    "Config",
    "HandshakeConfig",
    "KeepAliveConfig",
    "PersistenceConfig",
    "RequestsConfig",
    "ServerConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
