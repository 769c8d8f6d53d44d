"""Configuration loading utilities."""

import json
import os
from pathlib import Path
from typing import Any

from electrumsync.config.schema import Config

CONFIG_PATH_ENV = "ELECTRUMSYNC_CONFIG"


def get_data_dir() -> Path:
    """Get the electrumsync data directory."""
    return Path.home() / ".electrumsync"


def get_config_path() -> Path:
    """Get the configuration file path (ELECTRUMSYNC_CONFIG wins over the default)."""
    override = os.environ.get(CONFIG_PATH_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return get_data_dir() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("config root must be a JSON object")
            data = _migrate_config(data)
            # Keyword init so ELECTRUMSYNC_* variables fill keys the file leaves out.
            return Config(**convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            raise ValueError(
                f"Failed to load config from {path}: {e}. "
                "Fix the file or remove it to regenerate defaults."
            ) from e

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())

    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def _migrate_config(data: dict) -> dict:
    """Migrate older wallet-style config keys to the current layout."""
    # peers / customPeers -> servers / customServers
    if "peers" in data and "servers" not in data:
        data["servers"] = data.pop("peers")
    if "customPeers" in data and "customServers" not in data:
        data["customServers"] = data.pop("customPeers")
    for key in ("servers", "customServers"):
        entries = data.get(key)
        if isinstance(entries, list):
            data[key] = [_migrate_server(entry) for entry in entries]
    # Flat persistence policy {maxRetry, retryDelay} -> persistence section
    persistence = data.setdefault("persistence", {})
    if isinstance(persistence, dict):
        if "maxRetry" in data and "maxRetry" not in persistence:
            persistence["maxRetry"] = data.pop("maxRetry")
        delay_ms = persistence.pop("retryDelayMs", None)
        if isinstance(delay_ms, (int, float)) and "retryDelaySeconds" not in persistence:
            persistence["retryDelaySeconds"] = float(delay_ms) / 1000.0
    # Handshake given as {client, version}
    handshake = data.get("handshake")
    if isinstance(handshake, dict):
        if "client" in handshake and "clientName" not in handshake:
            handshake["clientName"] = handshake.pop("client")
        if "version" in handshake and "protocolVersion" not in handshake:
            handshake["protocolVersion"] = handshake.pop("version")
    return data


def _migrate_server(entry: Any) -> Any:
    """Accept {host, port, protocol: "ssl"|"tcp"} and "host:port:s" strings."""
    if isinstance(entry, str):
        parts = entry.strip().split(":")
        if len(parts) >= 2 and parts[1].isdigit():
            secure = len(parts) < 3 or parts[2].lower() in ("s", "ssl", "tls")
            return {"host": parts[0], "port": int(parts[1]), "secure": secure}
        return entry
    if isinstance(entry, dict):
        protocol = entry.pop("protocol", None)
        if isinstance(protocol, str) and "secure" not in entry:
            entry["secure"] = protocol.lower() in ("s", "ssl", "tls")
        port = entry.get("port")
        if isinstance(port, str) and port.isdigit():
            entry["port"] = int(port)
    return entry


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
