import json
from pathlib import Path

import pytest

from electrumsync.config.loader import (
    _migrate_config,
    convert_keys,
    convert_to_camel,
    get_config_path,
    load_config,
    save_config,
)
from electrumsync.config.schema import Config, ServerConfig


def test_defaults_match_electrum_client_conventions() -> None:
    cfg = Config()
    assert cfg.network == "mainnet"
    assert cfg.handshake.client_name == "electrumsync"
    assert cfg.handshake.protocol_version == "1.4"
    assert cfg.persistence.max_retry == 1000
    assert cfg.persistence.retry_delay_seconds == 1.0
    assert cfg.keepalive.interval_seconds == 5.0
    assert cfg.keepalive.ping_timeout_seconds == 9.0
    assert cfg.requests.timeout_seconds == 30.0
    assert cfg.batch.max_concurrency is None


def test_persistence_to_policy() -> None:
    calls = []
    policy = Config().persistence.to_policy(lambda: calls.append(1))
    assert policy.max_retry == 1000
    policy.on_exhausted()
    assert calls == [1]


def test_migrate_wallet_style_keys() -> None:
    data = {
        "peers": ["electrum.example:50001:t", "tls.example:50002:s"],
        "customPeers": [{"host": "mine.example", "port": "50002", "protocol": "ssl"}],
        "maxRetry": 5,
        "persistence": {"retryDelayMs": 2500},
        "handshake": {"client": "wallet", "version": "1.2"},
    }
    migrated = _migrate_config(data)
    assert migrated["servers"] == [
        {"host": "electrum.example", "port": 50001, "secure": False},
        {"host": "tls.example", "port": 50002, "secure": True},
    ]
    assert migrated["customServers"] == [{"host": "mine.example", "port": 50002, "secure": True}]
    assert migrated["persistence"] == {"maxRetry": 5, "retryDelaySeconds": 2.5}
    assert migrated["handshake"] == {"clientName": "wallet", "protocolVersion": "1.2"}


def test_convert_keys_roundtrip_names() -> None:
    assert convert_keys({"customServers": [{"host": "h"}], "keepalive": {"idleSeconds": 3}}) == {
        "custom_servers": [{"host": "h"}],
        "keepalive": {"idle_seconds": 3},
    }
    assert convert_to_camel({"ping_timeout_seconds": 9}) == {"pingTimeoutSeconds": 9}


def test_load_config_from_camel_case_file(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "network": "testnet",
                "customServers": [{"host": "mine.example", "port": 60002}],
                "persistence": {"maxRetry": 3},
                "requests": {"timeoutSeconds": None, "teardownOnTimeout": True},
            }
        )
    )
    cfg = load_config(path)
    assert cfg.network == "testnet"
    assert cfg.custom_servers == [ServerConfig(host="mine.example", port=60002, secure=True)]
    assert cfg.persistence.max_retry == 3
    assert cfg.requests.timeout_seconds is None
    assert cfg.requests.teardown_on_timeout is True


def test_load_config_missing_file_gives_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "absent.json").network == "mainnet"


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", json.dumps({"persistence": {"maxRetry": -1}})])
def test_load_config_rejects_bad_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(ValueError) as exc_info:
        load_config(path)
    assert str(path) in str(exc_info.value)


def test_save_then_load(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.json"
    cfg = Config(servers=[ServerConfig(host="a.example", port=50001, secure=False)])
    cfg.keepalive.idle_seconds = 7.0
    save_config(cfg, path)

    on_disk = json.loads(path.read_text())
    assert on_disk["keepalive"]["idleSeconds"] == 7.0
    assert on_disk["servers"] == [{"host": "a.example", "port": 50001, "secure": False}]
    assert load_config(path).keepalive.idle_seconds == 7.0


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ELECTRUMSYNC_NETWORK", "testnet")
    monkeypatch.setenv("ELECTRUMSYNC_KEEPALIVE__INTERVAL_SECONDS", "2")
    cfg = Config()
    assert cfg.network == "testnet"
    assert cfg.keepalive.interval_seconds == 2.0


def test_config_path_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ELECTRUMSYNC_CONFIG", str(tmp_path / "alt.json"))
    assert get_config_path() == tmp_path / "alt.json"
    monkeypatch.delenv("ELECTRUMSYNC_CONFIG")
    assert get_config_path().name == "config.json"
