import asyncio
import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

from conftest import Reject
from electrumsync import __version__
from electrumsync.cli import commands
from electrumsync.cli.commands import app, parse_server

runner = CliRunner()


@pytest.fixture
def cli(monkeypatch, tmp_path, fake_server):
    """Invoke the CLI against the scripted server with an isolated home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setattr(commands, "TRANSPORT_FACTORY", fake_server.factory)
    monkeypatch.setattr(commands, "console", Console(width=200))
    config_path = tmp_path / "config.json"

    def _invoke(*args: str):
        return runner.invoke(app, ["--server", "electrum.test:50002", "--config", str(config_path), *args])

    return _invoke


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"electrumsync v{__version__}" in result.stdout


def test_parse_server():
    server = parse_server("electrum.example:50001:t")
    assert (server.host, server.port, server.secure) == ("electrum.example", 50001, False)
    assert parse_server("electrum.example:50002").secure is True


def test_balance_json_skips_failed_script_hash(cli, fake_server):
    def balance(params):
        if params[0] == "bb":
            raise Reject(1, "busy")
        return {"confirmed": 700, "unconfirmed": 1}

    fake_server.handlers["blockchain.scripthash.get_balance"] = balance
    result = cli("balance", "aa", "bb", "--json")
    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["records"] == [
        {"confirmed": 700, "unconfirmed": 1, "script_hash": "aa", "address": "", "path": ""}
    ]
    assert payload["dropped"] == ["bb"]


def test_history_table(cli, fake_server):
    fake_server.handlers["blockchain.scripthash.get_history"] = lambda p: [{"height": 12, "tx_hash": "abc123"}]
    result = cli("history", "aa")
    assert result.exit_code == 0, result.stdout
    assert "abc123" in result.stdout


def test_utxos_json(cli, fake_server):
    fake_server.handlers["blockchain.scripthash.listunspent"] = lambda p: [
        {"height": 3, "tx_hash": "u1", "tx_pos": 0, "value": 1234}
    ]
    result = cli("utxos", "aa", "--json")
    assert result.exit_code == 0, result.stdout
    assert json.loads(result.stdout)["records"][0]["value"] == 1234


def test_broadcast_success_and_rejection(cli, fake_server):
    fake_server.handlers["blockchain.transaction.broadcast"] = lambda p: "txid-1"
    ok = cli("broadcast", "0200")
    assert ok.exit_code == 0
    assert "txid-1" in ok.stdout

    def reject(params):
        raise Reject(-26, "dust")

    fake_server.handlers["blockchain.transaction.broadcast"] = reject
    failed = cli("broadcast", "0200")
    assert failed.exit_code == 1
    assert "dust" in failed.stdout


def test_unreachable_server_exits_with_error(cli, fake_server):
    fake_server.refuse_connects = 10
    result = cli("fee")
    assert result.exit_code == 1
    assert "no server reachable" in result.stdout


def test_fee(cli, fake_server):
    fake_server.handlers["blockchain.estimatefee"] = lambda p: 0.0002
    fake_server.handlers["blockchain.relayfee"] = lambda p: 0.00001
    result = cli("fee", "--blocks", "3")
    assert result.exit_code == 0
    assert "0.0002" in result.stdout
    assert fake_server.requests("blockchain.estimatefee")[0]["params"] == [3]


def test_server_info(cli, fake_server):
    fake_server.handlers["server.banner"] = lambda p: "Welcome"
    result = cli("server-info")
    assert result.exit_code == 0, result.stdout
    assert "Welcome" in result.stdout
    assert "unavailable" in result.stdout


def test_tx_verbose(cli, fake_server):
    fake_server.handlers["blockchain.transaction.get"] = lambda p: {"txid": p[0], "size": 225}
    result = cli("tx", "t1", "--verbose-tx")
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"txid": "t1", "size": 225}


def test_peers_json(cli, fake_server):
    fake_server.handlers["server.peers.subscribe"] = lambda p: [["1.1.1.1", "peer.example", ["v1.4", "s"]]]
    result = cli("peers", "--json")
    assert result.exit_code == 0
    assert json.loads(result.stdout) == [{"host": "peer.example", "port": 50002, "secure": True}]


def test_watch_headers_stops_after_count(cli, fake_server):
    def subscribe(params):
        transport = fake_server.transport
        asyncio.get_running_loop().call_soon(
            transport.push, {"method": "blockchain.headers.subscribe", "params": [{"height": 801}]}
        )
        return {"height": 800, "hex": "00"}

    fake_server.handlers["blockchain.headers.subscribe"] = subscribe
    result = cli("watch-headers", "--count", "1")
    assert result.exit_code == 0, result.stdout
    assert "800" in result.stdout
    assert "801" in result.stdout


def test_bad_config_file_exits(cli, tmp_path):
    (tmp_path / "config.json").write_text("{broken")
    result = cli("fee")
    assert result.exit_code == 1
    assert "Failed to load config" in result.stdout
