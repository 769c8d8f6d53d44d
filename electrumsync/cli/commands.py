"""CLI commands for electrumsync.

In the overall architecture: CLI is a thin collaborator over ElectrumClient,
ElectrumApi and BatchQueryEngine; each command opens one connection, runs its
queries and closes the client.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from collections.abc import AsyncIterator, Callable

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from electrumsync import __version__
from electrumsync.api import ElectrumApi
from electrumsync.batch import AddressDescriptor, AggregateResult, BatchQueryEngine
from electrumsync.cli.shared.logging_utils import configure_console_logging, ensure_rotating_log_file
from electrumsync.client import ElectrumClient
from electrumsync.config.loader import load_config
from electrumsync.config.schema import Config, ServerConfig
from electrumsync.core.errors import ConnectError, ElectrumError
from electrumsync.core.retry import PersistencePolicy
from electrumsync.peers import candidate_servers, discover_peers

app = typer.Typer(
    name="electrumsync",
    help="electrumsync - Electrum protocol client and wallet sync",
    no_args_is_help=True,
)

console = Console()

# Tests swap this for a scripted transport.
TRANSPORT_FACTORY: Callable[..., Any] | None = None

_state: dict[str, Any] = {"config_path": None, "server": None}


def version_callback(value: bool):
    if value:
        console.print(f"electrumsync v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    server: str = typer.Option(None, "--server", "-s", help="host:port[:s|t], overrides the configured servers"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging to stderr"),
):
    """electrumsync - Electrum protocol client."""
    configure_console_logging(verbose)
    _state["config_path"] = config_path
    _state["server"] = server


@app.command()
def version():
    """Show version."""
    console.print(f"electrumsync v{__version__}")


# ============================================================================
# Helpers
# ============================================================================


def parse_server(value: str) -> ServerConfig:
    """Parse ``host:port[:s|t]``; TLS unless the suffix is ``t``."""
    parts = value.strip().split(":")
    if len(parts) < 2 or not parts[0] or not parts[1].isdigit():
        raise typer.BadParameter(f"expected host:port[:s|t], got {value!r}")
    secure = len(parts) < 3 or parts[2].lower() != "t"
    return ServerConfig(host=parts[0], port=int(parts[1]), secure=secure)


def _load() -> Config:
    try:
        config = load_config(_state["config_path"])
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)
    ensure_rotating_log_file("cli", level=config.log_level)
    return config


@asynccontextmanager
async def open_client(config: Config) -> AsyncIterator[ElectrumClient]:
    """Connect to the first reachable candidate server; closes on exit."""
    servers = [parse_server(_state["server"])] if _state["server"] else candidate_servers(config)
    # One-shot commands try each candidate once instead of retrying in place.
    policy = PersistencePolicy(max_retry=0)
    last: ServerConfig | None = None
    for server in servers:
        last = server
        client = ElectrumClient(
            server,
            handshake=config.handshake,
            persistence_policy=policy,
            keepalive=config.keepalive,
            requests=config.requests,
            transport_factory=TRANSPORT_FACTORY,
        )
        if await client.init_electrum():
            try:
                yield client
            finally:
                await client.close()
            return
        await client.close()
    if last is None:
        raise ConnectError("-", 0, "no servers configured")
    raise ConnectError(last.host, last.port, "no server reachable")


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except ElectrumError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def _descriptors(script_hashes: list[str]) -> list[AddressDescriptor]:
    return [AddressDescriptor(script_hash=h) for h in script_hashes]


def _print_records(title: str, aggregate: AggregateResult, columns: list[str], as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps({"records": aggregate.records, "dropped": [d.script_hash for d in aggregate.dropped]}))
        return
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for record in aggregate:
        table.add_row(*(str(record.get(column, "")) for column in columns))
    console.print(table)
    for descriptor in aggregate.dropped:
        console.print(f"[yellow]Skipped {descriptor.script_hash}: query failed[/yellow]")


# ============================================================================
# Commands
# ============================================================================


@app.command("server-info")
def server_info():
    """Show server version, banner and features."""
    config = _load()

    async def run() -> dict[str, Any]:
        async with open_client(config) as client:
            api = ElectrumApi(client)
            info: dict[str, Any] = {"server": str(client.server), "version": client.server_version}
            info["banner"] = await api.server_banner()
            try:
                info["features"] = await api.server_features()
            except ElectrumError as e:
                info["features"] = f"unavailable ({e.message})"
            return info

    info = _run(run())
    table = Table(title="Electrum server")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in info.items():
        table.add_row(key, value if isinstance(value, str) else json.dumps(value))
    console.print(table)


@app.command()
def balance(
    script_hashes: list[str] = typer.Argument(..., help="Electrum script hashes"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Confirmed and unconfirmed balance per script hash."""
    config = _load()

    async def run() -> AggregateResult:
        async with open_client(config) as client:
            engine = BatchQueryEngine(client, max_concurrency=config.batch.max_concurrency)
            return await engine.get_balances(_descriptors(script_hashes))

    _print_records("Balances", _run(run()), ["script_hash", "confirmed", "unconfirmed"], as_json)


@app.command()
def history(
    script_hashes: list[str] = typer.Argument(..., help="Electrum script hashes"),
    mempool: bool = typer.Option(False, "--mempool", help="Only unconfirmed entries"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Transaction history per script hash."""
    config = _load()

    async def run() -> AggregateResult:
        async with open_client(config) as client:
            engine = BatchQueryEngine(client, max_concurrency=config.batch.max_concurrency)
            descriptors = _descriptors(script_hashes)
            if mempool:
                return await engine.get_mempools(descriptors)
            return await engine.get_histories(descriptors)

    _print_records("History", _run(run()), ["script_hash", "height", "tx_hash"], as_json)


@app.command()
def utxos(
    script_hashes: list[str] = typer.Argument(..., help="Electrum script hashes"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Unspent outputs per script hash."""
    config = _load()

    async def run() -> AggregateResult:
        async with open_client(config) as client:
            engine = BatchQueryEngine(client, max_concurrency=config.batch.max_concurrency)
            return await engine.list_unspents(_descriptors(script_hashes))

    _print_records("Unspent outputs", _run(run()), ["script_hash", "tx_hash", "tx_pos", "value", "height"], as_json)


@app.command()
def tx(
    tx_hash: str = typer.Argument(..., help="Transaction id"),
    verbose: bool = typer.Option(False, "--verbose-tx", help="Ask the server for the decoded transaction"),
):
    """Fetch one transaction."""
    config = _load()

    async def run() -> Any:
        async with open_client(config) as client:
            return await ElectrumApi(client).transaction_get(tx_hash, verbose)

    result = _run(run())
    if isinstance(result, (dict, list)):
        console.print_json(json.dumps(result))
    else:
        console.print(result)


@app.command()
def broadcast(raw_tx: str = typer.Argument(..., help="Signed raw transaction hex")):
    """Broadcast a signed transaction."""
    config = _load()

    async def run() -> Any:
        async with open_client(config) as client:
            return await ElectrumApi(client).transaction_broadcast(raw_tx)

    txid = _run(run())
    console.print(f"[green]✓[/green] Broadcast: [cyan]{txid}[/cyan]")


@app.command()
def fee(blocks: int = typer.Option(6, "--blocks", "-b", help="Confirmation target in blocks")):
    """Fee estimate and relay fee (BTC/kB)."""
    config = _load()

    async def run() -> tuple[Any, Any]:
        async with open_client(config) as client:
            api = ElectrumApi(client)
            return await api.estimatefee(blocks), await api.relayfee()

    estimate, relay = _run(run())
    if isinstance(estimate, (int, float)) and estimate < 0:
        console.print(f"[yellow]No estimate for {blocks} block(s)[/yellow]")
    else:
        console.print(f"Estimate ({blocks} blocks): [cyan]{estimate}[/cyan] BTC/kB")
    console.print(f"Relay fee: [cyan]{relay}[/cyan] BTC/kB")


@app.command()
def peers(as_json: bool = typer.Option(False, "--json", help="Print JSON")):
    """List peers announced by the server."""
    config = _load()

    async def run() -> list[ServerConfig]:
        async with open_client(config) as client:
            return await discover_peers(ElectrumApi(client))

    found = _run(run())
    if as_json:
        console.print_json(json.dumps([p.model_dump() for p in found]))
        return
    if not found:
        console.print("[yellow]No peers announced[/yellow]")
        return
    table = Table(title="Peers")
    table.add_column("Host", style="cyan")
    table.add_column("Port")
    table.add_column("TLS")
    for peer in found:
        table.add_row(peer.host, str(peer.port), "yes" if peer.secure else "no")
    console.print(table)


@app.command("watch-headers")
def watch_headers(count: int = typer.Option(0, "--count", "-n", help="Stop after N new headers (0 = forever)")):
    """Print the chain tip and every new header the server announces."""
    config = _load()

    async def run() -> None:
        async with open_client(config) as client:
            queue: asyncio.Queue[Any] = asyncio.Queue()
            handle, result = await client.subscribe_server(
                "blockchain.headers.subscribe", [], lambda params: queue.put_nowait(params[0] if params else None)
            )
            if not result.ok:
                raise ElectrumError(result.error.message if result.error else "subscribe failed")
            tip = result.result or {}
            console.print(f"Tip: height [cyan]{tip.get('height')}[/cyan]")
            seen = 0
            while not count or seen < count:
                header = await queue.get()
                seen += 1
                height = header.get("height") if isinstance(header, dict) else header
                console.print(f"New header: height [cyan]{height}[/cyan]")
            await client.unsubscribe_server(handle)

    try:
        _run(run())
    except KeyboardInterrupt:
        console.print("\nStopped")


if __name__ == "__main__":
    app()
