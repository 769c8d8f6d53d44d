"""Server selection and peer discovery."""

from __future__ import annotations

import secrets
from typing import Any

from loguru import logger

from electrumsync.config.schema import Config, ServerConfig
from electrumsync.core.errors import ElectrumError

DEFAULT_TCP_PORT = 50001
DEFAULT_SSL_PORT = 50002

MAINNET_SEEDS = [
    ServerConfig(host="electrum.blockstream.info", port=50002, secure=True),
    ServerConfig(host="electrum.emzy.de", port=50002, secure=True),
    ServerConfig(host="bolt.schulzemic.net", port=50002, secure=True),
    ServerConfig(host="electrum.jochen-hoenicke.de", port=50002, secure=True),
    ServerConfig(host="2ex.electrum.be", port=50002, secure=True),
]

TESTNET_SEEDS = [
    ServerConfig(host="electrum.blockstream.info", port=60002, secure=True),
    ServerConfig(host="testnet.aranguren.org", port=51002, secure=True),
]


def seed_servers(network: str) -> list[ServerConfig]:
    return list(TESTNET_SEEDS if network == "testnet" else MAINNET_SEEDS)


def shuffle_servers(servers: list[ServerConfig]) -> list[ServerConfig]:
    """Shuffle using a CSPRNG (Fisher-Yates)."""
    result = list(servers)
    for i in range(len(result) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def candidate_servers(config: Config) -> list[ServerConfig]:
    """Servers to try, in order: custom servers as given, then the pool shuffled.

    The pool is ``config.servers`` when set, otherwise the network's seeds.
    """
    pool = config.servers or seed_servers(config.network)
    seen: set[str] = set()
    ordered: list[ServerConfig] = []
    for server in [*config.custom_servers, *shuffle_servers(pool)]:
        if server.key in seen:
            continue
        seen.add(server.key)
        ordered.append(server)
    return ordered


def parse_peer_features(features: list[str]) -> dict[str, Any]:
    """
    Parse Electrum peer feature strings.
    Features: v=version, p=pruning, t=tcp port, s=ssl port
    e.g. ["v1.4", "p10000", "t", "s"] -> tcp=50001, ssl=50002
    e.g. ["v1.4", "s50003"]           -> tcp=None, ssl=50003
    """
    result: dict[str, Any] = {"version": None, "tcp_port": None, "ssl_port": None, "pruning": None}
    for feature in features:
        if not isinstance(feature, str) or not feature:
            continue
        prefix, rest = feature[0], feature[1:]
        try:
            if prefix == "v":
                result["version"] = rest
            elif prefix == "p":
                result["pruning"] = int(rest)
            elif prefix == "t":
                result["tcp_port"] = int(rest) if rest else DEFAULT_TCP_PORT
            elif prefix == "s":
                result["ssl_port"] = int(rest) if rest else DEFAULT_SSL_PORT
        except ValueError:
            continue
    return result


def parse_peers(raw_peers: Any, *, include_onion: bool = False) -> list[ServerConfig]:
    """Decode ``server.peers.subscribe`` rows ``[ip, host, [features...]]``.

    TLS ports win over plain TCP. Duplicate hosts and rows without a usable
    port are skipped.
    """
    if not isinstance(raw_peers, list):
        return []
    servers: list[ServerConfig] = []
    seen: set[str] = set()
    for entry in raw_peers:
        if not isinstance(entry, (list, tuple)) or len(entry) < 3:
            continue
        host, features = entry[1], entry[2]
        if not isinstance(host, str) or not host or not isinstance(features, list):
            continue
        if host.endswith(".onion") and not include_onion:
            continue
        if host in seen:
            continue
        parsed = parse_peer_features(features)
        if parsed["ssl_port"]:
            server = ServerConfig(host=host, port=parsed["ssl_port"], secure=True)
        elif parsed["tcp_port"]:
            server = ServerConfig(host=host, port=parsed["tcp_port"], secure=False)
        else:
            continue
        seen.add(host)
        servers.append(server)
    return servers


async def discover_peers(api: Any, *, include_onion: bool = False) -> list[ServerConfig]:
    """Ask the connected server for its peers. Best effort: failures yield []."""
    try:
        raw_peers = await api.server_peers_subscribe()
    except ElectrumError as exc:
        logger.warning("Peer discovery failed: {}", exc)
        return []
    peers = parse_peers(raw_peers, include_onion=include_onion)
    logger.info("Discovered {} peer(s)", len(peers))
    return peers
