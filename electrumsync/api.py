"""Typed Electrum method surface over an ElectrumClient.

Each method is exactly one protocol call through ``client.request`` and raises
ElectrumError on failure. The ``*_batch`` variants go through
``client.call_batch`` and return tagged CallResults in input order.
"""

from __future__ import annotations

from typing import Any

from electrumsync.client import ElectrumClient
from electrumsync.core.protocol import CallResult
from electrumsync.subscriptions import NotificationHandler, SubscriptionHandle


class ElectrumApi:
    """Electrum protocol methods by name."""

    def __init__(self, client: ElectrumClient):
        self.client = client

    async def _request(self, method: str, *params: Any) -> Any:
        return await self.client.request(method, list(params))

    async def _batch(self, method: str, values: list[Any], *extra: Any) -> list[CallResult]:
        return await self.client.call_batch(method, [[value, *extra] for value in values])

    # server.*

    async def server_version(self, client_name: str | None = None, protocol_version: str | None = None) -> Any:
        handshake = self.client.handshake
        return await self._request(
            "server.version",
            client_name or handshake.client_name,
            protocol_version or handshake.protocol_version,
        )

    async def server_banner(self) -> str:
        return await self._request("server.banner")

    async def server_ping(self) -> None:
        return await self._request("server.ping")

    async def server_donation_address(self) -> str:
        return await self._request("server.donation_address")

    async def server_peers_subscribe(self) -> list[Any]:
        return await self._request("server.peers.subscribe")

    async def server_features(self) -> dict[str, Any]:
        return await self._request("server.features")

    # blockchain.scripthash.*

    async def scripthash_get_balance(self, script_hash: str) -> dict[str, Any]:
        return await self._request("blockchain.scripthash.get_balance", script_hash)

    async def scripthash_get_history(self, script_hash: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.scripthash.get_history", script_hash)

    async def scripthash_get_mempool(self, script_hash: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.scripthash.get_mempool", script_hash)

    async def scripthash_listunspent(self, script_hash: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.scripthash.listunspent", script_hash)

    async def scripthash_subscribe(
        self,
        script_hash: str,
        handler: NotificationHandler | None = None,
    ) -> Any:
        """Subscribe to status changes; with a handler the subscription is kept across reconnects."""
        method = "blockchain.scripthash.subscribe"
        if handler is None:
            return await self._request(method, script_hash)
        handle, result = await self.client.subscribe_server(method, [script_hash], handler)
        return handle, result

    async def scripthash_unsubscribe(self, script_hash: str, handle: SubscriptionHandle | None = None) -> Any:
        if handle is not None:
            return await self.client.unsubscribe_server(handle, [script_hash])
        return await self._request("blockchain.scripthash.unsubscribe", script_hash)

    # blockchain.address.* (servers before protocol 1.3)

    async def address_get_balance(self, address: str) -> dict[str, Any]:
        return await self._request("blockchain.address.get_balance", address)

    async def address_get_history(self, address: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.address.get_history", address)

    async def address_get_mempool(self, address: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.address.get_mempool", address)

    async def address_get_proof(self, address: str) -> Any:
        return await self._request("blockchain.address.get_proof", address)

    async def address_listunspent(self, address: str) -> list[dict[str, Any]]:
        return await self._request("blockchain.address.listunspent", address)

    async def address_subscribe(self, address: str) -> Any:
        return await self._request("blockchain.address.subscribe", address)

    # blocks, fees, headers

    async def block_get_header(self, height: int) -> Any:
        return await self._request("blockchain.block.get_header", height)

    async def block_header(self, height: int) -> str:
        return await self._request("blockchain.block.header", height)

    async def block_get_chunk(self, index: int) -> str:
        return await self._request("blockchain.block.get_chunk", index)

    async def estimatefee(self, blocks: int) -> float:
        return await self._request("blockchain.estimatefee", blocks)

    async def relayfee(self) -> float:
        return await self._request("blockchain.relayfee")

    async def headers_subscribe(self, handler: NotificationHandler | None = None) -> Any:
        """Current tip; with a handler, new tips are pushed to it."""
        method = "blockchain.headers.subscribe"
        if handler is None:
            return await self._request(method)
        handle, result = await self.client.subscribe_server(method, [], handler)
        return handle, result

    async def numblocks_subscribe(self) -> int:
        return await self._request("blockchain.numblocks.subscribe")

    # transactions

    async def transaction_broadcast(self, raw_tx: str) -> str:
        return await self._request("blockchain.transaction.broadcast", raw_tx)

    async def transaction_get(self, tx_hash: str, verbose: bool = False) -> Any:
        return await self._request("blockchain.transaction.get", tx_hash, verbose)

    async def transaction_get_merkle(self, tx_hash: str, height: int) -> dict[str, Any]:
        return await self._request("blockchain.transaction.get_merkle", tx_hash, height)

    async def utxo_get_address(self, tx_hash: str, index: int) -> str:
        return await self._request("blockchain.utxo.get_address", tx_hash, index)

    # batch variants

    async def scripthash_get_balance_batch(self, script_hashes: list[str]) -> list[CallResult]:
        return await self._batch("blockchain.scripthash.get_balance", script_hashes)

    async def scripthash_listunspent_batch(self, script_hashes: list[str]) -> list[CallResult]:
        return await self._batch("blockchain.scripthash.listunspent", script_hashes)

    async def scripthash_get_history_batch(self, script_hashes: list[str]) -> list[CallResult]:
        return await self._batch("blockchain.scripthash.get_history", script_hashes)

    async def transaction_get_batch(self, tx_hashes: list[str], verbose: bool = False) -> list[CallResult]:
        return await self._batch("blockchain.transaction.get", tx_hashes, verbose)
