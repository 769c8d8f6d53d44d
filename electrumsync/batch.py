"""Batch query engine: fan one method out over many wallet addresses.

Every descriptor gets its own call, all in flight together. Successful items
are shaped into records tagged with the descriptor (``script_hash``,
``address``, ``path``); failed items are left out of ``records`` and reported
through ``outcomes`` / ``dropped`` instead.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from collections.abc import Callable, Iterable, Iterator, Mapping

from loguru import logger

from electrumsync.client import ElectrumClient
from electrumsync.core.errors import ElectrumError, ProtocolError
from electrumsync.core.protocol import CallResult, RpcError

Shaper = Callable[[Any, dict[str, Any]], list[dict[str, Any]]]

HISTORY_FIELDS = ("height", "tx_hash")
UNSPENT_FIELDS = ("height", "tx_hash", "tx_pos", "value")


@dataclass(frozen=True, slots=True)
class AddressDescriptor:
    """One wallet address as handed in by the wallet."""

    script_hash: str
    address: str = ""
    derivation_path: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AddressDescriptor":
        """Accept wallet rows in either camelCase or snake_case."""
        return cls(
            script_hash=str(data.get("script_hash") or data.get("scriptHash") or ""),
            address=str(data.get("address") or ""),
            derivation_path=str(data.get("derivation_path") or data.get("path") or ""),
        )

    def tags(self) -> dict[str, Any]:
        return {"script_hash": self.script_hash, "address": self.address, "path": self.derivation_path}


@dataclass(slots=True)
class ItemOutcome:
    """Per-descriptor result of a batch query."""

    descriptor: Any
    ok: bool
    records: list[dict[str, Any]] = field(default_factory=list)
    error: RpcError | None = None


@dataclass(slots=True)
class AggregateResult:
    """Records of the successful items plus every item's explicit outcome.

    Iterating yields the records only.
    """

    method: str
    records: list[dict[str, Any]] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def dropped(self) -> list[Any]:
        return [o.descriptor for o in self.outcomes if not o.ok]

    @property
    def complete(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


def merge_tags(payload: Any, tags: dict[str, Any]) -> list[dict[str, Any]]:
    """Dict payloads are merged with the tags; anything else goes under ``result``."""
    if isinstance(payload, dict):
        return [{**payload, **tags}]
    return [{"result": payload, **tags}]


def shape_balance(payload: Any, tags: dict[str, Any]) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ProtocolError(f"expected balance object, got {type(payload).__name__}")
    return [{"confirmed": payload.get("confirmed"), "unconfirmed": payload.get("unconfirmed"), **tags}]


def flatten_rows(keys: tuple[str, ...]) -> Shaper:
    """Build a shaper that projects each row of a list payload onto ``keys``."""

    def _shape(payload: Any, tags: dict[str, Any]) -> list[dict[str, Any]]:
        if not isinstance(payload, list):
            raise ProtocolError(f"expected list of rows, got {type(payload).__name__}")
        records = []
        for row in payload:
            if not isinstance(row, dict) or any(key not in row for key in keys):
                logger.debug("Skipping malformed row: {}", str(row)[:200])
                continue
            records.append({**{key: row[key] for key in keys}, **tags})
        return records

    return _shape


class BatchQueryEngine:
    """Concurrent per-address queries over one ElectrumClient."""

    def __init__(self, client: ElectrumClient, *, max_concurrency: int | None = None):
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.client = client
        self.max_concurrency = max_concurrency

    def _limiter(self) -> asyncio.Semaphore | None:
        return asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

    async def _guarded_call(self, limiter: asyncio.Semaphore | None, method: str, params: list[Any]) -> CallResult:
        if limiter is None:
            return await self.client.call(method, params)
        async with limiter:
            return await self.client.call(method, params)

    async def _gather(
        self,
        method: str,
        jobs: list[tuple[Any, list[Any], Callable[[Any], list[dict[str, Any]]]] | ItemOutcome],
    ) -> AggregateResult:
        """Run the jobs concurrently; an ItemOutcome in place of a job is a failure settled up front."""
        limiter = self._limiter()

        async def _one(job: Any) -> ItemOutcome:
            if isinstance(job, ItemOutcome):
                return job
            descriptor, params, shape = job
            result = await self._guarded_call(limiter, method, params)
            if not result.ok:
                return ItemOutcome(descriptor=descriptor, ok=False, error=result.error)
            try:
                records = shape(result.result)
            except ElectrumError as exc:
                return ItemOutcome(descriptor=descriptor, ok=False, error=exc.to_rpc_error())
            return ItemOutcome(descriptor=descriptor, ok=True, records=records)

        outcomes = list(await asyncio.gather(*(_one(job) for job in jobs)))
        aggregate = AggregateResult(method=method, outcomes=outcomes)
        for outcome in outcomes:
            aggregate.records.extend(outcome.records)
        if aggregate.dropped:
            logger.debug("{}: {} of {} item(s) failed", method, len(aggregate.dropped), len(outcomes))
        return aggregate

    async def fetch_many(
        self,
        method: str,
        descriptors: Iterable[AddressDescriptor],
        shape: Shaper = merge_tags,
    ) -> AggregateResult:
        """Call ``method([script_hash])`` once per descriptor and aggregate.

        Completes only after every call has resolved, failed or timed out.
        """
        jobs = []
        for descriptor in descriptors:
            tags = descriptor.tags()
            jobs.append((descriptor, [descriptor.script_hash], lambda payload, tags=tags: shape(payload, tags)))
        return await self._gather(method, jobs)

    async def get_balances(self, descriptors: Iterable[AddressDescriptor]) -> AggregateResult:
        return await self.fetch_many("blockchain.scripthash.get_balance", descriptors, shape_balance)

    async def get_histories(self, descriptors: Iterable[AddressDescriptor]) -> AggregateResult:
        return await self.fetch_many("blockchain.scripthash.get_history", descriptors, flatten_rows(HISTORY_FIELDS))

    async def get_mempools(self, descriptors: Iterable[AddressDescriptor]) -> AggregateResult:
        return await self.fetch_many("blockchain.scripthash.get_mempool", descriptors, flatten_rows(HISTORY_FIELDS))

    async def list_unspents(self, descriptors: Iterable[AddressDescriptor]) -> AggregateResult:
        return await self.fetch_many("blockchain.scripthash.listunspent", descriptors, flatten_rows(UNSPENT_FIELDS))

    async def get_transactions(self, tx_rows: Iterable[Mapping[str, Any]], verbose: bool = False) -> AggregateResult:
        """Fetch every transaction of ``tx_rows`` and merge it into its row.

        Verbose (dict) responses are merged into the row; raw hex is stored
        under ``hex``. Rows without ``tx_hash`` fail as protocol errors.
        """
        method = "blockchain.transaction.get"
        jobs: list[Any] = []
        for row in tx_rows:
            tx_hash = row.get("tx_hash") if isinstance(row, Mapping) else None
            if not tx_hash:
                jobs.append(ItemOutcome(
                    descriptor=row,
                    ok=False,
                    error=ProtocolError("row has no tx_hash", method=method).to_rpc_error(),
                ))
                continue
            jobs.append((row, [tx_hash, verbose], lambda payload, row=row: _merge_transaction(row, payload)))
        return await self._gather(method, jobs)


def _merge_transaction(row: Mapping[str, Any], payload: Any) -> list[dict[str, Any]]:
    if not payload:
        raise ProtocolError("empty transaction response", method="blockchain.transaction.get")
    if isinstance(payload, dict):
        return [{**row, **payload}]
    return [{**row, "hex": payload}]
