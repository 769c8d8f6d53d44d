import pytest

from conftest import Reject
from electrumsync.api import ElectrumApi
from electrumsync.core.errors import ServerError


async def connected_api(make_client):
    client = make_client()
    assert await client.init_electrum()
    return ElectrumApi(client)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("call", "method", "params"),
    [
        (lambda api: api.server_banner(), "server.banner", []),
        (lambda api: api.server_donation_address(), "server.donation_address", []),
        (lambda api: api.server_peers_subscribe(), "server.peers.subscribe", []),
        (lambda api: api.scripthash_get_balance("aa"), "blockchain.scripthash.get_balance", ["aa"]),
        (lambda api: api.scripthash_get_mempool("aa"), "blockchain.scripthash.get_mempool", ["aa"]),
        (lambda api: api.address_get_history("1A1z"), "blockchain.address.get_history", ["1A1z"]),
        (lambda api: api.address_get_proof("1A1z"), "blockchain.address.get_proof", ["1A1z"]),
        (lambda api: api.block_header(100), "blockchain.block.header", [100]),
        (lambda api: api.block_get_chunk(3), "blockchain.block.get_chunk", [3]),
        (lambda api: api.estimatefee(6), "blockchain.estimatefee", [6]),
        (lambda api: api.relayfee(), "blockchain.relayfee", []),
        (lambda api: api.numblocks_subscribe(), "blockchain.numblocks.subscribe", []),
        (lambda api: api.transaction_get("t1"), "blockchain.transaction.get", ["t1", False]),
        (lambda api: api.transaction_get_merkle("t1", 700000), "blockchain.transaction.get_merkle", ["t1", 700000]),
        (lambda api: api.utxo_get_address("t1", 0), "blockchain.utxo.get_address", ["t1", 0]),
    ],
)
async def test_methods_issue_one_call_with_positional_params(make_client, fake_server, call, method, params):
    fake_server.handlers[method] = lambda p: {"echo": p}
    api = await connected_api(make_client)

    assert await call(api) == {"echo": params}
    assert [r["params"] for r in fake_server.requests(method)] == [params]
    await api.client.close()


@pytest.mark.asyncio
async def test_server_error_raises(make_client, fake_server):
    def reject(params):
        raise Reject(-32600, "bad-txns-inputs-missingorspent")

    fake_server.handlers["blockchain.transaction.broadcast"] = reject
    api = await connected_api(make_client)
    with pytest.raises(ServerError) as exc_info:
        await api.transaction_broadcast("0200")
    assert exc_info.value.code == "-32600"
    await api.client.close()


@pytest.mark.asyncio
async def test_server_version_defaults_to_handshake(make_client, fake_server):
    api = await connected_api(make_client)
    await api.server_version()
    assert fake_server.requests("server.version")[-1]["params"] == ["electrumsync", "1.4"]
    await api.client.close()


@pytest.mark.asyncio
async def test_batch_variant_sends_array_frame(make_client, fake_server):
    fake_server.handlers["blockchain.scripthash.get_balance"] = lambda p: {"confirmed": len(p[0]), "unconfirmed": 0}
    fake_server.reverse_batches = True
    api = await connected_api(make_client)

    results = await api.scripthash_get_balance_batch(["a", "bbb"])

    assert [r.result["confirmed"] for r in results] == [1, 3]
    assert isinstance(fake_server.sent[-1], list)
    await api.client.close()


@pytest.mark.asyncio
async def test_transaction_get_batch_passes_verbose(make_client, fake_server):
    fake_server.handlers["blockchain.transaction.get"] = lambda p: {"txid": p[0], "verbose": p[1]}
    api = await connected_api(make_client)
    results = await api.transaction_get_batch(["t1", "t2"], verbose=True)
    assert [r.result for r in results] == [{"txid": "t1", "verbose": True}, {"txid": "t2", "verbose": True}]
    await api.client.close()


@pytest.mark.asyncio
async def test_headers_subscribe_with_handler(make_client, fake_server):
    fake_server.handlers["blockchain.headers.subscribe"] = lambda p: {"height": 800000, "hex": "00"}
    api = await connected_api(make_client)
    headers = []

    handle, result = await api.headers_subscribe(headers.append)
    fake_server.transport.push({"method": "blockchain.headers.subscribe", "params": [{"height": 800001}]})

    assert result.result["height"] == 800000
    assert headers == [[{"height": 800001}]]
    assert handle.method == "blockchain.headers.subscribe"
    await api.client.close()


@pytest.mark.asyncio
async def test_scripthash_subscribe_and_unsubscribe(make_client, fake_server):
    fake_server.handlers["blockchain.scripthash.subscribe"] = lambda p: "status"
    fake_server.handlers["blockchain.scripthash.unsubscribe"] = lambda p: True
    api = await connected_api(make_client)

    assert await api.scripthash_subscribe("aa") == "status"
    handle, _ = await api.scripthash_subscribe("aa", lambda params: None)
    assert await api.scripthash_unsubscribe("aa", handle) is True
    assert await api.scripthash_unsubscribe("aa") is True
    assert len(fake_server.requests("blockchain.scripthash.unsubscribe")) == 2
    await api.client.close()
