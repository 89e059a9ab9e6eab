"""
ChainClient over a mocked HTTP transport: retry, failover, error classification,
log range chunking and the WebSocket transfer stream.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest


def _rpc_ok(request_id, result):
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": result})


def _client(network_config, handler, **kwargs):
    from backend_paywatch.evm.client import ChainClient

    config = network_config(**kwargs.pop("config", {}))
    return ChainClient(
        config,
        transport=httpx.MockTransport(handler),
        min_retry_delay_sec=0.0,
        max_retry_delay_sec=0.0,
        **kwargs,
    )


def test_get_receipt_returns_none_while_unmined(network_config, chain_data):
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "eth_getTransactionReceipt"
        return _rpc_ok(body["id"], None)

    async def run():
        async with _client(network_config, handler) as client:
            return await client.get_receipt(chain_data.tx_hash)

    assert asyncio.run(run()) is None


def test_get_receipt_parses_logs(network_config, chain_data):
    raw = {
        "transactionHash": chain_data.tx_hash,
        "status": "0x1",
        "blockNumber": "0x10",
        "from": chain_data.donor,
        "to": chain_data.usdt,
        "logs": [chain_data.rpc_log(chain_data.donor, chain_data.platform, 50_000_000, block=16)],
    }

    def handler(request):
        body = json.loads(request.content)
        return _rpc_ok(body["id"], raw)

    async def run():
        async with _client(network_config, handler) as client:
            receipt = await client.get_receipt(chain_data.tx_hash)
            return receipt, client.decode_transfer_logs(receipt, chain_data.usdt)

    receipt, transfers = asyncio.run(run())
    assert receipt.succeeded
    assert receipt.block_number == 16
    assert transfers[0].value == 50_000_000
    assert transfers[0].to_address == chain_data.platform.lower()


def test_retries_transient_http_errors_then_succeeds(network_config):
    calls = []

    def handler(request):
        calls.append(1)
        body = json.loads(request.content)
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return _rpc_ok(body["id"], "0x64")

    async def run():
        async with _client(network_config, handler, max_retries=3) as client:
            return await client.latest_block_number()

    assert asyncio.run(run()) == 100
    assert len(calls) == 3


def test_fails_over_to_backup_endpoint(network_config):
    hosts = []

    def handler(request):
        hosts.append(request.url.host)
        body = json.loads(request.content)
        if request.url.host == "primary.test":
            raise httpx.ConnectError("refused", request=request)
        return _rpc_ok(body["id"], "0x1")

    async def run():
        client = _client(
            network_config,
            handler,
            max_retries=2,
            config={"http_endpoint": "http://primary.test", "backup_http_endpoint": "http://backup.test"},
        )
        async with client:
            return await client.chain_id()

    assert asyncio.run(run()) == 1
    assert hosts == ["primary.test", "primary.test", "backup.test"]


def test_network_error_after_retry_budget(network_config):
    from backend_paywatch.core.exceptions import NetworkError

    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ReadTimeout("slow", request=request)

    async def run():
        async with _client(network_config, handler, max_retries=2) as client:
            await client.latest_block_number()

    with pytest.raises(NetworkError):
        asyncio.run(run())
    assert len(calls) == 2


def test_rate_limit_rpc_error_is_retryable(network_config):
    calls = []

    def handler(request):
        calls.append(1)
        body = json.loads(request.content)
        if len(calls) == 1:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32005, "message": "limit"}}
            )
        return _rpc_ok(body["id"], "0x2")

    async def run():
        async with _client(network_config, handler) as client:
            return await client.latest_block_number()

    assert asyncio.run(run()) == 2
    assert len(calls) == 2


def test_invalid_params_rpc_error_is_malformed_and_not_retried(network_config, chain_data):
    from backend_paywatch.core.exceptions import MalformedResponseError

    calls = []

    def handler(request):
        calls.append(1)
        body = json.loads(request.content)
        return httpx.Response(
            200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32602, "message": "bad hash"}}
        )

    async def run():
        async with _client(network_config, handler) as client:
            await client.get_receipt(chain_data.tx_hash)

    with pytest.raises(MalformedResponseError):
        asyncio.run(run())
    assert len(calls) == 1


def test_non_json_body_is_malformed(network_config):
    from backend_paywatch.core.exceptions import MalformedResponseError

    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    async def run():
        async with _client(network_config, handler) as client:
            await client.latest_block_number()

    with pytest.raises(MalformedResponseError):
        asyncio.run(run())


def test_get_transfer_logs_chunks_large_ranges(network_config, chain_data):
    """A 4500-block range is split into 2000-block eth_getLogs calls; results sorted."""
    ranges = []

    def handler(request):
        body = json.loads(request.content)
        flt = body["params"][0]
        start, end = int(flt["fromBlock"], 16), int(flt["toBlock"], 16)
        ranges.append((start, end))
        assert flt["topics"][2].endswith(chain_data.platform.lower()[2:])
        logs = []
        if start == 0:
            logs = [
                chain_data.rpc_log(chain_data.donor, chain_data.platform, 2, block=10, log_index=1),
                chain_data.rpc_log(chain_data.donor, chain_data.platform, 1, block=10, log_index=0),
                chain_data.rpc_log(chain_data.donor, chain_data.platform, 9, block=11, removed=True),
            ]
        return _rpc_ok(body["id"], logs)

    async def run():
        async with _client(network_config, handler) as client:
            return await client.get_transfer_logs(chain_data.usdt, chain_data.platform, 0, 4499)

    transfers = asyncio.run(run())
    assert ranges == [(0, 1999), (2000, 3999), (4000, 4499)]
    assert [t.value for t in transfers] == [1, 2]


def test_fee_data_derives_eip1559_fields(network_config):
    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "eth_gasPrice":
            return _rpc_ok(body["id"], hex(15 * 10**9))
        return _rpc_ok(body["id"], {"number": "0x1", "baseFeePerGas": hex(10 * 10**9)})

    async def run():
        async with _client(network_config, handler) as client:
            return await client.get_fee_data()

    fee = asyncio.run(run())
    assert fee.gas_price == 15 * 10**9
    assert fee.max_fee_per_gas == 21 * 10**9
    assert fee.max_priority_fee_per_gas == 10**9


def test_fee_data_legacy_chain(network_config):
    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "eth_gasPrice":
            return _rpc_ok(body["id"], "0x5")
        return _rpc_ok(body["id"], {"number": "0x1"})

    async def run():
        async with _client(network_config, handler) as client:
            return await client.get_fee_data()

    fee = asyncio.run(run())
    assert fee.gas_price == 5
    assert fee.max_fee_per_gas is None


def test_token_decimals_via_eth_call(network_config, chain_data):
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "eth_call"
        assert body["params"][0]["data"] == "0x313ce567"
        return _rpc_ok(body["id"], "0x" + format(18, "064x"))

    async def run():
        async with _client(network_config, handler) as client:
            return await client.get_token_decimals(chain_data.other)

    assert asyncio.run(run()) == 18


def test_subscribe_without_ws_endpoint_raises(network_config, chain_data):
    from backend_paywatch.core.exceptions import NetworkError

    client = _client(network_config, lambda request: httpx.Response(500))
    with pytest.raises(NetworkError):
        client.subscribe_transfers(chain_data.usdt, chain_data.platform)


class FakeSocket:
    """websockets connection double: scripted recv() then async iteration."""

    def __init__(self, subscribe_reply, notifications):
        self.sent = []
        self.closed = False
        self._reply = subscribe_reply
        self._notifications = list(notifications)

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        return json.dumps(self._reply)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for item in self._notifications:
            yield json.dumps(item)


def _notification(sub_id, log):
    return {"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": sub_id, "result": log}}


def test_websocket_stream_decodes_matching_transfers(network_config, chain_data):
    from backend_paywatch.core.exceptions import SubscriptionDisconnected

    notifications = [
        _notification("0xsub", chain_data.rpc_log(chain_data.donor, chain_data.platform, 50_000_000, block=7)),
        _notification("0xsub", chain_data.rpc_log(chain_data.donor, chain_data.other, 1)),
        _notification("0xsub", chain_data.rpc_log(chain_data.donor, chain_data.platform, 5, removed=True)),
        _notification("0xother", chain_data.rpc_log(chain_data.donor, chain_data.platform, 6)),
        {"jsonrpc": "2.0", "id": 9, "result": True},
    ]
    socket = FakeSocket({"jsonrpc": "2.0", "id": 1, "result": "0xsub"}, notifications)
    connects = []

    async def connect(url, **kwargs):
        connects.append(url)
        return socket

    async def run():
        client = _client(network_config, lambda r: httpx.Response(500), ws_connect=connect,
                         config={"ws_endpoint": "wss://ws.test"})
        got = []
        with pytest.raises(SubscriptionDisconnected):
            async with client.subscribe_transfers(chain_data.usdt, chain_data.platform) as stream:
                async for transfer in stream:
                    got.append(transfer)
        return got

    got = asyncio.run(run())
    assert connects == ["wss://ws.test"]
    assert [t.value for t in got] == [50_000_000]
    assert got[0].block_number == 7
    assert socket.sent[0]["method"] == "eth_subscribe"
    assert socket.sent[0]["params"][0] == "logs"
    assert socket.closed


def test_websocket_subscribe_rejected_is_network_error(network_config, chain_data):
    from backend_paywatch.core.exceptions import NetworkError

    socket = FakeSocket({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "no subs"}}, [])

    async def connect(url, **kwargs):
        return socket

    async def run():
        client = _client(network_config, lambda r: httpx.Response(500), ws_connect=connect,
                         config={"ws_endpoint": "wss://ws.test"})
        async with client.subscribe_transfers(chain_data.usdt, chain_data.platform):
            pass

    with pytest.raises(NetworkError):
        asyncio.run(run())
    assert socket.closed


def test_websocket_connect_failure_is_network_error(network_config, chain_data):
    from backend_paywatch.core.exceptions import NetworkError

    async def connect(url, **kwargs):
        raise OSError("connection refused")

    async def run():
        client = _client(network_config, lambda r: httpx.Response(500), ws_connect=connect,
                         config={"ws_endpoint": "wss://ws.test"})
        async with client.subscribe_transfers(chain_data.usdt, chain_data.platform):
            pass

    with pytest.raises(NetworkError):
        asyncio.run(run())
