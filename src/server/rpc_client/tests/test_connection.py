# -*- coding: utf-8 -*-

"""
测试 RpcConnection

通过注入 connector 使用内存中的假 WebSocket，验证：
 - 请求/响应按 id 关联，远端错误与非法响应的处理
 - 超时、断开、主动断开时挂起请求全部失败
 - 重复 connect 为空操作，连接失败后按退避重连
 - 过期请求清理
"""

import asyncio
import json
import time

import pytest

from rpc_client import (
    Backoff,
    ConnectionClosed,
    Expired,
    NotConnected,
    ProtocolError,
    RemoteError,
    RpcConnection,
    RpcTimeout,
)


class FakeSocket:
    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.close_code = None
        self.close_reason = None
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    def feed(self, message):
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self, code=1006, reason=""):
        self.close_code = code
        self.close_reason = reason
        self.incoming.put_nowait(None)

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class Recorder:
    def __init__(self):
        self.events = []

    def on_open(self):
        self.events.append(("open",))

    def on_close(self, code, reason):
        self.events.append(("close", code, reason))

    def on_error(self, error):
        self.events.append(("error", error))


def make_connector(*items):
    queue = list(items)
    attempts = []

    async def connector(url):
        attempts.append(url)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    connector.attempts = attempts
    return connector


async def wait_until(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def make_connection(*items, **kwargs):
    kwargs.setdefault("backoff", Backoff(base=10.0, maximum=30.0, jitter=0.0))
    return RpcConnection("ws://node:8546", connector=make_connector(*items), **kwargs)


def test_backoff_doubles_with_jitter_and_caps():
    backoff = Backoff(base=2.0, maximum=30.0, jitter=1.0, rng=lambda: 0.5)
    delays = [backoff.next_delay() for _ in range(6)]
    assert delays == [2.0, 4.5, 9.5, 19.5, 30.0, 30.0]

    backoff.reset()
    assert backoff.next_delay() == 2.0


def test_backoff_stays_within_jitter_bounds():
    backoff = Backoff(base=2.0, maximum=30.0, jitter=1.0)
    delays = [backoff.next_delay() for _ in range(10)]
    assert delays[0] == 2.0
    assert 4.0 <= delays[1] < 5.0
    assert 8.0 <= delays[2] < 11.0
    assert all(d <= 30.0 for d in delays)


def test_call_without_connection_raises_not_connected():
    async def scenario():
        conn = make_connection()
        with pytest.raises(NotConnected):
            await conn.call("eth_blockNumber")

    asyncio.run(scenario())


def test_call_resolves_matching_response():
    async def scenario():
        ws = FakeSocket()
        rec = Recorder()
        conn = make_connection(ws)
        conn.connect(rec.on_open, rec.on_close, rec.on_error)
        await wait_until(lambda: conn.is_connected)
        assert rec.events == [("open",)]

        task = asyncio.ensure_future(conn.call("eth_blockNumber"))
        await wait_until(lambda: ws.sent)
        request = ws.sent[0]
        assert request["jsonrpc"] == "2.0"
        assert request["method"] == "eth_blockNumber"
        assert request["params"] == []

        # 非法 JSON 与无关 id 的消息被忽略
        ws.feed("not json")
        ws.feed({"jsonrpc": "2.0", "id": 999, "result": "0x0"})
        ws.feed({"jsonrpc": "2.0", "id": request["id"], "result": "0x10"})
        assert await task == "0x10"
        assert conn.pending_count == 0
        conn.disconnect()

    asyncio.run(scenario())


def test_call_surfaces_remote_and_protocol_errors():
    async def scenario():
        ws = FakeSocket()
        conn = make_connection(ws)
        conn.connect()
        await wait_until(lambda: conn.is_connected)

        remote = asyncio.ensure_future(conn.call("eth_mining"))
        invalid = asyncio.ensure_future(conn.call("eth_gasPrice"))
        await wait_until(lambda: len(ws.sent) == 2)
        ws.feed({"id": ws.sent[0]["id"], "error": {"code": -32601, "message": "method not found"}})
        ws.feed({"id": ws.sent[1]["id"], "jsonrpc": "2.0"})

        with pytest.raises(RemoteError) as info:
            await remote
        assert info.value.code == -32601
        assert "method not found" in str(info.value)
        with pytest.raises(ProtocolError):
            await invalid
        conn.disconnect()

    asyncio.run(scenario())


def test_batch_responses_are_dispatched():
    async def scenario():
        ws = FakeSocket()
        conn = make_connection(ws)
        conn.connect()
        await wait_until(lambda: conn.is_connected)

        first = asyncio.ensure_future(conn.call("net_peerCount"))
        second = asyncio.ensure_future(conn.call("web3_clientVersion"))
        await wait_until(lambda: len(ws.sent) == 2)
        ws.feed([
            {"id": ws.sent[1]["id"], "result": "Geth/v1"},
            {"id": ws.sent[0]["id"], "result": "0x3"},
        ])
        assert await first == "0x3"
        assert await second == "Geth/v1"
        conn.disconnect()

    asyncio.run(scenario())


def test_call_times_out_after_requested_timeout():
    async def scenario():
        ws = FakeSocket()
        conn = make_connection(ws)
        conn.connect()
        await wait_until(lambda: conn.is_connected)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RpcTimeout) as info:
            await conn.call("eth_syncing", timeout=0.05)
        elapsed = loop.time() - started
        assert 0.05 <= elapsed < 1.0
        assert info.value.method == "eth_syncing"
        assert conn.pending_count == 0

        # 超时后的迟到响应不会造成影响
        ws.feed({"id": ws.sent[0]["id"], "result": False})
        await asyncio.sleep(0.01)
        conn.disconnect()

    asyncio.run(scenario())


def test_remote_close_fails_all_pending_requests():
    async def scenario():
        ws = FakeSocket()
        rec = Recorder()
        conn = make_connection(ws)
        conn.connect(rec.on_open, rec.on_close, rec.on_error)
        await wait_until(lambda: conn.is_connected)

        calls = [asyncio.ensure_future(conn.call("eth_blockNumber", timeout=0.2)) for _ in range(3)]
        await wait_until(lambda: len(ws.sent) == 3)
        ws.drop(1001, "going away")

        results = await asyncio.gather(*calls, return_exceptions=True)
        assert all(isinstance(r, ConnectionClosed) for r in results)
        assert conn.pending_count == 0
        await wait_until(lambda: ("close", 1001, "going away") in rec.events)
        assert not conn.is_connected

        # 原超时时间过后不会有计时器再触发
        await asyncio.sleep(0.25)
        assert conn.pending_count == 0
        conn.disconnect()

    asyncio.run(scenario())


def test_disconnect_fails_pending_and_silences_callbacks():
    async def scenario():
        ws = FakeSocket()
        rec = Recorder()
        conn = make_connection(ws)
        conn.connect(rec.on_open, rec.on_close, rec.on_error)
        await wait_until(lambda: conn.is_connected)

        pending = asyncio.ensure_future(conn.call("eth_blockNumber"))
        await wait_until(lambda: ws.sent)
        conn.disconnect()

        with pytest.raises(ConnectionClosed):
            await pending
        await asyncio.sleep(0.01)
        assert rec.events == [("open",)]
        assert not conn.is_connected
        assert conn.pending_count == 0

    asyncio.run(scenario())


def test_connect_is_idempotent():
    async def scenario():
        ws = FakeSocket()
        connector = make_connector(ws)
        conn = RpcConnection("ws://node:8546", connector=connector)
        conn.connect()
        conn.connect()
        await wait_until(lambda: conn.is_connected)
        conn.connect()
        await asyncio.sleep(0.01)
        assert len(connector.attempts) == 1
        conn.disconnect()

    asyncio.run(scenario())


def test_failed_connect_reports_error_then_retries():
    async def scenario():
        ws = FakeSocket()
        rec = Recorder()
        backoff = Backoff(base=0.01, maximum=0.05, jitter=0.0)
        conn = RpcConnection("ws://node:8546", backoff=backoff, connector=make_connector(OSError("refused"), ws))
        conn.connect(rec.on_open, rec.on_close, rec.on_error)
        await wait_until(lambda: conn.is_connected)

        kinds = [e[0] for e in rec.events]
        assert kinds == ["error", "close", "open"]
        assert rec.events[1] == ("close", 1006, "")
        # 连接成功后退避复位
        assert backoff.current == 0.01
        conn.disconnect()

    asyncio.run(scenario())


def test_request_ids_keep_increasing_across_reconnects():
    async def scenario():
        first, second = FakeSocket(), FakeSocket()
        backoff = Backoff(base=0.01, maximum=0.05, jitter=0.0)
        conn = RpcConnection("ws://node:8546", backoff=backoff, connector=make_connector(first, second))
        conn.connect()
        await wait_until(lambda: conn.is_connected)

        call = asyncio.ensure_future(conn.call("eth_blockNumber"))
        await wait_until(lambda: first.sent)
        first.feed({"id": first.sent[0]["id"], "result": "0x1"})
        await call
        first.drop()

        await wait_until(lambda: not conn.is_connected)
        await wait_until(lambda: conn.is_connected)
        call = asyncio.ensure_future(conn.call("eth_blockNumber"))
        await wait_until(lambda: second.sent)
        assert second.sent[0]["id"] > first.sent[0]["id"]
        second.feed({"id": second.sent[0]["id"], "result": "0x2"})
        assert await call == "0x2"
        conn.disconnect()

    asyncio.run(scenario())


def test_sweep_stale_requests_expires_old_calls():
    async def scenario():
        ws = FakeSocket()
        conn = make_connection(ws, stale_after=60.0)
        conn.connect()
        await wait_until(lambda: conn.is_connected)

        pending = asyncio.ensure_future(conn.call("eth_blockNumber", timeout=600))
        await wait_until(lambda: ws.sent)

        assert conn.sweep_stale_requests() == 0
        assert conn.sweep_stale_requests(now=time.monotonic() + 120) == 1
        with pytest.raises(Expired):
            await pending
        assert conn.pending_count == 0
        conn.disconnect()

    asyncio.run(scenario())
