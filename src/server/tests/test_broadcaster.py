# -*- coding: utf-8 -*-

"""
测试推送分发 UpdateHub
"""

import asyncio

from monitoring.schemas import NodeSnapshot
from service.broadcaster import UpdateHub


def snap(name, **changes):
    return NodeSnapshot(name=name, host="h", rpc_port=8545, ws_rpc_port=8546, **changes)


def drain(channel):
    messages = []
    while not channel.queue.empty():
        messages.append(channel.queue.get_nowait())
    return messages


def test_attach_starts_with_snapshot_then_updates():
    hub = UpdateHub()
    channel = hub.attach([snap("a", connected=True), snap("b")])
    hub.publish_update(snap("a", connected=True, latest_block=7))

    first, second = drain(channel)
    assert first["type"] == "snapshot"
    assert [n["name"] for n in first["nodes"]] == ["a", "b"]
    assert first["nodes"][0]["wsRpcPort"] == 8546
    assert "latestBlock" not in first["nodes"][1]
    assert second == {
        "type": "update",
        "node": {"name": "a", "host": "h", "rpcPort": 8545, "wsRpcPort": 8546, "connected": True, "latestBlock": 7},
    }


def test_publish_snapshot_reaches_every_client():
    hub = UpdateHub()
    channels = [hub.attach([]), hub.attach([])]
    hub.publish_snapshot([snap("z")])
    for channel in channels:
        messages = drain(channel)
        assert messages[-1] == {"type": "snapshot", "nodes": [snap("z").to_wire()]}


def test_slow_client_is_dropped_without_affecting_others():
    hub = UpdateHub(maxsize=2, max_drops=2)
    slow = hub.attach([])
    fast = hub.attach([])

    for i in range(6):
        hub.publish_update(snap("a", latest_block=i))
        drain(fast)

    assert len(hub) == 1
    assert slow.active is False
    assert fast.active is True


def test_pump_sends_until_detached():
    async def scenario():
        hub = UpdateHub()
        channel = hub.attach([snap("a")])
        sent = []

        async def send(message):
            sent.append(message)

        task = asyncio.ensure_future(hub.pump(channel, send))
        hub.publish_update(snap("a", latest_block=1))
        await asyncio.sleep(0.01)
        hub.detach(channel)
        await asyncio.wait_for(task, timeout=1)

        assert [m["type"] for m in sent] == ["snapshot", "update"]
        assert len(hub) == 0

    asyncio.run(scenario())
