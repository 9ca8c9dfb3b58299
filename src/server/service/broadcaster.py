# -*- coding: utf-8 -*-
"""
推送分发（UpdateHub）

文件功能:
    - 为每个 WebSocket 客户端维护一个有界队列，注册表的快照变更写入所有队列。
    - 慢客户端队列满时丢弃消息，连续丢弃过多则断开该客户端，不影响其他客户端。

公开接口:
    - 类 UpdateHub
        - 方法: attach(snapshots) -> Channel: 新客户端，队列中首先放入一条完整快照
        - 方法: detach(channel)
        - 方法: publish_update(snapshot): 作为 Registry 监听者使用
        - 方法: publish_snapshot(snapshots)
        - 方法: pump(channel, send) (协程): 将队列中的消息逐条发送给客户端

消息格式:
    {"type": "snapshot", "nodes": [...]}
    {"type": "update", "node": {...}}
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from loguru import logger

from monitoring.schemas import NodeSnapshot


def snapshot_message(snapshots: Iterable[NodeSnapshot]) -> Dict[str, Any]:
    return {"type": "snapshot", "nodes": [s.to_wire() for s in snapshots]}


def update_message(snapshot: NodeSnapshot) -> Dict[str, Any]:
    return {"type": "update", "node": snapshot.to_wire()}


class Channel:
    """单个客户端的发送队列；None 为结束标记"""
    __slots__ = ("queue", "consecutive_drops", "active")

    def __init__(self, maxsize: int):
        self.queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue(maxsize=maxsize)
        self.consecutive_drops = 0
        self.active = True


class UpdateHub:
    def __init__(self, maxsize: int = 256, max_drops: int = 100):
        self.maxsize = maxsize
        self.max_drops = max_drops
        self._channels: Set[Channel] = set()

    def __len__(self) -> int:
        return len(self._channels)

    def attach(self, snapshots: Iterable[NodeSnapshot]) -> Channel:
        channel = Channel(self.maxsize)
        channel.queue.put_nowait(snapshot_message(snapshots))
        self._channels.add(channel)
        return channel

    def detach(self, channel: Channel) -> None:
        self._channels.discard(channel)
        channel.active = False
        try:
            channel.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def publish_update(self, snapshot: NodeSnapshot) -> None:
        self._broadcast(update_message(snapshot))

    def publish_snapshot(self, snapshots: Iterable[NodeSnapshot]) -> None:
        self._broadcast(snapshot_message(snapshots))

    def _broadcast(self, message: Dict[str, Any]) -> None:
        hopeless = []
        for channel in self._channels:
            try:
                channel.queue.put_nowait(message)
                channel.consecutive_drops = 0
            except asyncio.QueueFull:
                channel.consecutive_drops += 1
                if channel.consecutive_drops > self.max_drops:
                    hopeless.append(channel)
        for channel in hopeless:
            logger.warning(f"推送客户端连续丢弃超过 {self.max_drops} 条消息，断开")
            self.detach(channel)

    async def pump(self, channel: Channel, send: Callable[[Dict[str, Any]], Awaitable[None]]) -> None:
        while channel.active:
            message = await channel.queue.get()
            if message is None:
                break
            await send(message)
