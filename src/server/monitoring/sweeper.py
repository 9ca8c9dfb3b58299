# -*- coding: utf-8 -*-

"""
定期清理任务

文件功能:
    - 离线清理: 断开时间超过阈值的节点自动取消订阅，并通知外部推送一次完整快照。
    - 挂起请求清理: 回收所有连接中超过安全上限仍未完成的 RPC 请求。

公开接口:
    - 类 Sweeper
        - 方法: start() / stop() (协程)
        - 方法: sweep_once(now=None) (协程) -> List[str]
        - 方法: sweep_stale_requests() -> int
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from config import OFFLINE_SWEEP_INTERVAL_SECONDS, OFFLINE_UNSUBSCRIBE_SECONDS, STALE_REQUEST_SWEEP_SECONDS
from rpc_client import now_ms

from .registry import Registry

RemovedCallback = Callable[[List[str]], None]


class Sweeper:
    def __init__(
        self,
        registry: Registry,
        *,
        offline_after: float = OFFLINE_UNSUBSCRIBE_SECONDS,
        interval: float = OFFLINE_SWEEP_INTERVAL_SECONDS,
        stale_interval: float = STALE_REQUEST_SWEEP_SECONDS,
        on_removed: Optional[RemovedCallback] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry
        self.offline_after = offline_after
        self.interval = interval
        self.stale_interval = stale_interval
        self._on_removed = on_removed
        self._clock = clock
        self._tasks: List[asyncio.Task] = []
        self._sweeping = False

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._every(self.interval, self.sweep_once, "离线节点清理")),
            loop.create_task(self._every(self.stale_interval, self._sweep_requests_job, "挂起请求清理")),
        ]
        logger.info(
            f"清理任务已启动: 离线阈值 {self.offline_after:.0f}s, "
            f"检查间隔 {self.interval:.0f}s, 挂起请求检查间隔 {self.stale_interval:.0f}s"
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def sweep_once(self, now: Optional[int] = None) -> List[str]:
        """移除断开时长达到阈值的节点，返回被移除的名称"""
        if self._sweeping:
            logger.debug("上一次离线清理尚未结束，跳过")
            return []
        self._sweeping = True
        try:
            now = self._clock() if now is None else now
            removed: List[str] = []
            for snapshot in self.registry.list():
                if not self._is_expired(snapshot.name, now):
                    continue
                offline_s = (now - snapshot.last_disconnected) / 1000
                if await self.registry.remove(snapshot.name):
                    logger.info(f"节点 {snapshot.name} 已离线 {offline_s:.0f}s，自动取消订阅")
                    removed.append(snapshot.name)
        finally:
            self._sweeping = False

        if removed and self._on_removed is not None:
            try:
                self._on_removed(removed)
            except Exception:  # noqa: BLE001
                logger.exception("离线清理回调执行失败")
        return removed

    def sweep_stale_requests(self) -> int:
        count = self.registry.sweep_stale_requests()
        if count:
            logger.info(f"已回收 {count} 个过期的挂起请求")
        return count

    def _is_expired(self, name: str, now: int) -> bool:
        # 读取最新快照，节点可能在本轮清理过程中已重新连接
        monitor = self.registry.get(name)
        if monitor is None:
            return False
        snapshot = monitor.snapshot
        if snapshot.connected or snapshot.last_disconnected is None:
            return False
        return now - snapshot.last_disconnected >= self.offline_after * 1000

    async def _sweep_requests_job(self) -> None:
        self.sweep_stale_requests()

    async def _every(self, interval: float, job: Callable[[], Awaitable], label: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:  # noqa: BLE001
                logger.exception(f"{label}执行失败")
