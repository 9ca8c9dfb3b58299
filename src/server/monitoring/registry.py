# -*- coding: utf-8 -*-

"""
节点注册表（Registry）

文件功能:
    - 按名称持有所有 NodeMonitor，负责新增、替换、删除与持久化。
    - 将每个监控器的快照变更按发生顺序分发给所有监听者。
    - 提供只读查询：排序后的快照列表、区块最高/延迟最低的已连接节点。

公开接口:
    - 类 Registry
        - 方法: initialize() (协程): 从持久化文件恢复订阅
        - 方法: upsert(name, host, rpc_port, ws_rpc_port) (协程) -> NodeMonitor
        - 方法: remove(name) (协程) -> bool
        - 方法: list() -> List[NodeSnapshot]
        - 方法: get(name) -> Optional[NodeMonitor]
        - 方法: get_most_advanced_connected() -> Optional[NodeMonitor]
        - 方法: get_lowest_latency_connected() -> Optional[NodeMonitor]
        - 方法: add_listener(fn) -> 取消订阅函数
        - 方法: persisted_nodes() -> List[PersistedNode]
        - 方法: sweep_stale_requests(max_age=None) -> int
        - 方法: stop_all()

内部方法:
    - _on_update(): 过滤已被替换的监控器发出的事件
    - _emit(): 逐个调用监听者，单个监听者异常不影响其他监听者
"""

from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from loguru import logger

from config import DEFAULT_RPC_PORT, DEFAULT_WS_RPC_PORT, REPLACE_GRACE_SECONDS

from .node_monitor import NodeMonitor
from .schemas import NodeSnapshot, PersistedNode

Listener = Callable[[NodeSnapshot], None]
MonitorFactory = Callable[[str, str, int, int], Any]


def _measured(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value >= 0


def _rank_key(snapshot: NodeSnapshot):
    latency = snapshot.latency_ms if _measured(snapshot.latency_ms) else math.inf
    updated = snapshot.last_updated if snapshot.last_updated is not None else -math.inf
    return (not snapshot.connected, latency, -updated, snapshot.name)


class Registry:
    """节点监控器集合；同名操作串行执行，不同名称互不阻塞"""

    def __init__(
        self,
        store: Optional[Any] = None,
        monitor_factory: Optional[MonitorFactory] = None,
        replace_grace: float = REPLACE_GRACE_SECONDS,
    ):
        self._store = store
        self._monitor_factory: MonitorFactory = monitor_factory or NodeMonitor
        self.replace_grace = replace_grace
        # dict 保持插入顺序，替换同名节点时位置不变
        self._monitors: Dict[str, Any] = {}
        # 只为正在执行或等待执行的同名操作保留锁
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._monitors)

    def __contains__(self, name: str) -> bool:
        return name in self._monitors

    async def initialize(self) -> int:
        """加载持久化的订阅并逐个启动，文件缺失或损坏时以空列表启动"""
        if self._store is None:
            return 0
        nodes = self._store.load()
        if nodes:
            logger.info(f"加载 {len(nodes)} 个已持久化的节点")
        for node in nodes:
            await self.upsert(node.name, node.host, node.rpc_port, node.ws_rpc_port)
        return len(nodes)

    @asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    async def upsert(
        self,
        name: str,
        host: str,
        rpc_port: int = DEFAULT_RPC_PORT,
        ws_rpc_port: int = DEFAULT_WS_RPC_PORT,
    ):
        async with self._name_lock(name):
            existing = self._monitors.get(name)
            if existing is not None:
                logger.info(f"替换节点 {name}")
                existing.stop()
                # 等待旧连接完全关闭后再建立新连接
                try:
                    await asyncio.sleep(self.replace_grace)
                except asyncio.CancelledError:
                    # 旧监控器已停止，不能继续留在表中
                    if self._monitors.get(name) is existing:
                        del self._monitors[name]
                        logger.warning(f"替换节点 {name} 被取消，已移除旧的监控器")
                        self.persist()
                    raise
            else:
                logger.info(f"新增节点 {name} ({host}:{rpc_port}/{ws_rpc_port})")

            monitor = self._monitor_factory(name, host, rpc_port, ws_rpc_port)
            self._monitors[name] = monitor
            monitor.start(lambda snapshot, source=monitor: self._on_update(source, snapshot))
            self.persist()
            return monitor

    async def remove(self, name: str) -> bool:
        if name not in self._monitors and name not in self._locks:
            return False
        async with self._name_lock(name):
            monitor = self._monitors.pop(name, None)
            if monitor is None:
                return False
            monitor.stop()
            logger.info(f"移除节点 {name}")
            self.persist()
            return True

    def get(self, name: str):
        return self._monitors.get(name)

    def list(self) -> List[NodeSnapshot]:
        """
        按固定规则排序的快照列表：
        已连接在前；延迟升序（未测得视为最差）；最近更新在前；名称升序。
        """
        return sorted((m.snapshot for m in self._monitors.values()), key=_rank_key)

    def get_most_advanced_connected(self):
        best, best_key = None, None
        for monitor in self._monitors.values():
            snapshot = monitor.snapshot
            if not snapshot.connected:
                continue
            key = (
                snapshot.latest_block if snapshot.latest_block is not None else -math.inf,
                snapshot.last_updated if snapshot.last_updated is not None else -math.inf,
            )
            if best is None or key > best_key:
                best, best_key = monitor, key
        return best

    def get_lowest_latency_connected(self):
        best, best_key = None, None
        for monitor in self._monitors.values():
            snapshot = monitor.snapshot
            if not snapshot.connected:
                continue
            key = (
                snapshot.latency_ms if _measured(snapshot.latency_ms) else math.inf,
                -(snapshot.last_updated if snapshot.last_updated is not None else -math.inf),
            )
            if best is None or key < best_key:
                best, best_key = monitor, key
        return best

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def persisted_nodes(self) -> List[PersistedNode]:
        return [m.persisted for m in self._monitors.values()]

    def persist(self) -> bool:
        """写入当前订阅列表；失败只记录日志，内存中的状态继续生效"""
        if self._store is None:
            return False
        ok, message = self._store.save(self.persisted_nodes())
        if not ok:
            logger.warning(f"订阅列表持久化失败，继续使用内存状态: {message}")
        return ok

    def sweep_stale_requests(self, max_age: Optional[float] = None) -> int:
        return sum(m.connection.sweep_stale_requests(max_age) for m in list(self._monitors.values()))

    def stop_all(self) -> None:
        """关闭时停止所有监控器；不改写持久化文件"""
        for monitor in list(self._monitors.values()):
            monitor.stop()
        self._monitors.clear()

    def _on_update(self, source: Any, snapshot: NodeSnapshot) -> None:
        if self._monitors.get(snapshot.name) is not source:
            return
        self._emit(snapshot)

    def _emit(self, snapshot: NodeSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception(f"节点 {snapshot.name} 的监听回调执行失败")
