# -*- coding: utf-8 -*-

"""
节点监控器（NodeMonitor）

文件功能:
    - 持有一条 RpcConnection，连接建立后按固定间隔轮询节点指标，生成 NodeSnapshot。
    - 每次快照变更都通过回调通知所有者（Registry）。
    - 所有 RPC 失败都在此处吸收：记录到 last_error 后继续轮询，不向上抛出。

公开接口:
    - 类 NodeMonitor
        - 类方法: from_persisted(node, **kwargs)
        - 方法: start(on_update)
        - 方法: stop()
        - 方法: poll_once() (协程) -> bool
        - 属性: snapshot / persisted / is_stopped
    - 函数 resolve_ws_url(host, ws_rpc_port) -> str

内部方法:
    - _collect(): 一次轮询的全部探测
    - _refresh_block(): 拉取最新区块并更新出块间隔
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Callable, Optional

from loguru import logger

from config import (
    BLOCK_TIME_WINDOW,
    DEFAULT_RPC_PORT,
    DEFAULT_WS_RPC_PORT,
    POLL_INTERVAL_SECONDS,
    RECONNECT_BASE_SECONDS,
    RECONNECT_JITTER_SECONDS,
    RECONNECT_MAX_SECONDS,
    RPC_TIMEOUT_SECONDS,
    STALE_REQUEST_SECONDS,
)
from rpc_client import Backoff, RpcConnection, RpcError, now_ms, parse_hex_int, to_hex_block

from .block_times import BlockTimeWindow
from .schemas import NodeSnapshot, PersistedNode, SyncProgress

UpdateCallback = Callable[[NodeSnapshot], None]

_WS_SCHEME = re.compile(r"^wss?://", re.IGNORECASE)


def resolve_ws_url(host: str, ws_rpc_port: int) -> str:
    """host 本身是 ws(s):// 地址时直接使用，否则拼接为 ws://host:port"""
    if _WS_SCHEME.match(host):
        return host
    return f"ws://{host}:{ws_rpc_port}"


class NodeMonitor:
    """将一条 RPC 连接转化为持续刷新的节点快照"""

    def __init__(
        self,
        name: str,
        host: str,
        rpc_port: int = DEFAULT_RPC_PORT,
        ws_rpc_port: int = DEFAULT_WS_RPC_PORT,
        *,
        connection: Optional[Any] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        window_size: int = BLOCK_TIME_WINDOW,
        clock: Callable[[], int] = now_ms,
    ):
        self.name = name
        self.host = host
        self.rpc_port = rpc_port
        self.ws_rpc_port = ws_rpc_port
        self.url = resolve_ws_url(host, ws_rpc_port)
        self.connection = connection or RpcConnection(
            self.url,
            request_timeout=RPC_TIMEOUT_SECONDS,
            stale_after=STALE_REQUEST_SECONDS,
            backoff=Backoff(RECONNECT_BASE_SECONDS, RECONNECT_MAX_SECONDS, RECONNECT_JITTER_SECONDS),
        )
        self.poll_interval = poll_interval
        self._clock = clock

        self._snapshot = NodeSnapshot(name=name, host=host, rpc_port=rpc_port, ws_rpc_port=ws_rpc_port)
        self._window = BlockTimeWindow(window_size)
        self._last_block_ts: Optional[int] = None
        self._last_fetched_block: Optional[int] = None
        self._connected_since: Optional[int] = None

        self._on_update: Optional[UpdateCallback] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._polling = False
        self._stopped = False

    @classmethod
    def from_persisted(cls, node: PersistedNode, **kwargs: Any) -> "NodeMonitor":
        return cls(node.name, node.host, node.rpc_port, node.ws_rpc_port, **kwargs)

    @property
    def snapshot(self) -> NodeSnapshot:
        return self._snapshot

    @property
    def persisted(self) -> PersistedNode:
        return PersistedNode(name=self.name, host=self.host, rpc_port=self.rpc_port, ws_rpc_port=self.ws_rpc_port)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def start(self, on_update: UpdateCallback) -> None:
        self._on_update = on_update
        self._stopped = False
        logger.info(f"[{self.name}] 开始监控 {self.url}")
        self.connection.connect(self._handle_open, self._handle_close, self._handle_error)

    def stop(self) -> None:
        """停止轮询并断开连接；快照标记为已断开，此后不会再产生任何快照通知"""
        self._stopped = True
        self._cancel_poll()
        self.connection.disconnect()
        now = self._clock()
        changes: dict = {"connected": False, "last_updated": now}
        if self._snapshot.connected or self._snapshot.last_disconnected is None:
            changes["last_disconnected"] = now
        self._connected_since = None
        self._update(**changes)
        logger.info(f"[{self.name}] 已停止监控")

    # --- 连接事件 ---

    def _handle_open(self) -> None:
        now = self._clock()
        self._connected_since = now
        self._update(connected=True, last_error=None, last_updated=now, uptime_ms=0)
        self._notify()
        self._start_polling()

    def _handle_close(self, code: int, reason: str) -> None:
        now = self._clock()
        previous = self._snapshot
        changes: dict = {"connected": False, "last_updated": now}
        # 只在进入断开状态的那一次记录断开时间
        if previous.connected or previous.last_disconnected is None:
            changes["last_disconnected"] = now
        if reason:
            changes["last_error"] = f"WS close {code}: {reason}"
        else:
            changes["last_error"] = previous.last_error or "WS closed"
        self._connected_since = None
        self._cancel_poll()
        self._update(**changes)
        self._notify()

    def _handle_error(self, error: BaseException) -> None:
        self._update(last_error=str(error) or type(error).__name__, last_updated=self._clock())
        self._notify()

    # --- 轮询 ---

    def _start_polling(self) -> None:
        self._cancel_poll()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _cancel_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _poll_loop(self) -> None:
        # 间隔从上一次轮询结束开始计算，慢响应不会导致轮询重叠
        while not self._stopped:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once()

    async def poll_once(self) -> bool:
        """
        执行一次轮询。已有轮询在进行或连接不可用时直接返回 False。
        无论成功与否，完成后都会通知所有者。
        """
        if self._polling:
            logger.debug(f"[{self.name}] 上一次轮询尚未结束，跳过")
            return False
        if not self.connection.is_connected:
            return False

        self._polling = True
        try:
            await self._collect()
        except Exception as e:  # noqa: BLE001
            message = str(e) or type(e).__name__
            logger.debug(f"[{self.name}] 轮询失败: {message}")
            self._update(last_error=message, connected=self.connection.is_connected, last_updated=self._clock())
        finally:
            self._polling = False
        self._notify()
        return True

    async def _collect(self) -> None:
        call = self.connection.call

        started = time.perf_counter()
        block_hex = await call("eth_blockNumber")
        latency_ms = int((time.perf_counter() - started) * 1000)

        previous = self._snapshot
        peer_hex, client_version, syncing, mining, gas_hex = await asyncio.gather(
            call("net_peerCount"),
            call("web3_clientVersion"),
            call("eth_syncing"),
            self._call_or_default("eth_mining", previous.mining),
            self._call_or_default("eth_gasPrice", "0x0"),
        )

        changes: dict = {"latency_ms": latency_ms, "syncing": _parse_syncing(syncing, previous.syncing)}
        latest_block = parse_hex_int(block_hex)
        if latest_block is not None:
            changes["latest_block"] = latest_block
        peer_count = parse_hex_int(peer_hex)
        if peer_count is not None:
            changes["peer_count"] = peer_count
        if isinstance(client_version, str) and client_version:
            changes["client_version"] = client_version
        if isinstance(mining, bool):
            changes["mining"] = mining
        gas_price = parse_hex_int(gas_hex)
        if gas_price is not None:
            changes["gas_price_gwei"] = gas_price / 1e9
        self._update(**changes)

        if latest_block is not None and latest_block != self._last_fetched_block:
            await self._refresh_block(latest_block)

        now = self._clock()
        changes = {"connected": self.connection.is_connected, "last_error": None, "last_updated": now}
        if self._last_block_ts is not None:
            # 远端时钟偏快时区块时间可能在未来，此时记为 0
            changes["block_propagation_ms"] = max(0, now - self._last_block_ts * 1000)
        if self._connected_since is not None:
            changes["uptime_ms"] = now - self._connected_since
        self._update(**changes)

    async def _call_or_default(self, method: str, default: Any) -> Any:
        try:
            return await self.connection.call(method)
        except RpcError as e:
            logger.debug(f"[{self.name}] {method} 调用失败，使用默认值: {e}")
            return default

    async def _refresh_block(self, number: int) -> None:
        try:
            block = await self.connection.call("eth_getBlockByNumber", [to_hex_block(number), False])
        except RpcError as e:
            logger.debug(f"[{self.name}] 获取区块 {number} 失败: {e}")
            return
        if not isinstance(block, dict):
            return
        self._last_fetched_block = number

        changes: dict = {}
        transactions = block.get("transactions")
        if isinstance(transactions, list):
            changes["block_txs"] = len(transactions)
        gas_used = parse_hex_int(block.get("gasUsed"))
        if gas_used is not None:
            changes["gas_used"] = gas_used
        gas_limit = parse_hex_int(block.get("gasLimit"))
        if gas_limit is not None:
            changes["gas_limit"] = gas_limit

        timestamp = parse_hex_int(block.get("timestamp"))
        if timestamp:
            if self._last_block_ts is not None and timestamp > self._last_block_ts:
                interval_ms = (timestamp - self._last_block_ts) * 1000
                self._window.push(interval_ms)
                changes["block_time_ms"] = interval_ms
                changes["block_time_avg_ms"] = self._window.average()
            if self._last_block_ts is None or timestamp > self._last_block_ts:
                self._last_block_ts = timestamp
        self._update(**changes)

    # --- 快照 ---

    def _update(self, **changes: Any) -> None:
        if changes:
            self._snapshot = self._snapshot.evolve(**changes)

    def _notify(self) -> None:
        if self._stopped or self._on_update is None:
            return
        try:
            self._on_update(self._snapshot)
        except Exception:  # noqa: BLE001
            logger.exception(f"[{self.name}] 快照回调执行失败")


def _parse_syncing(value: Any, previous: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, dict):
        try:
            return SyncProgress.model_validate(value)
        except ValueError:
            return previous
    return previous
