# -*- coding: utf-8 -*-
"""
JSON-RPC over WebSocket 持久连接

文件功能:
    - 维护到单个远端节点的一条 WebSocket 连接，负责建立连接、请求/响应关联、超时与断线重连。
    - 重连使用指数退避 + 随机抖动，连接成功后退避时间复位。

公开接口:
    - 类 Backoff: 重连退避计算
        - 方法: next_delay() -> float
        - 方法: reset()
    - 类 RpcConnection:
        - 方法: connect(on_open, on_close, on_error)
        - 方法: call(method, params=None, timeout=None) (协程)
        - 方法: disconnect()
        - 方法: sweep_stale_requests(max_age=None, now=None) -> int
        - 属性: is_connected / pending_count

内部方法:
    - _run(): 连接任务主循环（连接 -> 读消息 -> 断开 -> 退避 -> 重连）
    - _handle_message(): 按 id 将响应分发给挂起的请求
"""

from __future__ import annotations

import asyncio
import itertools
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed as WsConnectionClosed

from .errors import ConnectionClosed, Expired, NotConnected, ProtocolError, RemoteError, RpcTimeout

OpenHandler = Callable[[], None]
CloseHandler = Callable[[int, str], None]
ErrorHandler = Callable[[BaseException], None]
Connector = Callable[[str], Awaitable[Any]]

# RFC 6455: 连接异常断开（未收到 close 帧）
ABNORMAL_CLOSURE = 1006


class Backoff:
    """重连退避：每次失败后翻倍并加上随机抖动，不超过上限"""

    def __init__(
        self,
        base: float = 2.0,
        maximum: float = 30.0,
        jitter: float = 1.0,
        rng: Callable[[], float] = random.random,
    ):
        self.base = base
        self.maximum = maximum
        self.jitter = jitter
        self._rng = rng
        self.current = base

    def next_delay(self) -> float:
        """返回本次应等待的秒数，并推进到下一次的退避值"""
        delay = self.current
        self.current = min(self.current * 2 + self._rng() * self.jitter, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.base


@dataclass
class PendingRequest:
    method: str
    future: asyncio.Future
    created_at: float
    timeout_handle: asyncio.TimerHandle


class RpcConnection:
    """到单个 JSON-RPC WebSocket 端点的持久连接"""

    def __init__(
        self,
        url: str,
        *,
        request_timeout: float = 15.0,
        stale_after: float = 60.0,
        open_timeout: float = 10.0,
        backoff: Optional[Backoff] = None,
        connector: Optional[Connector] = None,
    ):
        self.url = url
        self.request_timeout = request_timeout
        self.stale_after = stale_after
        self.open_timeout = open_timeout
        self.backoff = backoff or Backoff()
        self._connector: Connector = connector or self._open_socket

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._connected = False
        self._connecting = False
        self._should_reconnect = False
        self._silenced = False

        self._on_open: Optional[OpenHandler] = None
        self._on_close: Optional[CloseHandler] = None
        self._on_error: Optional[ErrorHandler] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _open_socket(self, url: str) -> Any:
        return await websockets.connect(url, open_timeout=self.open_timeout, max_size=None)

    def connect(
        self,
        on_open: Optional[OpenHandler] = None,
        on_close: Optional[CloseHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        """
        启动连接任务。正在连接或已连接时调用为空操作；
        处于退避等待时调用会立即发起下一次连接。
        """
        if self._connecting or self._connected:
            logger.debug(f"忽略重复连接请求: {self.url} 正在连接或已连接")
            return

        self._on_open, self._on_close, self._on_error = on_open, on_close, on_error
        self._should_reconnect = True
        self._silenced = False

        if self._task is not None and not self._task.done():
            self._wake.set()
            return
        self._connecting = True
        self._task = asyncio.get_running_loop().create_task(self._run())

    def disconnect(self) -> None:
        """停止重连、关闭连接并使所有挂起请求以 ConnectionClosed 失败，此后不再触发回调"""
        self._should_reconnect = False
        self._silenced = True
        self._connected = False
        self._connecting = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._fail_pending()

    async def call(self, method: str, params: Optional[Sequence[Any]] = None, timeout: Optional[float] = None) -> Any:
        """
        发送一次 JSON-RPC 调用并等待结果。

        :raises NotConnected: 当前没有可用连接
        :raises RpcTimeout: 超时未收到响应
        :raises RemoteError: 远端返回 error
        :raises ProtocolError: 响应结构不合法
        :raises ConnectionClosed: 请求完成前连接关闭
        """
        ws = self._ws
        if not self._connected or ws is None:
            raise NotConnected(self.url)

        timeout = self.request_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future = loop.create_future()
        handle = loop.call_later(timeout, self._expire_on_timeout, request_id, timeout)
        self._pending[request_id] = PendingRequest(method, future, time.monotonic(), handle)

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params or [])}
        try:
            await ws.send(json.dumps(payload))
            return await future
        except (WsConnectionClosed, OSError) as e:
            raise ConnectionClosed(f"发送 {method} 失败: {e}") from e
        finally:
            self._release(request_id)

    def sweep_stale_requests(self, max_age: Optional[float] = None, now: Optional[float] = None) -> int:
        """回收挂起时间超过上限的请求（计时器泄漏的兜底），返回回收数量"""
        max_age = self.stale_after if max_age is None else max_age
        now = time.monotonic() if now is None else now
        removed = 0
        for request_id, pending in list(self._pending.items()):
            age = now - pending.created_at
            if age <= max_age:
                continue
            logger.warning(f"清理过期 RPC 请求 {request_id} ({pending.method}), 已挂起 {int(age * 1000)}ms")
            self._pending.pop(request_id, None)
            pending.timeout_handle.cancel()
            if not pending.future.done():
                pending.future.set_exception(Expired(request_id, age))
            removed += 1
        return removed

    async def _run(self) -> None:
        while self._should_reconnect:
            self._connecting = True
            try:
                ws = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self._connecting = False
                logger.warning(f"连接 {self.url} 失败: {e}")
                self._fire(self._on_error, e)
                self._fire(self._on_close, ABNORMAL_CLOSURE, "")
            else:
                self._connecting = False
                await self._serve(ws)

            if not self._should_reconnect:
                break
            delay = self.backoff.next_delay()
            logger.info(f"{delay:.1f}s 后重连 {self.url}")
            await self._wait_before_retry(delay)
        self._connecting = False

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        self._connected = True
        self.backoff.reset()
        logger.info(f"已连接 {self.url}")
        self._fire(self._on_open)

        try:
            async for raw in ws:
                self._handle_message(raw)
        except WsConnectionClosed:
            pass
        except Exception as e:  # noqa: BLE001
            logger.warning(f"读取 {self.url} 消息失败: {e}")
            self._fire(self._on_error, e)
        finally:
            self._connected = False
            self._ws = None
            self._fail_pending()
            try:
                await ws.close()
            except Exception:  # noqa: BLE001
                pass

        code = getattr(ws, "close_code", None) or ABNORMAL_CLOSURE
        reason = getattr(ws, "close_reason", None) or ""
        logger.info(f"连接 {self.url} 已关闭: code={code} reason={reason!r}")
        self._fire(self._on_close, code, reason)

    async def _wait_before_retry(self, delay: float) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _handle_message(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"无法解析来自 {self.url} 的消息: {raw!r:.200}")
            return

        for item in msg if isinstance(msg, list) else [msg]:
            if not isinstance(item, dict):
                continue
            request_id = item.get("id")
            # 订阅推送等没有数字 id 的消息不属于任何挂起请求
            if isinstance(request_id, bool) or not isinstance(request_id, int):
                continue
            pending = self._pending.pop(request_id, None)
            if pending is None:
                continue
            pending.timeout_handle.cancel()
            if pending.future.done():
                continue
            if "result" in item:
                pending.future.set_result(item["result"])
            elif "error" in item:
                pending.future.set_exception(_remote_error(item["error"]))
            else:
                pending.future.set_exception(ProtocolError("Invalid RPC response"))

    def _expire_on_timeout(self, request_id: int, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(RpcTimeout(pending.method, timeout))

    def _release(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timeout_handle.cancel()

    def _fail_pending(self) -> None:
        pending_items, self._pending = list(self._pending.values()), {}
        for pending in pending_items:
            pending.timeout_handle.cancel()
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosed())

    def _fire(self, handler: Optional[Callable[..., None]], *args: Any) -> None:
        if self._silenced or handler is None:
            return
        try:
            handler(*args)
        except Exception:  # noqa: BLE001
            logger.exception(f"连接 {self.url} 的回调执行失败")


def _remote_error(error: Any) -> RemoteError:
    if isinstance(error, dict):
        return RemoteError(error.get("code"), str(error.get("message") or "RPC error"), error.get("data"))
    return RemoteError(None, str(error or "RPC error"))
