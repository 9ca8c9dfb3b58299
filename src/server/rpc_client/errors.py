# -*- coding: utf-8 -*-
"""
RPC 调用错误类型

文件功能:
    - 定义 RpcConnection.call() 可能抛出的全部异常。
    - 所有异常均为单次调用/单条连接级别的失败，不会导致进程退出。

公开接口:
    - RpcError: 基类
    - NotConnected / RpcTimeout / RemoteError / ProtocolError / ConnectionClosed / Expired
"""

from typing import Any, Optional


class RpcError(Exception):
    """所有 RPC 失败的基类"""


class NotConnected(RpcError):
    """调用时没有可用的连接"""

    def __init__(self, url: str):
        super().__init__(f"WS not connected: {url}")
        self.url = url


class RpcTimeout(RpcError):
    """在超时时间内没有收到匹配的响应"""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"RPC request timeout for method: {method} ({int(timeout * 1000)}ms)")
        self.method = method
        self.timeout = timeout


class RemoteError(RpcError):
    """远端返回了 JSON-RPC error 载荷"""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(message or "RPC error")
        self.code = code
        self.data = data


class ProtocolError(RpcError):
    """响应结构不合法（既没有 result 也没有 error）"""


class ConnectionClosed(RpcError):
    """连接在请求完成前关闭"""

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class Expired(RpcError):
    """请求挂起时间超过安全上限，被清理任务回收"""

    def __init__(self, request_id: int, age: float):
        super().__init__(f"Request cleanup - too old (id={request_id}, age={int(age * 1000)}ms)")
        self.request_id = request_id
        self.age = age
