# -*- coding: utf-8 -*-
"""
JSON-RPC WebSocket 客户端

负责与远端区块链节点保持持久连接，并提供带超时与重连的请求/响应接口。

公开接口:
    - 类 RpcConnection: connect / call / disconnect / sweep_stale_requests
    - 类 Backoff: 重连退避
    - 异常: RpcError 及其子类
    - 函数: parse_hex_int / to_hex_block / now_ms
"""
from .connection import Backoff, RpcConnection
from .errors import (
    ConnectionClosed,
    Expired,
    NotConnected,
    ProtocolError,
    RemoteError,
    RpcError,
    RpcTimeout,
)
from .utils import now_ms, parse_hex_int, to_hex_block

__all__ = [
    "Backoff",
    "RpcConnection",
    "RpcError",
    "NotConnected",
    "RpcTimeout",
    "RemoteError",
    "ProtocolError",
    "ConnectionClosed",
    "Expired",
    "now_ms",
    "parse_hex_int",
    "to_hex_block",
]
