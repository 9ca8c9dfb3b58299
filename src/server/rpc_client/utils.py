# -*- coding: utf-8 -*-
"""
RPC 客户端的工具函数
"""
import math
import time
from typing import Any, Optional


def now_ms() -> int:
    """当前时间的毫秒级时间戳"""
    return int(time.time() * 1000)


def parse_hex_int(value: Any) -> Optional[int]:
    """
    解析 JSON-RPC 返回的十六进制数值 (如 "0x1b4")。

    无法解析时返回 None，而不是抛出异常，调用方据此保留旧值。
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text, 16)
    except ValueError:
        return None


def to_hex_block(number: int) -> str:
    """区块号转换为 JSON-RPC 使用的十六进制字符串"""
    return hex(number)
