# -*- coding: utf-8 -*-
"""
最近区块历史

文件功能:
    - 选取延迟最低的已连接节点，批量拉取最近 count 个区块，生成前端图表使用的序列。

公开接口:
    - build_history(registry, count, batch_size) (协程) -> HistoryResult
    - 异常 HistoryUnavailable: 当前没有可用的已连接节点

公开接口的 pydantic 模型:
    - HistorySeries: bt 出块间隔(ms) / bp 定时交易数 / tx 交易数 / gs gas 使用量
    - HistoryResult: labels / series / best

说明:
    - 首个区块以及紧跟在缺失区块之后的区块没有可比较的前一个区块，各序列记为 null。
    - 查询最新区块号失败时异常直接抛出（RpcError），由调用方决定响应。
"""

import asyncio
from typing import Any, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from config import HISTORY_BATCH_SIZE
from rpc_client import ProtocolError, RpcError, parse_hex_int, to_hex_block


class HistoryUnavailable(Exception):
    """没有可用于查询历史的已连接节点"""


class HistorySeries(BaseModel):
    bt: List[Optional[int]] = Field(default_factory=list)
    bp: List[Optional[int]] = Field(default_factory=list)
    tx: List[Optional[int]] = Field(default_factory=list)
    gs: List[Optional[int]] = Field(default_factory=list)


class HistoryResult(BaseModel):
    labels: List[str] = Field(default_factory=list)
    series: HistorySeries = Field(default_factory=HistorySeries)
    best: Optional[int] = None


async def _fetch_block(connection: Any, number: int) -> Optional[dict]:
    try:
        block = await connection.call("eth_getBlockByNumber", [to_hex_block(number), False])
    except RpcError as e:
        logger.debug(f"获取区块 {number} 失败: {e}")
        return None
    return block if isinstance(block, dict) else None


def _list_len(value: Any) -> Optional[int]:
    return len(value) if isinstance(value, list) else None


async def build_history(registry: Any, count: int, batch_size: int = HISTORY_BATCH_SIZE) -> HistoryResult:
    monitor = registry.get_lowest_latency_connected()
    if monitor is None:
        raise HistoryUnavailable("No connected nodes available for history data")
    connection = monitor.connection
    if not connection.is_connected:
        raise HistoryUnavailable("Selected node RPC client is not connected")

    best = parse_hex_int(await connection.call("eth_blockNumber"))
    if best is None:
        raise ProtocolError("Invalid best block")

    numbers = list(range(max(0, best - count), best + 1))
    blocks: List[Optional[dict]] = []
    for start in range(0, len(numbers), batch_size):
        batch = numbers[start:start + batch_size]
        blocks.extend(await asyncio.gather(*(_fetch_block(connection, n) for n in batch)))

    result = HistoryResult(best=best)
    series = result.series
    previous: Optional[dict] = None
    for block in blocks:
        if block is None:
            result.labels.append("")
            values = (None, None, None, None)
        else:
            number = parse_hex_int(block.get("number"))
            result.labels.append(f"#{number}" if number is not None else "")
            if previous is None:
                values = (None, None, None, None)
            else:
                ts = parse_hex_int(block.get("timestamp"))
                ts_prev = parse_hex_int(previous.get("timestamp"))
                interval = max(0, (ts - ts_prev) * 1000) if ts is not None and ts_prev is not None else None
                values = (
                    interval,
                    _list_len(block.get("cronTransactions")),
                    _list_len(block.get("transactions")),
                    parse_hex_int(block.get("gasUsed")),
                )
        series.bt.append(values[0])
        series.bp.append(values[1])
        series.tx.append(values[2])
        series.gs.append(values[3])
        previous = block
    return result
