# -*- coding: utf-8 -*-

"""
通用数据模型（schemas）

文件功能:
    - 定义节点监控相关的 pydantic 模型。
    - NodeSnapshot 为不可变模型：监控器每次变更都生成新对象，监听者拿到的对象不会被并发修改。

公开接口:
    - 类 SyncProgress(BaseModel): eth_syncing 返回的同步进度。
    - 类 NodeSnapshot(BaseModel): 单个节点对外可见的状态。
    - 类 PersistedNode(BaseModel): 持久化的订阅信息（仅保留重连参数）。

公开接口的 pydantic 模型:
    - SyncProgress
    - NodeSnapshot
    - PersistedNode
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SyncProgress(BaseModel):
    """同步进度，字段保持节点返回的十六进制字符串"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow")

    starting_block: Optional[str] = None
    current_block: Optional[str] = None
    highest_block: Optional[str] = None


class NodeSnapshot(BaseModel):
    """节点状态快照"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    host: str
    rpc_port: int
    ws_rpc_port: int
    connected: bool = False
    last_error: Optional[str] = None
    latest_block: Optional[int] = None
    peer_count: Optional[int] = None
    client_version: Optional[str] = None
    syncing: Union[bool, SyncProgress, None] = None
    mining: Optional[bool] = None
    latency_ms: Optional[int] = None
    gas_price_gwei: Optional[float] = None
    gas_limit: Optional[int] = None
    gas_used: Optional[int] = None
    block_txs: Optional[int] = None
    block_time_ms: Optional[int] = None
    block_time_avg_ms: Optional[float] = None
    block_propagation_ms: Optional[int] = None
    last_updated: Optional[int] = None
    last_disconnected: Optional[int] = None
    uptime_ms: Optional[int] = None

    def evolve(self, **changes: Any) -> "NodeSnapshot":
        """返回应用了变更的新快照"""
        return self.model_copy(update=changes)

    def to_wire(self) -> Dict[str, Any]:
        """推送/接口使用的 JSON 形式：camelCase 键，省略未设置的字段"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PersistedNode(BaseModel):
    """持久化的节点订阅"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    host: str
    rpc_port: int = 8545
    ws_rpc_port: int = 8546
