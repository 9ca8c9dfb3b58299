# -*- coding: utf-8 -*-
"""
节点监控核心

公开接口:
    - 类 NodeMonitor: 单节点轮询与快照
    - 类 Registry: 监控器集合、监听分发与持久化
    - 类 Sweeper: 离线节点与过期请求的定期清理
    - 模型: NodeSnapshot / SyncProgress / PersistedNode
"""
from .block_times import BlockTimeWindow
from .node_monitor import NodeMonitor, resolve_ws_url
from .registry import Registry
from .schemas import NodeSnapshot, PersistedNode, SyncProgress
from .sweeper import Sweeper

__all__ = [
    "BlockTimeWindow",
    "NodeMonitor",
    "resolve_ws_url",
    "Registry",
    "Sweeper",
    "NodeSnapshot",
    "PersistedNode",
    "SyncProgress",
]
