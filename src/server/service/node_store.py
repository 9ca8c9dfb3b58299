# -*- coding: utf-8 -*-
"""
订阅列表持久化服务

文件功能:
    - 以 JSON 文件保存当前订阅的节点列表（仅保存重连所需参数）。
    - 写入采用“先写临时文件再重命名”的方式，避免中途失败留下半个文件。

公开接口:
    - 类 NodeStore
        - 方法: load() -> List[PersistedNode]
        - 方法: save(nodes) -> tuple[bool, str]

文件格式:
    {"nodes": [{"name": "...", "host": "...", "rpcPort": 8545, "wsRpcPort": 8546}]}
    读取时同样接受顶层直接为列表的旧格式。
"""

import json
import os
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

from loguru import logger

from config import DEFAULT_RPC_PORT, DEFAULT_WS_RPC_PORT
from monitoring.schemas import PersistedNode
from service.paths import ensure_dir, get_nodes_db_path


def _port(value: Any, default: int) -> int:
    if not value:
        return default
    try:
        port = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return port if 0 < port < 65536 else default


def _parse_node(item: Any) -> Optional[PersistedNode]:
    if not isinstance(item, dict):
        return None
    name = str(item.get("name") or "")
    host = str(item.get("host") or "")
    if not name or not host:
        return None
    return PersistedNode(
        name=name,
        host=host,
        rpc_port=_port(item.get("rpcPort", item.get("rpc_port")), DEFAULT_RPC_PORT),
        ws_rpc_port=_port(item.get("wsRpcPort", item.get("ws_rpc_port")), DEFAULT_WS_RPC_PORT),
    )


class NodeStore:
    """节点订阅列表的文件存储"""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else get_nodes_db_path()

    def load(self) -> List[PersistedNode]:
        """读取订阅列表；文件不存在或内容损坏时返回空列表"""
        try:
            if not self.path.exists():
                return []
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"读取订阅列表 {self.path} 失败，以空列表启动: {e}")
            return []

        items = raw.get("nodes") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            logger.warning(f"订阅列表 {self.path} 格式无法识别，已忽略")
            return []

        nodes = []
        for item in items:
            try:
                node = _parse_node(item)
            except (TypeError, ValueError, OverflowError) as e:
                logger.warning(f"忽略无效的订阅条目 {item!r:.200}: {e}")
                continue
            if node is not None:
                nodes.append(node)
        return nodes

    def save(self, nodes: Iterable[PersistedNode]) -> tuple[bool, str]:
        nodes = list(nodes)
        payload = {"nodes": [n.model_dump(by_alias=True) for n in nodes]}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            ensure_dir(self.path.parent)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"写入订阅列表 {self.path} 失败: {e}")
            return False, f"写入订阅列表失败: {e}"
        return True, f"已保存 {len(nodes)} 个节点"
