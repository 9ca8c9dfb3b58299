# -*- coding: utf-8 -*-
"""
统一的路径管理服务。

文件功能:
    - 集中管理服务运行时使用的订阅列表文件路径。

公开接口:
    - get_nodes_db_path(): 获取订阅列表持久化文件路径。
    - ensure_dir(path): 确保目录存在。
"""

from pathlib import Path

from config import NODES_DB_PATH


def get_nodes_db_path() -> Path:
    """获取订阅列表文件路径，默认位于数据目录 (DATA_DIR) 下的 nodes.json。"""
    return Path(NODES_DB_PATH)


def ensure_dir(path: Path) -> Path:
    """确保目录存在并返回该目录。"""
    path.mkdir(parents=True, exist_ok=True)
    return path
