# -*- coding: utf-8 -*-
"""
服务配置

所有配置项均可通过同名环境变量覆盖。时间类配置以毫秒读入，换算为秒供 asyncio 使用。
"""

import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_seconds(name: str, default_ms: int) -> float:
    return _env_int(name, default_ms) / 1000


HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8081)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))
NODES_DB_PATH = os.getenv("NODES_DB_PATH", os.path.join(DATA_DIR, "nodes.json"))

DEFAULT_RPC_PORT = 8545
DEFAULT_WS_RPC_PORT = 8546

# 离线节点清理
OFFLINE_UNSUBSCRIBE_SECONDS = _env_seconds("OFFLINE_UNSUBSCRIBE_MS", 10 * 60 * 1000)
OFFLINE_SWEEP_INTERVAL_SECONDS = _env_seconds("OFFLINE_SWEEP_INTERVAL_MS", 30 * 1000)

# 挂起请求兜底清理
STALE_REQUEST_SECONDS = _env_seconds("STALE_REQUEST_MS", 60 * 1000)
STALE_REQUEST_SWEEP_SECONDS = _env_seconds("STALE_REQUEST_SWEEP_MS", 5 * 60 * 1000)

# 轮询与 RPC
POLL_INTERVAL_SECONDS = _env_seconds("POLL_INTERVAL_MS", 3000)
RPC_TIMEOUT_SECONDS = _env_seconds("RPC_TIMEOUT_MS", 15000)
RECONNECT_BASE_SECONDS = _env_seconds("RECONNECT_BASE_MS", 2000)
RECONNECT_MAX_SECONDS = _env_seconds("RECONNECT_MAX_MS", 30000)
RECONNECT_JITTER_SECONDS = _env_seconds("RECONNECT_JITTER_MS", 1000)
REPLACE_GRACE_SECONDS = _env_seconds("REPLACE_GRACE_MS", 100)
BLOCK_TIME_WINDOW = _env_int("BLOCK_TIME_WINDOW", 10)

# 历史接口
HISTORY_DEFAULT_COUNT = 60
HISTORY_MAX_COUNT = 200
HISTORY_BATCH_SIZE = 10
