# -*- coding: utf-8 -*-
"""
后端 API 服务器

文件功能:
    - 提供基于 FastAPI 的节点监控服务：订阅远端节点、查询实时状态与最近区块历史。
    - 通过 WebSocket 向前端推送完整快照与单节点增量更新。

公开接口:
    - GET  /health: 存活检查。
    - GET  /nodes: 获取所有节点快照（按连接状态与延迟排序）。
    - POST /subscribe: 订阅（或替换）一个节点，未提供 host 时使用请求方地址。
    - POST /unsubscribe: 取消订阅。
    - GET  /history: 最近 count 个区块的图表序列。
    - WS   /ws: 连接后先推送 snapshot，之后推送 update；离线清理后再推送一次 snapshot。
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from config import (
    DEFAULT_RPC_PORT,
    DEFAULT_WS_RPC_PORT,
    HISTORY_DEFAULT_COUNT,
    HISTORY_MAX_COUNT,
    HOST,
    LOG_LEVEL,
    PORT,
)
from monitoring import Registry, Sweeper
from rpc_client import RpcError
from service.broadcaster import UpdateHub
from service.history import HistorySeries, HistoryUnavailable, build_history
from service.node_store import NodeStore

NAME_PATTERN = r"^[A-Za-z0-9._-]{1,50}$"

# --- 应用和状态管理 ---


class AppState:
    """管理应用程序的全局状态"""
    def __init__(
        self,
        store: Optional[NodeStore] = None,
        registry: Optional[Registry] = None,
        hub: Optional[UpdateHub] = None,
    ):
        self.store = store if store is not None else NodeStore()
        self.registry = registry if registry is not None else Registry(store=self.store)
        self.hub = hub if hub is not None else UpdateHub()
        self.registry.add_listener(self.hub.publish_update)
        self.sweeper = Sweeper(self.registry, on_removed=self._on_swept)

    def _on_swept(self, names: List[str]) -> None:
        logger.info(f"离线清理移除了 {len(names)} 个节点，推送完整快照")
        self.hub.publish_snapshot(self.registry.list())


state = AppState()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    restored = await state.registry.initialize()
    logger.info(f"服务启动，已恢复 {restored} 个节点")
    state.sweeper.start()
    try:
        yield
    finally:
        await state.sweeper.stop()
        state.registry.stop_all()
        logger.info("服务已关闭")


app = FastAPI(
    title="区块链节点监控后端",
    description="订阅远端 JSON-RPC 节点并推送实时状态",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Pydantic 模型 ---


class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(pattern=NAME_PATTERN)
    host: Optional[str] = None
    port: int = Field(DEFAULT_RPC_PORT, ge=1, le=65535)
    ws_rpc_port: int = Field(DEFAULT_WS_RPC_PORT, ge=1, le=65535)

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if len(value) > 255 or any(ch.isspace() for ch in value):
            raise ValueError("host 不合法")
        return value


class UnsubscribeRequest(BaseModel):
    name: str = Field(pattern=NAME_PATTERN)


def _client_host(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    if request.client is not None:
        return request.client.host
    return None


# --- API Endpoints ---


@app.get("/health", summary="存活检查")
def health():
    return {"ok": True}


@app.get("/nodes", summary="获取所有节点快照")
def list_nodes():
    return {"nodes": [s.to_wire() for s in state.registry.list()]}


@app.post("/subscribe", response_model=ApiResponse, summary="订阅节点")
async def subscribe(body: SubscribeRequest, request: Request):
    host = body.host or _client_host(request)
    if not host:
        return JSONResponse(
            status_code=400,
            content=ApiResponse(success=False, message="无法确定节点地址").model_dump(),
        )
    await state.registry.upsert(body.name, host, body.port, body.ws_rpc_port)
    return ApiResponse(
        success=True,
        message=f"已订阅节点 {body.name}",
        data={"name": body.name, "host": host, "rpcPort": body.port, "wsRpcPort": body.ws_rpc_port},
    )


@app.post("/unsubscribe", response_model=ApiResponse, summary="取消订阅节点")
async def unsubscribe(body: UnsubscribeRequest):
    removed = await state.registry.remove(body.name)
    message = f"已取消订阅节点 {body.name}" if removed else f"节点 {body.name} 未订阅"
    return ApiResponse(success=True, message=message, data={"removed": removed})


@app.get("/history", summary="最近区块历史")
async def history(count: int = Query(HISTORY_DEFAULT_COUNT, ge=1, le=HISTORY_MAX_COUNT)):
    empty = {"labels": [], "series": HistorySeries().model_dump()}
    try:
        result = await build_history(state.registry, count)
    except HistoryUnavailable as e:
        return JSONResponse(status_code=503, content={"ok": False, "error": str(e), **empty})
    except RpcError as e:
        logger.warning(f"查询区块历史失败: {e}")
        return JSONResponse(status_code=502, content={"ok": False, "error": str(e), **empty})
    return {"ok": True, **result.model_dump()}


# --- WebSocket 推送 ---


def _log_pump_exit(task: "asyncio.Task[None]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"推送连接结束: {task.exception()}")


@app.websocket("/ws")
async def updates_websocket(websocket: WebSocket) -> None:
    await websocket.accept()
    channel = state.hub.attach(state.registry.list())
    sender = asyncio.create_task(state.hub.pump(channel, websocket.send_json))
    sender.add_done_callback(_log_pump_exit)
    try:
        # 客户端消息不需要处理，只用于感知断开
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        state.hub.detach(channel)
        sender.cancel()


if __name__ == "__main__":
    import uvicorn

    logger.remove()
    logger.add(sys.stderr, level=LOG_LEVEL)
    uvicorn.run(app, host=HOST, port=PORT, reload=False)
