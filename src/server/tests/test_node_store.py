# -*- coding: utf-8 -*-

"""
测试订阅列表的文件存储：
 - 文件缺失/损坏时返回空列表
 - 兼容 {"nodes": [...]} 与顶层列表两种格式，端口缺省值与无效条目过滤
 - 原子写入后可完整读回
"""

import json
import os
import tempfile
from pathlib import Path

from monitoring.schemas import PersistedNode
from service.node_store import NodeStore


def test_missing_file_loads_empty():
    with tempfile.TemporaryDirectory() as tmp:
        assert NodeStore(Path(tmp) / "nodes.json").load() == []


def test_corrupt_file_loads_empty():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nodes.json"
        path.write_text("{not json", encoding="utf-8")
        assert NodeStore(path).load() == []

        path.write_text(json.dumps({"nodes": "nope"}), encoding="utf-8")
        assert NodeStore(path).load() == []


def test_load_accepts_both_layouts_and_filters_entries():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nodes.json"
        entries = [
            {"name": "a", "host": "10.0.0.1", "rpcPort": 18545, "wsRpcPort": 18546},
            {"name": "b", "host": "10.0.0.2"},
            {"name": "", "host": "10.0.0.3"},
            {"name": "d"},
            "garbage",
            {"name": "e", "host": "10.0.0.5", "rpcPort": "oops", "wsRpcPort": 0},
        ]
        expected = [
            PersistedNode(name="a", host="10.0.0.1", rpc_port=18545, ws_rpc_port=18546),
            PersistedNode(name="b", host="10.0.0.2", rpc_port=8545, ws_rpc_port=8546),
            PersistedNode(name="e", host="10.0.0.5", rpc_port=8545, ws_rpc_port=8546),
        ]

        path.write_text(json.dumps({"nodes": entries}), encoding="utf-8")
        assert NodeStore(path).load() == expected

        path.write_text(json.dumps(entries), encoding="utf-8")
        assert NodeStore(path).load() == expected


def test_save_writes_atomically_and_round_trips():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nested" / "nodes.json"
        store = NodeStore(path)
        nodes = [
            PersistedNode(name="a", host="10.0.0.1"),
            PersistedNode(name="b", host="wss://rpc.example.org", rpc_port=443, ws_rpc_port=443),
        ]

        ok, message = store.save(nodes)
        assert ok is True, message
        assert not os.path.exists(str(path) + ".tmp")

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert raw["nodes"][1] == {"name": "b", "host": "wss://rpc.example.org", "rpcPort": 443, "wsRpcPort": 443}
        assert store.load() == nodes


def test_save_reports_failure(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        store = NodeStore(Path(tmp) / "nodes.json")

        def fail(*args, **kwargs):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", fail)
        ok, message = store.save([PersistedNode(name="a", host="h")])
        assert ok is False
        assert "read-only" in message
        assert store.load() == []


def test_overflowing_ports_fall_back_to_defaults():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nodes.json"
        path.write_text(
            '{"nodes": ['
            '{"name": "a", "host": "h", "rpcPort": 1e999, "wsRpcPort": Infinity},'
            '{"name": "b", "host": "h", "rpcPort": NaN, "wsRpcPort": 70000},'
            '{"name": "c", "host": "h", "rpcPort": 9000}'
            ']}',
            encoding="utf-8",
        )
        assert NodeStore(path).load() == [
            PersistedNode(name="a", host="h", rpc_port=8545, ws_rpc_port=8546),
            PersistedNode(name="b", host="h", rpc_port=8545, ws_rpc_port=8546),
            PersistedNode(name="c", host="h", rpc_port=9000, ws_rpc_port=8546),
        ]


def test_unreadable_path_loads_empty(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "nodes.json"

        def denied(self):
            raise PermissionError("permission denied")

        monkeypatch.setattr(Path, "exists", denied)
        assert NodeStore(path).load() == []
