# -*- coding: utf-8 -*-

"""
测试十六进制解析与区块号转换
"""

from rpc_client import parse_hex_int, to_hex_block


def test_parse_hex_int_accepts_rpc_quantities():
    assert parse_hex_int("0x0") == 0
    assert parse_hex_int("0x1b4") == 436
    assert parse_hex_int("0X10") == 16
    assert parse_hex_int(" 0xff ") == 255
    assert parse_hex_int(42) == 42


def test_parse_hex_int_fails_soft():
    for value in (None, "", "0x", "0xzz", "latest", True, float("nan"), float("inf"), {"x": 1}, []):
        assert parse_hex_int(value) is None


def test_to_hex_block():
    assert to_hex_block(0) == "0x0"
    assert to_hex_block(101) == "0x65"
