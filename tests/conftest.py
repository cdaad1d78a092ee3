"""Shared module descriptions for the symharness tests."""

from __future__ import annotations

import copy

import pytest

from symharness.config import HarnessConfig
from symharness.ir.loader import module_from_dict


ASSERT_FAIL = {
    "name": "__assert_fail",
    "type": "void (i8*, i8*, i32, i8*)",
    "attributes": ["noreturn"],
}

CALL_ASSERT = {
    "op": "call", "callee": "@__assert_fail",
    "operands": ["i8* null", "i8* null", "i32 0", "i8* null"],
}

LOCK = {
    "name": "lock", "type": "void ()",
    "blocks": [{"label": "entry", "instructions": [
        {"op": "load", "name": "v", "operands": ["@__ai_state_lock"]},
        {"op": "add", "name": "inc", "operands": ["%v", "i32 1"]},
        {"op": "store", "operands": ["%inc", "@__ai_state_lock"]},
        {"op": "ret"},
    ]}],
}

# int target(struct dev *dev, int flags): asserts on flags == 0, otherwise takes the lock
TARGET = {
    "name": "target", "type": "i32 (%struct.dev*, i32)", "params": ["dev", "flags"],
    "blocks": [
        {"label": "entry", "instructions": [
            {"op": "icmp", "name": "bad", "pred": "eq", "operands": ["%flags", "i32 0"]},
            {"op": "condbr", "operands": ["%bad"], "targets": ["fail", "ok"]},
        ]},
        {"label": "fail", "instructions": [CALL_ASSERT, {"op": "unreachable"}]},
        {"label": "ok", "instructions": [
            {"op": "call", "callee": "@lock", "operands": []},
            {"op": "ret", "operands": ["i32 0"], "loc": ["lock.c", 42, 3]},
        ]},
    ],
}

# void other(char *buf): always asserts
OTHER = {
    "name": "other", "type": "void (i8*)", "params": ["buf"],
    "blocks": [{"label": "entry", "instructions": [CALL_ASSERT, {"op": "unreachable"}]}],
}

# int wrapper(int x): reaches the assertion only through target
WRAPPER = {
    "name": "wrapper", "type": "i32 (i32)", "params": ["x"],
    "blocks": [{"label": "entry", "instructions": [
        {"op": "call", "name": "r", "callee": "@target", "operands": ["%struct.dev* null", "%x"]},
        {"op": "ret", "operands": ["%r"]},
    ]}],
}


def lock_module_dict(state_init: int = 0, candidates=("target",), extra_functions=()):
    data = {
        "module": "lock.c",
        "structs": {"struct.dev": ["i32", "i64", "i8*"], "struct.handle": None},
        "globals": [
            {"name": "__ai_state_lock", "type": "i32", "init": state_init},
            {"name": "jiffies", "type": "i64"},
        ],
        "functions": [ASSERT_FAIL, LOCK, TARGET, OTHER, WRAPPER, *extra_functions],
    }
    if candidates is not None:
        data["initial_functions"] = list(candidates)
    return copy.deepcopy(data)


@pytest.fixture
def lock_dict():
    return lock_module_dict


@pytest.fixture
def lock_module():
    def make(**kwargs):
        return module_from_dict(lock_module_dict(**kwargs))
    return make


@pytest.fixture
def config(tmp_path):
    return HarnessConfig(output_dir=str(tmp_path))

