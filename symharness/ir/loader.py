"""Load a Module from its JSON description.

The description mirrors the textual shape of LLVM modules:

    {
      "module": "lock.c",
      "structs": {"struct.dev": ["i32", "i8*"], "struct.opaque": null},
      "globals": [
        {"name": "__ai_state_lock", "type": "i32", "init": 0},
        {"name": "jiffies", "type": "i64"}
      ],
      "functions": [
        {"name": "__assert_fail", "type": "void (i8*, i8*, i32, i8*)",
         "attributes": ["noreturn"]},
        {"name": "probe", "type": "i32 (%struct.dev*, i32)", "params": ["dev", "flags"],
         "blocks": [
           {"label": "entry", "instructions": [
             {"op": "load", "name": "v", "operands": ["@__ai_state_lock"]},
             {"op": "ret", "operands": ["i32 0"]}
           ]}
         ]}
      ],
      "initial_functions": ["probe"]
    }

Operands are spelled ``%local``, ``@global`` or ``<type> <integer|null>``.
Values must be defined before they are used, in listing order.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from symharness.errors import LoadError, SignatureError
from symharness.ir.builder import IRBuilder
from symharness.ir.module import (
    Module, Function, Value, Const, CString, ConstArray, GlobalRef, DebugLoc,
    zero_value,
)
from symharness.ir.types import (
    Type, IntType, PointerType, ArrayType, FunctionType, TypeSyntaxError, parse_type,
)

logger = logging.getLogger(__name__)


def load_module(path: str, state_prefix: str = "__ai_state_") -> Module:
    """Read a JSON module description from ``path``."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise LoadError(f"'{path}' is not valid JSON", {"reason": str(e)})
    module = module_from_dict(data, state_prefix=state_prefix)
    logger.debug("loaded module '%s' from %s", module.name, path)
    return module


def module_from_dict(data: dict[str, Any], state_prefix: str = "__ai_state_") -> Module:
    try:
        return _ModuleLoader(data, state_prefix).load()
    except TypeSyntaxError as e:
        raise LoadError(str(e))
    except SignatureError as e:
        raise LoadError(f"ill-typed call: {e.error.message}", e.error.details)
    except (KeyError, TypeError, ValueError) as e:
        raise LoadError(f"malformed module description: {e}")


class _ModuleLoader:
    def __init__(self, data: dict[str, Any], state_prefix: str):
        if "module" not in data:
            raise LoadError("module description has no 'module' name")
        self.data = data
        self.module = Module(data["module"], state_prefix=state_prefix)

    def type(self, text: str) -> Type:
        return parse_type(text, self.module.structs)

    def load(self) -> Module:
        module = self.module
        structs = self.data.get("structs", {})
        # register names first so bodies may refer to each other
        for name in structs:
            module.add_struct(name, None)
        for name, fields in structs.items():
            if fields is not None:
                module.add_struct(name, tuple(self.type(t) for t in fields))

        functions: list[tuple[Function, dict]] = []
        for fdesc in self.data.get("functions", []):
            fn_type = self.type(fdesc["type"])
            if not isinstance(fn_type, FunctionType):
                raise LoadError(f"function '{fdesc['name']}' has non-function type '{fn_type}'")
            fn = module.add_function(fdesc["name"], fn_type, fdesc.get("params"))
            fn.attributes.update(fdesc.get("attributes", []))
            functions.append((fn, fdesc))

        for gdesc in self.data.get("globals", []):
            value_type = self.type(gdesc["type"])
            module.add_global(gdesc["name"], value_type,
                              constant=bool(gdesc.get("constant", False)),
                              linkage=gdesc.get("linkage", "external"))
        # initializers may take the address of any global or function
        for gdesc in self.data.get("globals", []):
            if "init" in gdesc:
                gv = module.globals[gdesc["name"]]
                gv.initializer = self.initializer(gdesc["init"], gv.value_type)

        for fn, fdesc in functions:
            if fdesc.get("blocks"):
                _FunctionLoader(self, fn, fdesc["blocks"]).load()

        initial = self.data.get("initial_functions")
        if initial is not None:
            from symharness.analysis.prepare import record_initial_functions
            record_initial_functions(module, initial)
        return module

    def initializer(self, desc: Any, ty: Type) -> Value:
        if desc == "zero":
            return zero_value(ty)
        if isinstance(desc, bool):
            raise LoadError(f"boolean initializer for '{ty}'")
        if isinstance(desc, int):
            if not isinstance(ty, IntType):
                raise LoadError(f"integer initializer for non-integer type '{ty}'")
            return Const(ty, desc)
        if desc is None:
            if not isinstance(ty, PointerType):
                raise LoadError(f"null initializer for non-pointer type '{ty}'")
            return Const(ty, None)
        if isinstance(desc, str) and desc.startswith("@"):
            self.symbol(desc[1:])
            return GlobalRef(desc[1:])
        if isinstance(desc, dict) and "string" in desc:
            value = CString(desc["string"])
            if value.type != ty:
                raise LoadError(f"string initializer of type '{value.type}' for '{ty}'")
            return value
        if isinstance(desc, list):
            if not isinstance(ty, ArrayType) or len(desc) != ty.count:
                raise LoadError(f"array initializer does not fit '{ty}'")
            return ConstArray(ty, tuple(self.initializer(d, ty.element) for d in desc))
        raise LoadError(f"unsupported initializer {desc!r}")

    def symbol(self, name: str) -> None:
        if name not in self.module.globals and self.module.get_function(name) is None:
            raise LoadError(f"unknown symbol '@{name}'")


class _FunctionLoader:
    def __init__(self, parent: _ModuleLoader, fn: Function, blocks: list[dict]):
        self.parent = parent
        self.module = parent.module
        self.fn = fn
        self.blocks_desc = blocks
        self.locals: dict[str, Value] = {
            name: fn.arg(i) for i, name in enumerate(fn.param_names) if name
        }

    def load(self) -> None:
        blocks = {}
        for bdesc in self.blocks_desc:
            label = bdesc["label"]
            if label in blocks:
                raise LoadError(f"duplicate block '{label}' in '{self.fn.name}'")
            blocks[label] = self.module.append_block(self.fn.id, label)
        builder = IRBuilder(self.module)
        for bdesc in self.blocks_desc:
            builder.position_at_end(blocks[bdesc["label"]])
            for idesc in bdesc["instructions"]:
                inst = self.instruction(builder, blocks, idesc)
                if "loc" in idesc:
                    inst.loc = DebugLoc(*idesc["loc"])
                name = idesc.get("name")
                if name:
                    if name in self.locals:
                        raise LoadError(f"'%{name}' redefined in '{self.fn.name}'")
                    self.locals[name] = inst.ref

    def operand(self, text: str) -> Value:
        text = text.strip()
        if text.startswith("%"):
            value = self.locals.get(text[1:])
            if value is None:
                raise LoadError(f"'{text}' used before definition in '{self.fn.name}'")
            return value
        if text.startswith("@"):
            self.parent.symbol(text[1:])
            return GlobalRef(text[1:])
        type_text, _, literal = text.rpartition(" ")
        ty = self.parent.type(type_text)
        if literal == "null":
            return Const(ty, None)
        return Const(ty, int(literal))

    def instruction(self, b: IRBuilder, blocks: dict, desc: dict):
        op = desc["op"]
        name = desc.get("name", "")
        ops = [self.operand(o) for o in desc.get("operands", [])]
        targets = [self.target(blocks, t) for t in desc.get("targets", [])]
        if op == "alloca":
            return b.alloca(self.parent.type(desc["type"]), name=name)
        if op == "load":
            return b.load(ops[0], name=name, volatile=desc.get("volatile", False))
        if op == "store":
            return b.store(ops[0], ops[1], volatile=desc.get("volatile", False))
        if op == "gep":
            return b.gep(ops[0], ops[1], name=name)
        if op in ("bitcast", "zext", "trunc"):
            return getattr(b, op)(ops[0], self.parent.type(desc["type"]), name=name)
        if op in ("add", "mul"):
            return getattr(b, op)(ops[0], ops[1], name=name)
        if op == "icmp":
            return b.icmp(desc["pred"], ops[0], ops[1], name=name)
        if op == "call":
            return b.call(self.operand(desc["callee"]), ops, name=name)
        if op == "br":
            return b.branch(targets[0])
        if op == "condbr":
            return b.cbranch(ops[0], targets[0], targets[1])
        if op == "ret":
            return b.ret(ops[0]) if ops else b.ret_void()
        if op == "unreachable":
            return b.unreachable()
        raise LoadError(f"unknown instruction '{op}' in '{self.fn.name}'")

    def target(self, blocks: dict, label: str):
        if label not in blocks:
            raise LoadError(f"branch to unknown block '{label}' in '{self.fn.name}'")
        return blocks[label]

