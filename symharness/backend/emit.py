"""Lower the arena IR to LLVM IR via llvmlite.

Every module is lowered into a fresh llvmlite context so identified struct
types never leak between lowerings of the same (mutating) module.
"""

from __future__ import annotations

from typing import Any

from llvmlite import ir as llvm_ir
from llvmlite.ir.instructions import LoadInstr, StoreInstr

from symharness.ir.module import (
    Module, Function, Instruction, Opcode, Value,
    Const, ZeroInit, CString, ConstArray, GlobalRef, CStringRef, ArgRef, InstRef,
)
from symharness.ir.types import (
    Type, IntType, DoubleType, VoidType, PointerType, ArrayType, StructType, FunctionType,
)


LOC_METADATA = "symharness.loc"

_ICMP = {
    "eq": ("==", False), "ne": ("!=", False),
    "ult": ("<", False), "ule": ("<=", False), "ugt": (">", False), "uge": (">=", False),
    "slt": ("<", True), "sle": ("<=", True), "sgt": (">", True), "sge": (">=", True),
}


class _VolatileLoad(LoadInstr):
    def descr(self, buf):
        text: list[str] = []
        super().descr(text)
        buf.append("".join(text).replace("load ", "load volatile ", 1))


class _VolatileStore(StoreInstr):
    def descr(self, buf):
        text: list[str] = []
        super().descr(text)
        buf.append("".join(text).replace("store ", "store volatile ", 1))


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------

class TypeLowering:
    """Maps IR types to llvmlite types inside one llvmlite context."""

    def __init__(self, module: Module, context: llvm_ir.Context = None):
        self.module = module
        self.context = context or llvm_ir.Context()
        self._structs: dict[str, Any] = {}

    def lower(self, ty: Type) -> Any:
        if isinstance(ty, IntType):
            return llvm_ir.IntType(ty.width)
        if isinstance(ty, DoubleType):
            return llvm_ir.DoubleType()
        if isinstance(ty, VoidType):
            return llvm_ir.VoidType()
        if isinstance(ty, PointerType):
            return self.lower(ty.pointee).as_pointer()
        if isinstance(ty, ArrayType):
            return llvm_ir.ArrayType(self.lower(ty.element), ty.count)
        if isinstance(ty, FunctionType):
            return llvm_ir.FunctionType(self.lower(ty.return_type),
                                        [self.lower(p) for p in ty.params],
                                        var_arg=ty.var_arg)
        if isinstance(ty, StructType):
            return self._struct(ty)
        raise TypeError(f"cannot lower type {ty!r}")

    def _struct(self, ty: StructType) -> Any:
        if ty.name in self._structs:
            return self._structs[ty.name]
        struct = self.context.get_identified_type(ty.name)
        # register before lowering the body so self-references terminate
        self._structs[ty.name] = struct
        fields = self.module.struct_fields(ty)
        if fields is not None:
            struct.set_body(*[self.lower(f) for f in fields])
        return struct


# ---------------------------------------------------------------------------
# Module emitter
# ---------------------------------------------------------------------------

class LLVMEmitter:
    """Emits an llvmlite module from an arena Module."""

    def __init__(self):
        self.module: Any = None
        self.types: TypeLowering = None
        self._builder: Any = None
        self._symbols: dict[str, Any] = {}
        self._values: dict[int, Any] = {}
        self._blocks: dict[int, Any] = {}
        self._function: Any = None

    def emit_module(self, module: Module) -> Any:
        self.types = TypeLowering(module)
        self.module = llvm_ir.Module(name=module.name, context=self.types.context)
        self._symbols = {}

        for fn in module.functions:
            self._declare_function(fn)
        for gv in module.globals.values():
            g = llvm_ir.GlobalVariable(self.module, self.types.lower(gv.value_type), name=gv.name)
            g.global_constant = gv.constant
            if gv.linkage != "external":
                g.linkage = gv.linkage
            if gv.linkage == "private":
                g.unnamed_addr = True
            self._symbols[gv.name] = g
        # initializers may refer to any symbol
        for gv in module.globals.values():
            if gv.initializer is not None:
                self._symbols[gv.name].initializer = self._constant(gv.initializer, gv.value_type)

        for fn in module.functions:
            if not fn.is_declaration:
                self._emit_function(module, fn)
        return self.module

    def _declare_function(self, fn: Function) -> None:
        llfn = llvm_ir.Function(self.module, self.types.lower(fn.type), name=fn.name)
        for i, name in enumerate(fn.param_names):
            if name:
                llfn.args[i].name = name
        for attr in sorted(fn.attributes):
            llfn.attributes.add(attr)
        self._symbols[fn.name] = llfn

    def _constant(self, value: Value, ty: Type) -> Any:
        llty = self.types.lower(ty)
        if isinstance(value, (Const, ZeroInit)):
            return llvm_ir.Constant(llty, getattr(value, "value", None))
        if isinstance(value, CString):
            return llvm_ir.Constant(llty, bytearray(value.text.encode("utf-8") + b"\0"))
        if isinstance(value, ConstArray):
            return llvm_ir.Constant(llty, [self._constant(e, ty.element) for e in value.elements])
        if isinstance(value, (GlobalRef, CStringRef)):
            lowered = self._value(value)
            return lowered if lowered.type == llty else lowered.bitcast(llty)
        raise TypeError(f"not a constant: {value!r}")

    def _value(self, value: Value) -> Any:
        if isinstance(value, InstRef):
            return self._values[value.id]
        if isinstance(value, ArgRef):
            return self._function.args[value.index]
        if isinstance(value, GlobalRef):
            return self._symbols[value.name]
        if isinstance(value, CStringRef):
            zero = llvm_ir.Constant(llvm_ir.IntType(32), 0)
            return self._symbols[value.name].gep([zero, zero])
        if isinstance(value, (Const, ZeroInit)):
            return llvm_ir.Constant(self.types.lower(value.type), getattr(value, "value", None))
        raise TypeError(f"cannot lower value {value!r}")

    def _emit_function(self, module: Module, fn: Function) -> None:
        self._function = self._symbols[fn.name]
        self._values = {}
        self._blocks = {bid: self._function.append_basic_block(name=module.block(bid).label)
                        for bid in fn.blocks}
        self._builder = llvm_ir.IRBuilder()
        for bid in fn.blocks:
            self._builder.position_at_end(self._blocks[bid])
            for iid in module.block(bid).instructions:
                inst = module.instruction(iid)
                lowered = self._emit_instruction(inst)
                self._values[inst.id] = lowered
                if inst.loc is not None:
                    lowered.set_metadata(LOC_METADATA, self.module.add_metadata([
                        inst.loc.file,
                        llvm_ir.Constant(llvm_ir.IntType(32), inst.loc.line),
                        llvm_ir.Constant(llvm_ir.IntType(32), inst.loc.column),
                    ]))

    def _insert(self, instr: Any) -> Any:
        # llvmlite's builder has no volatile variants of load and store
        self._builder._insert(instr)
        return instr

    def _emit_instruction(self, inst: Instruction) -> Any:
        b = self._builder
        op = inst.opcode
        ops = [self._value(o) for o in inst.operands]
        name = inst.name or ""

        if op == Opcode.ALLOCA:
            return b.alloca(self.types.lower(inst.allocated_type), name=name)
        if op == Opcode.LOAD:
            if inst.volatile:
                return self._insert(_VolatileLoad(b.block, ops[0], name))
            return b.load(ops[0], name=name)
        if op == Opcode.STORE:
            if inst.volatile:
                return self._insert(_VolatileStore(b.block, ops[0], ops[1]))
            return b.store(ops[0], ops[1])
        if op == Opcode.GEP:
            return b.gep(ops[0], [ops[1]], inbounds=True, name=name)
        if op == Opcode.BITCAST:
            return b.bitcast(ops[0], self.types.lower(inst.type), name=name)
        if op == Opcode.ZEXT:
            return b.zext(ops[0], self.types.lower(inst.type), name=name)
        if op == Opcode.TRUNC:
            return b.trunc(ops[0], self.types.lower(inst.type), name=name)
        if op == Opcode.ADD:
            return b.add(ops[0], ops[1], name=name)
        if op == Opcode.MUL:
            return b.mul(ops[0], ops[1], name=name)
        if op == Opcode.ICMP:
            cmpop, signed = _ICMP[inst.predicate]
            if signed:
                return b.icmp_signed(cmpop, ops[0], ops[1], name=name)
            return b.icmp_unsigned(cmpop, ops[0], ops[1], name=name)
        if op == Opcode.CALL:
            if isinstance(inst.type, VoidType):
                name = ""
            return b.call(self._value(inst.callee), ops, name=name)
        if op == Opcode.BR:
            return b.branch(self._blocks[inst.targets[0]])
        if op == Opcode.CONDBR:
            return b.cbranch(ops[0], self._blocks[inst.targets[0]], self._blocks[inst.targets[1]])
        if op == Opcode.RET:
            return b.ret(ops[0]) if ops else b.ret_void()
        if op == Opcode.UNREACHABLE:
            return b.unreachable()
        raise TypeError(f"cannot lower opcode {op}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def emit(module: Module) -> str:
    """Lower ``module`` and return the LLVM IR text."""
    return str(LLVMEmitter().emit_module(module))
