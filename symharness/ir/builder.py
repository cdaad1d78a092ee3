"""Instruction builder for the arena IR, modelled on llvmlite's IRBuilder."""

from __future__ import annotations

from typing import Optional, Sequence

from symharness.errors import SignatureError
from symharness.ir.module import (
    Module, BasicBlock, Instruction, Opcode, Value, DebugLoc, GlobalRef,
    ICMP_PREDICATES,
)
from symharness.ir.types import (
    Type, IntType, PointerType, FunctionType, VoidType, I1,
)


def check_call_signature(module: Module, callee_name: str, fn_type: FunctionType,
                         args: Sequence[Value]) -> None:
    """Raise SignatureError unless ``args`` fit ``fn_type`` exactly.

    Extra arguments are allowed only as the variadic tail.
    """
    nparams = len(fn_type.params)
    if len(args) != nparams and not (fn_type.var_arg and len(args) > nparams):
        raise SignatureError(
            callee_name,
            f"calling '{callee_name}' with {len(args)} arguments, expected {nparams}",
            {"expected": [str(p) for p in fn_type.params],
             "actual": [str(module.type_of(a)) for a in args]},
        )
    for i, (param, arg) in enumerate(zip(fn_type.params, args)):
        actual = module.type_of(arg)
        if actual != param:
            raise SignatureError(
                callee_name,
                f"argument {i} of '{callee_name}' has type '{actual}', expected '{param}'",
                {"position": i, "expected": str(param), "actual": str(actual)},
            )


class IRBuilder:
    """Appends instructions to a block of a Module."""

    def __init__(self, module: Module, block: Optional[BasicBlock] = None):
        self.module = module
        self.block = block
        self._at_start = False
        self._start_pos = 0

    def position_at_end(self, block: BasicBlock) -> None:
        self.block = block
        self._at_start = False

    def position_at_start(self, block: BasicBlock) -> None:
        """Insert subsequent instructions before everything already in ``block``."""
        self.block = block
        self._at_start = True
        self._start_pos = 0

    def _insert(self, opcode: Opcode, type: Type, **kwargs) -> Instruction:
        inst = self.module.new_instruction(self.block.id, opcode, type, **kwargs)
        if self._at_start:
            self.block.instructions.insert(self._start_pos, inst.id)
            self._start_pos += 1
        else:
            self.block.instructions.append(inst.id)
        return inst

    # -- memory ---------------------------------------------------------

    def alloca(self, ty: Type, name: str = "") -> Instruction:
        return self._insert(Opcode.ALLOCA, PointerType(ty), allocated_type=ty, name=name)

    def load(self, ptr: Value, name: str = "", volatile: bool = False) -> Instruction:
        ptr_type = self.module.type_of(ptr)
        if not isinstance(ptr_type, PointerType):
            raise TypeError(f"cannot load from non-pointer type '{ptr_type}'")
        return self._insert(Opcode.LOAD, ptr_type.pointee, operands=[ptr], name=name,
                            volatile=volatile)

    def store(self, value: Value, ptr: Value, volatile: bool = False) -> Instruction:
        ptr_type = self.module.type_of(ptr)
        value_type = self.module.type_of(value)
        if ptr_type != PointerType(value_type):
            raise TypeError(f"cannot store '{value_type}' through '{ptr_type}'")
        return self._insert(Opcode.STORE, VoidType(), operands=[value, ptr], volatile=volatile)

    def gep(self, ptr: Value, index: Value, name: str = "") -> Instruction:
        ptr_type = self.module.type_of(ptr)
        if not isinstance(ptr_type, PointerType):
            raise TypeError(f"cannot index non-pointer type '{ptr_type}'")
        return self._insert(Opcode.GEP, ptr_type, operands=[ptr, index], name=name)

    # -- casts & arithmetic ---------------------------------------------

    def bitcast(self, value: Value, ty: Type, name: str = "") -> Instruction:
        return self._insert(Opcode.BITCAST, ty, operands=[value], name=name)

    def zext(self, value: Value, ty: IntType, name: str = "") -> Instruction:
        return self._insert(Opcode.ZEXT, ty, operands=[value], name=name)

    def trunc(self, value: Value, ty: IntType, name: str = "") -> Instruction:
        return self._insert(Opcode.TRUNC, ty, operands=[value], name=name)

    def _binop(self, opcode: Opcode, lhs: Value, rhs: Value, name: str) -> Instruction:
        lty, rty = self.module.type_of(lhs), self.module.type_of(rhs)
        if lty != rty or not isinstance(lty, IntType):
            raise TypeError(f"'{opcode.value}' operands must be equal integer types, "
                            f"got '{lty}' and '{rty}'")
        return self._insert(opcode, lty, operands=[lhs, rhs], name=name)

    def add(self, lhs: Value, rhs: Value, name: str = "") -> Instruction:
        return self._binop(Opcode.ADD, lhs, rhs, name)

    def mul(self, lhs: Value, rhs: Value, name: str = "") -> Instruction:
        return self._binop(Opcode.MUL, lhs, rhs, name)

    def icmp(self, predicate: str, lhs: Value, rhs: Value, name: str = "") -> Instruction:
        if predicate not in ICMP_PREDICATES:
            raise ValueError(f"unknown icmp predicate '{predicate}'")
        inst = self._binop(Opcode.ICMP, lhs, rhs, name)
        inst.type = I1
        inst.predicate = predicate
        return inst

    # -- calls ------------------------------------------------------------

    def call(self, callee: Value, args: Sequence[Value], name: str = "",
             loc: Optional[DebugLoc] = None) -> Instruction:
        callee_type = self.module.type_of(callee)
        if not (isinstance(callee_type, PointerType)
                and isinstance(callee_type.pointee, FunctionType)):
            raise TypeError(f"cannot call a value of type '{callee_type}'")
        fn_type = callee_type.pointee
        callee_name = callee.name if isinstance(callee, GlobalRef) else "<indirect>"
        check_call_signature(self.module, callee_name, fn_type, args)
        return self._insert(Opcode.CALL, fn_type.return_type, operands=list(args),
                            callee=callee, name=name, loc=loc)

    # -- terminators -----------------------------------------------------

    def branch(self, target: BasicBlock) -> Instruction:
        return self._insert(Opcode.BR, VoidType(), targets=[target.id])

    def cbranch(self, cond: Value, truebr: BasicBlock, falsebr: BasicBlock) -> Instruction:
        return self._insert(Opcode.CONDBR, VoidType(), operands=[cond],
                            targets=[truebr.id, falsebr.id])

    def ret(self, value: Value) -> Instruction:
        return self._insert(Opcode.RET, VoidType(), operands=[value])

    def ret_void(self) -> Instruction:
        return self._insert(Opcode.RET, VoidType())

    def unreachable(self) -> Instruction:
        return self._insert(Opcode.UNREACHABLE, VoidType())
