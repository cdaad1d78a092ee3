"""Program representation: an arena-addressed module graph.

Functions, basic blocks and instructions live in three arenas owned by the
``Module`` and are referred to everywhere by integer handles. Removing a
function tombstones its arena slots, so handles of everything else stay
valid across mutation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Union

from symharness.ir.types import (
    Type, IntType, PointerType, ArrayType, StructType, FunctionType, VoidType,
    I8, I8_PTR,
)


FunctionId = int
BlockId = int
InstId = int


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Const:
    """Integer constant, or the null pointer when ``value`` is None."""
    type: Type
    value: Optional[int] = 0


@dataclass(frozen=True)
class ZeroInit:
    type: Type


@dataclass(frozen=True)
class CString:
    """NUL-terminated character data, used as a string global's initializer."""
    text: str

    @property
    def type(self) -> ArrayType:
        return ArrayType(I8, len(self.text.encode("utf-8")) + 1)


@dataclass(frozen=True)
class ConstArray:
    type: ArrayType
    elements: tuple


@dataclass(frozen=True)
class GlobalRef:
    """Address of a global variable or function."""
    name: str


@dataclass(frozen=True)
class CStringRef:
    """Pointer to the first character of a string global."""
    name: str


@dataclass(frozen=True)
class ArgRef:
    function: FunctionId
    index: int


@dataclass(frozen=True)
class InstRef:
    id: InstId


Value = Union[Const, ZeroInit, CString, ConstArray, GlobalRef, CStringRef, ArgRef, InstRef]


# ---------------------------------------------------------------------------
# Instructions, blocks, functions, globals
# ---------------------------------------------------------------------------

class Opcode(Enum):
    ALLOCA = "alloca"
    LOAD = "load"
    STORE = "store"
    GEP = "gep"
    BITCAST = "bitcast"
    ZEXT = "zext"
    TRUNC = "trunc"
    ADD = "add"
    MUL = "mul"
    ICMP = "icmp"
    CALL = "call"
    BR = "br"
    CONDBR = "condbr"
    RET = "ret"
    UNREACHABLE = "unreachable"

    @property
    def is_terminator(self) -> bool:
        return self in (Opcode.BR, Opcode.CONDBR, Opcode.RET, Opcode.UNREACHABLE)


ICMP_PREDICATES = ("eq", "ne", "ult", "ule", "ugt", "uge", "slt", "sle", "sgt", "sge")


@dataclass(frozen=True)
class DebugLoc:
    file: str
    line: int
    column: int = 0


@dataclass
class Instruction:
    id: InstId
    block: BlockId
    opcode: Opcode
    type: Type
    operands: list = field(default_factory=list)
    name: str = ""
    callee: Optional[Value] = None
    predicate: str = ""
    allocated_type: Optional[Type] = None
    targets: list[BlockId] = field(default_factory=list)
    volatile: bool = False
    loc: Optional[DebugLoc] = None

    @property
    def ref(self) -> InstRef:
        return InstRef(self.id)


@dataclass
class BasicBlock:
    id: BlockId
    function: FunctionId
    label: str
    instructions: list[InstId] = field(default_factory=list)


@dataclass
class Function:
    id: FunctionId
    name: str
    type: FunctionType
    param_names: list[Optional[str]] = field(default_factory=list)
    blocks: list[BlockId] = field(default_factory=list)
    attributes: set[str] = field(default_factory=set)

    @property
    def is_declaration(self) -> bool:
        return not self.blocks

    def arg(self, index: int) -> ArgRef:
        return ArgRef(self.id, index)


@dataclass
class GlobalVariable:
    name: str
    value_type: Type
    initializer: Optional[Value] = None
    constant: bool = False
    linkage: str = "external"

    @property
    def is_declaration(self) -> bool:
        return self.initializer is None


# ---------------------------------------------------------------------------
# Module
# ---------------------------------------------------------------------------

class Module:
    """Top-level container: struct types, globals and the three arenas."""

    def __init__(self, name: str, state_prefix: str = "__ai_state_"):
        self.name = name
        self.state_prefix = state_prefix
        self.structs: dict[str, Optional[tuple[Type, ...]]] = {}
        self.globals: dict[str, GlobalVariable] = {}
        self._functions: list[Optional[Function]] = []
        self._blocks: list[Optional[BasicBlock]] = []
        self._instructions: list[Optional[Instruction]] = []
        self._function_names: dict[str, FunctionId] = {}
        self._state_variables: list[str] = []

    # -- structs --------------------------------------------------------

    def add_struct(self, name: str, fields: Optional[tuple[Type, ...]] = None) -> StructType:
        self.structs[name] = fields
        return StructType(name)

    def struct_fields(self, ty: StructType) -> Optional[tuple[Type, ...]]:
        return self.structs.get(ty.name)

    # -- globals --------------------------------------------------------

    def add_global(self, name: str, value_type: Type, initializer: Optional[Value] = None,
                   constant: bool = False, linkage: str = "external") -> GlobalVariable:
        if name in self.globals or name in self._function_names:
            raise ValueError(f"symbol '{name}' already defined in module '{self.name}'")
        gv = GlobalVariable(name, value_type, initializer, constant, linkage)
        self.globals[name] = gv
        if name.startswith(self.state_prefix):
            self._state_variables.append(name)
        return gv

    def remove_global(self, name: str) -> None:
        del self.globals[name]
        if name in self._state_variables:
            self._state_variables.remove(name)

    @property
    def state_variables(self) -> tuple[GlobalVariable, ...]:
        """Globals under the reserved state prefix, registered at creation."""
        return tuple(self.globals[n] for n in self._state_variables)

    def unique_name(self, base: str) -> str:
        if base not in self.globals and base not in self._function_names:
            return base
        n = 1
        while f"{base}{n}" in self.globals or f"{base}{n}" in self._function_names:
            n += 1
        return f"{base}{n}"

    # -- functions ------------------------------------------------------

    def add_function(self, name: str, fn_type: FunctionType,
                     param_names: Optional[list[Optional[str]]] = None) -> Function:
        if name in self._function_names or name in self.globals:
            raise ValueError(f"symbol '{name}' already defined in module '{self.name}'")
        if param_names is None:
            param_names = [None] * len(fn_type.params)
        if len(param_names) != len(fn_type.params):
            raise ValueError(f"function '{name}' has {len(fn_type.params)} parameters, "
                             f"got {len(param_names)} names")
        fn = Function(len(self._functions), name, fn_type, list(param_names))
        self._functions.append(fn)
        self._function_names[name] = fn.id
        return fn

    def get_function(self, name: str) -> Optional[Function]:
        fid = self._function_names.get(name)
        return None if fid is None else self._functions[fid]

    def function(self, fid: FunctionId) -> Function:
        fn = self._functions[fid]
        if fn is None:
            raise KeyError(f"function handle {fid} was removed")
        return fn

    @property
    def functions(self) -> Iterator[Function]:
        return (f for f in self._functions if f is not None)

    def remove_function(self, fid: FunctionId) -> None:
        fn = self.function(fid)
        for bid in fn.blocks:
            for iid in self._blocks[bid].instructions:
                self._instructions[iid] = None
            self._blocks[bid] = None
        self._functions[fid] = None
        del self._function_names[fn.name]

    def is_live_function(self, fid: FunctionId) -> bool:
        return 0 <= fid < len(self._functions) and self._functions[fid] is not None

    # -- blocks & instructions -----------------------------------------

    def append_block(self, fid: FunctionId, label: str) -> BasicBlock:
        fn = self.function(fid)
        block = BasicBlock(len(self._blocks), fid, label)
        self._blocks.append(block)
        fn.blocks.append(block.id)
        return block

    def block(self, bid: BlockId) -> BasicBlock:
        block = self._blocks[bid]
        if block is None:
            raise KeyError(f"block handle {bid} was removed")
        return block

    def new_instruction(self, block: BlockId, opcode: Opcode, type: Type, **kwargs) -> Instruction:
        """Allocate an instruction in the arena; the caller places it in a block."""
        inst = Instruction(len(self._instructions), block, opcode, type, **kwargs)
        self._instructions.append(inst)
        return inst

    def instruction(self, iid: InstId) -> Instruction:
        inst = self._instructions[iid]
        if inst is None:
            raise KeyError(f"instruction handle {iid} was removed")
        return inst

    def is_live_instruction(self, iid: InstId) -> bool:
        return 0 <= iid < len(self._instructions) and self._instructions[iid] is not None

    def instructions(self, fid: FunctionId) -> Iterator[Instruction]:
        for bid in self.function(fid).blocks:
            for iid in self._blocks[bid].instructions:
                yield self._instructions[iid]

    def function_of(self, inst: Instruction) -> FunctionId:
        return self.block(inst.block).function

    # -- typing ---------------------------------------------------------

    def type_of(self, value: Value) -> Type:
        if isinstance(value, (Const, ZeroInit, CString, ConstArray)):
            return value.type
        if isinstance(value, InstRef):
            return self.instruction(value.id).type
        if isinstance(value, ArgRef):
            return self.function(value.function).type.params[value.index]
        if isinstance(value, CStringRef):
            return I8_PTR
        if isinstance(value, GlobalRef):
            fn = self.get_function(value.name)
            if fn is not None:
                return PointerType(fn.type)
            gv = self.globals.get(value.name)
            if gv is None:
                raise KeyError(f"unknown symbol '@{value.name}'")
            return PointerType(gv.value_type)
        raise TypeError(f"not a value: {value!r}")

    def __repr__(self) -> str:
        return (f"Module({self.name!r}, functions={len(self._function_names)}, "
                f"globals={len(self.globals)})")


def zero_value(ty: Type) -> Value:
    """The null value of ``ty``."""
    if isinstance(ty, IntType):
        return Const(ty, 0)
    if isinstance(ty, PointerType):
        return Const(ty, None)
    return ZeroInit(ty)


def is_sized(module: Module, ty: Type) -> bool:
    if isinstance(ty, (VoidType, FunctionType)):
        return False
    if isinstance(ty, StructType):
        fields = module.struct_fields(ty)
        return fields is not None and all(is_sized(module, f) for f in fields)
    if isinstance(ty, ArrayType):
        return is_sized(module, ty.element)
    return True

