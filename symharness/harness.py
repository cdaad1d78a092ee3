"""Harness synthesis.

For one function under test, appends an entry point to the module that

  1. allocates inputs for every pointer and integer parameter and marks them
     symbolic,
  2. resets every state variable to zero (initializer, symbolic marking,
     volatile zero store),
  3. gives every global declaration a zero initializer,
  4. calls the function with the constructed arguments,
  5. checks that every state variable is zero afterwards, and reports
     "leaving function with lock held" through the abort primitive if not.

Pointer arguments point at element ``buffer_offset`` of a buffer of
``buffer_elements`` elements, so out-of-bounds accesses in either direction
stay inside symbolic memory. Parameters of any other type are dropped, which
the signature check then rejects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from symharness.backend.layout import DataLayout
from symharness.config import HarnessConfig
from symharness.errors import ConfigurationError, SymHarnessError
from symharness.ir.builder import IRBuilder, check_call_signature
from symharness.ir.module import (
    Module, Function, BasicBlock, Instruction, Value, Const, CString, CStringRef, GlobalRef,
    DebugLoc, FunctionId, InstId, is_sized, zero_value,
)
from symharness.ir.types import (
    Type, IntType, PointerType, FunctionType, VoidType, VOID, I32, I64, I8_PTR,
)

logger = logging.getLogger(__name__)

LOCK_HELD_MESSAGE = "leaving function with lock held"

STATUS_TYPE = I32
ENTRY_TYPE = FunctionType(STATUS_TYPE, ())
SYMBOLIC_TYPE = FunctionType(VOID, (I8_PTR, I32, I8_PTR))
ABORT_TYPE = FunctionType(VOID, (I8_PTR, I8_PTR, I32, I8_PTR))
ALLOCATOR_TYPE = FunctionType(I8_PTR, (I64,))


def _convertible(declared: FunctionType, expected: FunctionType) -> bool:
    """True when the argument and result conversions of ``HarnessSynthesizer._call`` apply."""
    if declared.var_arg or len(declared.params) != len(expected.params):
        return False
    for have, want in zip(declared.params, expected.params):
        if type(have) is not type(want) or not isinstance(have, (IntType, PointerType)):
            return False
    ret, want = declared.return_type, expected.return_type
    return (ret == want or isinstance(want, VoidType)
            or (isinstance(ret, PointerType) and isinstance(want, PointerType)))


@dataclass
class Harness:
    """Scaffolding added to the module for one function under test."""
    candidate: FunctionId
    candidate_name: str
    entry: Optional[FunctionId] = None
    call: Optional[InstId] = None
    created_functions: list[FunctionId] = field(default_factory=list)
    created_globals: list[str] = field(default_factory=list)
    dropped_params: list[int] = field(default_factory=list)


class HarnessSynthesizer:
    def __init__(self, module: Module, layout: DataLayout, config: HarnessConfig):
        self.module = module
        self.layout = layout
        self.config = config

    # -- scaffolding helpers --------------------------------------------

    def _declare(self, harness: Harness, name: str, fn_type: FunctionType,
                 attributes: tuple[str, ...] = ()) -> GlobalRef:
        """Reuse an existing function named ``name`` or declare it."""
        if self.module.get_function(name) is None:
            fn = self.module.add_function(name, fn_type)
            fn.attributes.update(attributes)
            harness.created_functions.append(fn.id)
        return GlobalRef(name)

    def _call(self, b: IRBuilder, callee: GlobalRef, expected: FunctionType,
              args: list[Value], name: str = "", loc: Optional[DebugLoc] = None) -> Instruction:
        """Call ``callee`` as though it had type ``expected``.

        A declaration already in the module may spell the prototype with other
        integer widths or pointer types (``klee_make_symbolic`` taking a
        ``size_t``, ``malloc`` taking an ``i32``). Arguments are then converted
        to the declared parameter types and a pointer result is cast back. A
        declaration of any other shape is called through a cast of the callee.
        """
        declared = self.module.get_function(callee.name).type
        if declared == expected:
            return b.call(callee, args, name=name, loc=loc)
        if not _convertible(declared, expected):
            logger.warning("'%s' is declared as '%s', calling it as '%s'",
                           callee.name, declared, expected)
            cast = b.bitcast(callee, PointerType(expected))
            return b.call(cast.ref, args, name=name, loc=loc)
        converted = [self._convert(b, arg, param) for arg, param in zip(args, declared.params)]
        call = b.call(callee, converted, name=name, loc=loc)
        if isinstance(expected.return_type, PointerType) and declared.return_type != expected.return_type:
            return b.bitcast(call.ref, expected.return_type)
        return call

    def _convert(self, b: IRBuilder, value: Value, ty: Type) -> Value:
        have = self.module.type_of(value)
        if have == ty:
            return value
        if isinstance(ty, PointerType):
            return b.bitcast(value, ty).ref
        if isinstance(value, Const):
            return Const(ty, value.value & ((1 << ty.width) - 1))
        if have.width < ty.width:
            return b.zext(value, ty).ref
        return b.trunc(value, ty).ref

    def _string(self, harness: Harness, cache: dict[str, CStringRef], text: str) -> CStringRef:
        if text not in cache:
            value = CString(text)
            name = self.module.unique_name(".str")
            self.module.add_global(name, value.type, initializer=value,
                                   constant=True, linkage="private")
            harness.created_globals.append(name)
            cache[text] = CStringRef(name)
        return cache[text]

    def _as_bytes(self, b: IRBuilder, addr: Value) -> Value:
        if self.module.type_of(addr) == I8_PTR:
            return addr
        return b.bitcast(addr, I8_PTR).ref

    # -- synthesis --------------------------------------------------------

    def synthesize(self, fid: FunctionId) -> Harness:
        """Build the harness for function ``fid``.

        Raises SignatureError when the constructed arguments do not fit the
        function; the partial scaffolding is removed first.
        """
        candidate = self.module.function(fid)
        harness = Harness(fid, candidate.name)
        try:
            self._build(harness, candidate)
        except SymHarnessError:
            self.remove(harness)
            raise
        return harness

    def _build(self, harness: Harness, candidate: Function) -> None:
        module, config = self.module, self.config
        strings: dict[str, CStringRef] = {}

        entry_name = module.unique_name(config.entry_name)
        if entry_name != config.entry_name:
            logger.warning("'%s' already exists in '%s', naming the harness '%s'",
                           config.entry_name, module.name, entry_name)
        entry_fn = module.add_function(entry_name, ENTRY_TYPE)
        harness.entry = entry_fn.id
        entry = module.append_block(entry_fn.id, "entry")
        b = IRBuilder(module, entry)
        allocas = IRBuilder(module)
        allocas.position_at_start(entry)

        make_symbolic = self._declare(harness, config.symbolic_primitive, SYMBOLIC_TYPE)

        def mark(addr: Value, size: Value, name: str) -> None:
            self._call(b, make_symbolic, SYMBOLIC_TYPE,
                       [self._as_bytes(b, addr), size, self._string(harness, strings, name)])

        args: list[Value] = []
        for index, ptype in enumerate(candidate.type.params):
            pname = candidate.param_names[index] or "noname"
            if isinstance(ptype, PointerType):
                args.append(self._pointer_argument(harness, b, ptype, pname, mark))
            elif isinstance(ptype, IntType):
                slot = allocas.alloca(ptype, name=pname)
                mark(slot.ref, Const(I32, self.layout.size_of(ptype)), pname)
                args.append(b.load(slot.ref, name=f"{pname}.val").ref)
            else:
                logger.debug("dropping parameter %d ('%s' of type '%s') of '%s'",
                             index, pname, ptype, candidate.name)
                harness.dropped_params.append(index)

        state_vars = module.state_variables
        for gv in state_vars:
            if not isinstance(gv.value_type, IntType):
                raise ConfigurationError(f"state variable '{gv.name}' is not an integer",
                                         {"type": str(gv.value_type)})
            zero = zero_value(gv.value_type)
            gv.initializer = zero
            mark(GlobalRef(gv.name), Const(I32, self.layout.size_of(gv.value_type)), gv.name)
            b.store(zero, GlobalRef(gv.name), volatile=True)

        for gv in module.globals.values():
            if gv.initializer is None:
                gv.initializer = zero_value(gv.value_type)

        target = GlobalRef(candidate.name)
        check_call_signature(module, candidate.name, candidate.type, args)
        harness.call = b.call(target, args).id

        self._check_state(harness, entry_fn, b, strings, candidate)

    def _pointer_argument(self, harness: Harness, b: IRBuilder, ptype: PointerType,
                          pname: str, mark) -> Value:
        config = self.config
        pointee = ptype.pointee
        elem_size = self.layout.size_of(pointee)
        allocator = self._declare(harness, config.allocator, ALLOCATOR_TYPE)

        raw = self._call(b, allocator, ALLOCATOR_TYPE,
                         [Const(I64, elem_size * config.buffer_elements)],
                         name=f"{pname}.buf").ref
        size = b.mul(Const(I32, config.buffer_elements), Const(I32, elem_size),
                     name="make_symbolic_size")
        mark(raw, size.ref, pname)

        if is_sized(self.module, pointee):
            buf = raw if ptype == I8_PTR else b.bitcast(raw, ptype).ref
            return b.gep(buf, Const(I64, config.buffer_offset), name=f"{pname}.mid").ref
        # no element type to index by, step over whole fallback-sized elements
        mid = b.gep(raw, Const(I64, config.buffer_offset * elem_size), name=f"{pname}.mid")
        return b.bitcast(mid.ref, ptype).ref

    def _check_state(self, harness: Harness, entry_fn: Function, b: IRBuilder,
                     strings: dict[str, CStringRef], candidate: Function) -> None:
        module, config = self.module, self.config
        final = module.append_block(entry_fn.id, "final")
        fail = module.append_block(entry_fn.id, "assertBB")

        abort = self._declare(harness, config.abort_function, ABORT_TYPE, ("noreturn",))
        fb = IRBuilder(module, fail)
        self._call(fb, abort, ABORT_TYPE, [
            self._string(harness, strings, LOCK_HELD_MESSAGE),
            self._string(harness, strings, "n/a"),
            Const(I32, 0),
            self._string(harness, strings, config.entry_name),
        ], loc=self._last_location(candidate))
        fb.unreachable()

        # each variable is tested at its own width and contributes 0 or 1,
        # so the sum is zero exactly when every variable is
        total: Value = Const(STATUS_TYPE, 0)
        for gv in module.state_variables:
            value = b.load(GlobalRef(gv.name), volatile=True).ref
            held = b.icmp("ne", value, Const(gv.value_type, 0))
            flag = b.zext(held.ref, STATUS_TYPE).ref
            total = b.add(flag, total).ref
        is_zero = b.icmp("eq", total, Const(STATUS_TYPE, 0))
        b.cbranch(is_zero.ref, final, fail)

        IRBuilder(module, final).ret(Const(STATUS_TYPE, 0))

    def _last_location(self, candidate: Function) -> Optional[DebugLoc]:
        if candidate.is_declaration:
            return None
        last: BasicBlock = self.module.block(candidate.blocks[-1])
        if not last.instructions:
            return None
        return self.module.instruction(last.instructions[-1]).loc

    # -- cleanup ----------------------------------------------------------

    def remove(self, harness: Harness) -> None:
        """Erase the entry function and everything declared for it."""
        if harness.entry is not None and self.module.is_live_function(harness.entry):
            self.module.remove_function(harness.entry)
        for fid in harness.created_functions:
            if self.module.is_live_function(fid):
                self.module.remove_function(fid)
        for name in harness.created_globals:
            if name in self.module.globals:
                self.module.remove_global(name)
        harness.entry = None
        harness.call = None
