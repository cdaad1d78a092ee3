"""Entry-state evaluation of a synthesized harness.

Symbolically executes the straight-line prefix of a harness entry block, up
to the call of the function under test, and reports the value every integer
global holds at that call:

1. INITIAL STORE:
   A global with a constant initializer starts as that bit-vector constant;
   a global without one starts as a fresh unconstrained bit-vector.

2. SYMBOLIC MARKING:
   A call to the symbolic-marking primitive whose address operand is (a cast
   of) a global replaces the global's value with a fresh bit-vector, exactly
   as the downstream engine will.

3. STORES:
   A store to (a cast of) a global overwrites its value; constant stores
   become bit-vector constants, anything else a fresh bit-vector.

A value is *concretely zero* when ``value != 0`` is unsatisfiable. This pins
down the net effect of marking a state variable symbolic and then storing
zero into it: the store wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import z3

from symharness.ir.module import (
    Module, Instruction, Opcode, Value, Const, GlobalRef, InstRef, FunctionId, InstId,
)
from symharness.ir.types import IntType

logger = logging.getLogger(__name__)


@dataclass
class EntryState:
    """Values of the integer globals at the call of the function under test."""
    values: Dict[str, Any] = field(default_factory=dict)
    symbolic: list[str] = field(default_factory=list)

    def value(self, name: str) -> Any:
        return self.values[name]

    def is_concrete_zero(self, name: str) -> bool:
        solver = z3.Solver()
        solver.set("timeout", 2000)
        solver.add(self.values[name] != 0)
        return solver.check() == z3.unsat

    def concrete_value(self, name: str) -> Optional[int]:
        value = z3.simplify(self.values[name])
        if z3.is_bv_value(value):
            return value.as_long()
        return None


class _Evaluator:
    def __init__(self, module: Module, primitive: str):
        self.module = module
        self.primitive = primitive
        self.state = EntryState()
        self._fresh = 0

    def fresh(self, name: str, width: int) -> Any:
        self._fresh += 1
        return z3.BitVec(f"{name}!{self._fresh}", width)

    def strip_casts(self, value: Value) -> Value:
        while isinstance(value, InstRef):
            inst = self.module.instruction(value.id)
            if inst.opcode != Opcode.BITCAST:
                break
            value = inst.operands[0]
        return value

    def base_global(self, value: Value) -> Optional[str]:
        value = self.strip_casts(value)
        if isinstance(value, GlobalRef) and value.name in self.state.values:
            return value.name
        return None

    def initialize(self) -> None:
        for gv in self.module.globals.values():
            if not isinstance(gv.value_type, IntType):
                continue
            width = gv.value_type.width
            if isinstance(gv.initializer, Const):
                self.state.values[gv.name] = z3.BitVecVal(gv.initializer.value, width)
            else:
                self.state.values[gv.name] = self.fresh(gv.name, width)

    def step(self, inst: Instruction) -> None:
        if inst.opcode == Opcode.CALL:
            callee = self.strip_casts(inst.callee)
            if isinstance(callee, GlobalRef) and callee.name == self.primitive:
                target = self.base_global(inst.operands[0])
                if target is not None:
                    width = self.state.values[target].size()
                    self.state.values[target] = self.fresh(target, width)
                    self.state.symbolic.append(target)
        elif inst.opcode == Opcode.STORE:
            target = self.base_global(inst.operands[1])
            if target is None:
                return
            width = self.state.values[target].size()
            stored = inst.operands[0]
            if isinstance(stored, Const) and stored.value is not None:
                self.state.values[target] = z3.BitVecVal(stored.value, width)
            else:
                self.state.values[target] = self.fresh(target, width)


def state_at_call(module: Module, entry: FunctionId, call: InstId,
                  primitive: str = "klee_make_symbolic") -> EntryState:
    """Evaluate ``entry``'s first block up to (not including) instruction ``call``."""
    fn = module.function(entry)
    evaluator = _Evaluator(module, primitive)
    evaluator.initialize()
    for iid in module.block(fn.blocks[0]).instructions:
        if iid == call:
            break
        evaluator.step(module.instruction(iid))
    else:
        logger.debug("call %d not found in the entry block of '%s'", call, fn.name)
    return evaluator.state
