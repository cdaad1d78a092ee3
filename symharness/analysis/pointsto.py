"""Points-to analysis.

Computes, for every pointer-valued location of a module, the set of abstract
memory objects it may reference. The default analysis is Andersen's
inclusion-based formulation (Andersen 1994), flow- and field-insensitive:

    p = &o          pts(p) ⊇ {o}
    p = q           pts(p) ⊇ pts(q)          (bitcast, gep)
    p = *q          pts(p) ⊇ pts(*o)  for o ∈ pts(q)
    *p = q          pts(*o) ⊇ pts(q)  for o ∈ pts(p)
    f(a1..an)       pts(param_i) ⊇ pts(a_i), pts(call) ⊇ pts(ret_f)
                    for every f the callee may denote

Abstract objects are globals, functions, stack slots (one per alloca) and
heap blocks (one per allocator call site).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from symharness.ir.module import (
    Module, Function, Instruction, Opcode, Value,
    GlobalRef, CStringRef, ArgRef, InstRef, ConstArray, InstId, FunctionId,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AbstractObject:
    kind: str  # "global", "function", "stack", "heap"
    name: str
    site: Optional[InstId] = None

    def __str__(self) -> str:
        if self.site is None:
            return f"{self.kind}:@{self.name}"
        return f"{self.kind}:{self.name}#{self.site}"


@dataclass(frozen=True)
class _Contents:
    """The memory cell of an abstract object."""
    obj: AbstractObject


class PointsToSets:
    """Solved points-to relation of one module."""

    def __init__(self, module: Module, sets: dict[object, set[AbstractObject]]):
        self.module = module
        self._sets = sets

    def points_to(self, value: Value) -> frozenset[AbstractObject]:
        if isinstance(value, (GlobalRef, CStringRef)):
            return frozenset([_symbol_object(self.module, value.name)])
        if isinstance(value, (ArgRef, InstRef)):
            return frozenset(self._sets.get(value, ()))
        return frozenset()

    def contents(self, obj: AbstractObject) -> frozenset[AbstractObject]:
        return frozenset(self._sets.get(_Contents(obj), ()))

    def functions(self, value: Value) -> list[Function]:
        """Defined or declared functions ``value`` may point to, in module order."""
        names = {o.name for o in self.points_to(value) if o.kind == "function"}
        return [f for f in self.module.functions if f.name in names]


class PointsToAnalysis(ABC):
    """A points-to analysis over a Module."""

    @abstractmethod
    def compute(self, module: Module) -> PointsToSets:
        ...


def _symbol_object(module: Module, name: str) -> AbstractObject:
    if module.get_function(name) is not None:
        return AbstractObject("function", name)
    return AbstractObject("global", name)


class AndersenAnalysis(PointsToAnalysis):
    """Inclusion-based, flow- and field-insensitive points-to analysis."""

    def __init__(self, allocators: Iterable[str] = ("malloc", "calloc", "realloc")):
        self.allocators = frozenset(allocators)

    def compute(self, module: Module) -> PointsToSets:
        solver = _Solver(module, self.allocators)
        rounds = solver.solve()
        logger.debug("points-to for '%s' converged after %d rounds", module.name, rounds)
        return PointsToSets(module, solver.sets)


class _Solver:
    def __init__(self, module: Module, allocators: frozenset[str]):
        self.module = module
        self.allocators = allocators
        self.sets: dict[object, set[AbstractObject]] = {}
        self.returns: dict[FunctionId, set[AbstractObject]] = {}
        self.changed = False

    def objects(self, value: Value) -> set[AbstractObject]:
        if isinstance(value, (GlobalRef, CStringRef)):
            return {_symbol_object(self.module, value.name)}
        if isinstance(value, ConstArray):
            out: set[AbstractObject] = set()
            for element in value.elements:
                out |= self.objects(element)
            return out
        if isinstance(value, (ArgRef, InstRef)):
            return self.sets.get(value, set())
        return set()

    def include(self, key: object, objs: Iterable[AbstractObject]) -> None:
        current = self.sets.setdefault(key, set())
        before = len(current)
        current.update(objs)
        if len(current) != before:
            self.changed = True

    def solve(self) -> int:
        rounds = 0
        self.changed = True
        while self.changed:
            self.changed = False
            rounds += 1
            for gv in self.module.globals.values():
                if gv.initializer is not None:
                    self.include(_Contents(AbstractObject("global", gv.name)),
                                 self.objects(gv.initializer))
            for fn in self.module.functions:
                for inst in self.module.instructions(fn.id):
                    self.visit(fn, inst)
        return rounds

    def visit(self, fn: Function, inst: Instruction) -> None:
        op = inst.opcode
        key = inst.ref
        if op == Opcode.ALLOCA:
            self.include(key, [AbstractObject("stack", fn.name, inst.id)])
        elif op in (Opcode.BITCAST, Opcode.GEP):
            self.include(key, set(self.objects(inst.operands[0])))
        elif op == Opcode.LOAD:
            for obj in list(self.objects(inst.operands[0])):
                self.include(key, set(self.sets.get(_Contents(obj), ())))
        elif op == Opcode.STORE:
            stored = set(self.objects(inst.operands[0]))
            for obj in list(self.objects(inst.operands[1])):
                self.include(_Contents(obj), stored)
        elif op == Opcode.RET and inst.operands:
            returned = self.returns.setdefault(fn.id, set())
            before = len(returned)
            returned.update(self.objects(inst.operands[0]))
            if len(returned) != before:
                self.changed = True
        elif op == Opcode.CALL:
            self.visit_call(fn, inst)

    def visit_call(self, fn: Function, inst: Instruction) -> None:
        for callee in self.callees(inst):
            if callee.is_declaration:
                if callee.name in self.allocators:
                    self.include(inst.ref, [AbstractObject("heap", fn.name, inst.id)])
                continue
            for i, arg in enumerate(inst.operands[:len(callee.type.params)]):
                self.include(callee.arg(i), set(self.objects(arg)))
            self.include(inst.ref, set(self.returns.get(callee.id, ())))

    def callees(self, inst: Instruction) -> list[Function]:
        names = {o.name for o in self.objects(inst.callee) if o.kind == "function"}
        return [f for f in self.module.functions if f.name in names]
