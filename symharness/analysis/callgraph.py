"""Call graph over a Module, with indirect calls resolved by points-to sets."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass

from symharness.analysis.pointsto import PointsToSets
from symharness.ir.module import Module, GlobalRef, FunctionId, InstId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSite:
    function: FunctionId
    instruction: InstId


@dataclass(frozen=True)
class CallEdge:
    site: CallSite
    callee: FunctionId
    indirect: bool = False


class CallGraph(ABC):
    """Read-only call-graph queries."""

    @abstractmethod
    def calls(self, function: FunctionId) -> set[CallEdge]:
        """Calls made from ``function``, one edge per (site, resolved callee)."""

    @abstractmethod
    def callees(self, target: FunctionId) -> set[CallSite]:
        """Every call site in the module that may invoke ``target``."""


class PointsToCallGraph(CallGraph):
    """Call graph built once from a module and its points-to sets.

    A call through a symbol is a direct edge; any other callee operand is
    resolved through the points-to sets and yields indirect edges.
    """

    def __init__(self, module: Module, points_to: PointsToSets):
        self._out: dict[FunctionId, set[CallEdge]] = defaultdict(set)
        self._in: dict[FunctionId, set[CallSite]] = defaultdict(set)
        for fn in module.functions:
            for inst in module.instructions(fn.id):
                if inst.callee is None:
                    continue
                site = CallSite(fn.id, inst.id)
                if isinstance(inst.callee, GlobalRef):
                    target = module.get_function(inst.callee.name)
                    targets = [target] if target is not None else []
                    indirect = False
                else:
                    targets = points_to.functions(inst.callee)
                    indirect = True
                    if not targets:
                        logger.debug("unresolved indirect call in '%s' (inst %d)",
                                     fn.name, inst.id)
                for callee in targets:
                    self._out[fn.id].add(CallEdge(site, callee.id, indirect))
                    self._in[callee.id].add(site)

    def calls(self, function: FunctionId) -> set[CallEdge]:
        return set(self._out.get(function, ()))

    def callees(self, target: FunctionId) -> set[CallSite]:
        return set(self._in.get(target, ()))
