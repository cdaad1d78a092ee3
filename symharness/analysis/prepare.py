"""Candidate entry functions.

The prepare stage records the functions eligible for harness generation in
the module itself, as the constant global ``__ai_init_functions`` holding an
array of ``i8*`` function addresses. Later stages read it back from there.
"""

from __future__ import annotations

import logging
from typing import Sequence

from symharness.analysis.callgraph import CallGraph
from symharness.errors import ConfigurationError
from symharness.ir.module import Module, ConstArray, GlobalRef, FunctionId
from symharness.ir.types import ArrayType, I8_PTR

logger = logging.getLogger(__name__)

INIT_FUNCTIONS = "__ai_init_functions"


def record_initial_functions(module: Module, names: Sequence[str]) -> None:
    """Store ``names`` as the module's candidate list, replacing any previous one."""
    for name in names:
        fn = module.get_function(name)
        if fn is None:
            raise ConfigurationError(f"candidate '{name}' is not a function of '{module.name}'")
    if INIT_FUNCTIONS in module.globals:
        module.remove_global(INIT_FUNCTIONS)
    ty = ArrayType(I8_PTR, len(names))
    module.add_global(INIT_FUNCTIONS, ty,
                      initializer=ConstArray(ty, tuple(GlobalRef(n) for n in names)),
                      constant=True, linkage="internal")


def initial_functions(module: Module) -> list[FunctionId]:
    """Read the candidate list in recorded order.

    Raises ConfigurationError when the prepare stage has not run.
    """
    gv = module.globals.get(INIT_FUNCTIONS)
    if gv is None or not isinstance(gv.initializer, ConstArray):
        raise ConfigurationError(
            "no initial functions found; the prepare stage must run first",
            {"global": INIT_FUNCTIONS},
        )
    out = []
    for element in gv.initializer.elements:
        fn = module.get_function(element.name) if isinstance(element, GlobalRef) else None
        if fn is None:
            raise ConfigurationError(f"'{INIT_FUNCTIONS}' holds a non-function entry",
                                     {"entry": repr(element)})
        out.append(fn.id)
    return out


def prepare(module: Module, callgraph: CallGraph, exclude: Sequence[str] = ("main",)) -> list[str]:
    """Record every defined function nobody calls as a candidate, in module order."""
    names = [
        fn.name for fn in module.functions
        if not fn.is_declaration and fn.name not in exclude and not callgraph.callees(fn.id)
    ]
    record_initial_functions(module, names)
    logger.info("prepared %d initial functions for '%s'", len(names), module.name)
    return names
