"""Well-formedness verification of a Module.

Two layers: ``StructuralVerifier`` checks the arena graph itself (live
handles, block termination, operand and call typing), ``LLVMVerifier``
lowers the module and hands it to LLVM's verifier (dominance, full type
consistency). ``default_verifier()`` chains both.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from llvmlite import binding as llvm_binding

from symharness.backend.emit import LLVMEmitter
from symharness.errors import SignatureError
from symharness.ir.builder import check_call_signature
from symharness.ir.module import (
    Module, Function, Instruction, Opcode, ArgRef, InstRef, GlobalRef, CStringRef,
)
from symharness.ir.types import PointerType, FunctionType, VoidType, I1

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    ok: bool
    messages: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.ok


class Verifier(ABC):
    @abstractmethod
    def validate(self, module: Module) -> VerificationResult:
        ...


class StructuralVerifier(Verifier):
    """Checks the invariants the arena graph must hold before lowering."""

    def validate(self, module: Module) -> VerificationResult:
        messages: list[str] = []
        for fn in module.functions:
            for bid in fn.blocks:
                messages.extend(self._check_block(module, fn, bid))
        return VerificationResult(not messages, messages)

    def _check_block(self, module: Module, fn: Function, bid: int) -> list[str]:
        block = module.block(bid)
        where = f"{fn.name}:{block.label}"
        if not block.instructions:
            return [f"{where}: empty block"]
        out = []
        for pos, iid in enumerate(block.instructions):
            if not module.is_live_instruction(iid):
                out.append(f"{where}: dangling instruction handle {iid}")
                continue
            inst = module.instruction(iid)
            last = pos == len(block.instructions) - 1
            if inst.opcode.is_terminator and not last:
                out.append(f"{where}: terminator '{inst.opcode.value}' before end of block")
            if last and not inst.opcode.is_terminator:
                out.append(f"{where}: block does not end in a terminator")
            out.extend(f"{where}: {m}" for m in self._check_instruction(module, fn, inst))
        return out

    def _check_instruction(self, module: Module, fn: Function, inst: Instruction) -> list[str]:
        out = []
        values = list(inst.operands)
        if inst.callee is not None:
            values.append(inst.callee)
        for v in values:
            if isinstance(v, InstRef):
                if not module.is_live_instruction(v.id):
                    out.append(f"operand refers to removed instruction {v.id}")
                elif module.function_of(module.instruction(v.id)) != fn.id:
                    out.append(f"operand refers to instruction {v.id} of another function")
            elif isinstance(v, ArgRef):
                if v.function != fn.id or v.index >= len(fn.type.params):
                    out.append(f"operand refers to a foreign argument {v}")
            elif isinstance(v, (GlobalRef, CStringRef)):
                if v.name not in module.globals and module.get_function(v.name) is None:
                    out.append(f"operand refers to unknown symbol '@{v.name}'")
        if out:
            return out

        for bid in inst.targets:
            try:
                target = module.block(bid)
            except (KeyError, IndexError):
                out.append(f"branch to removed block {bid}")
                continue
            if target.function != fn.id:
                out.append(f"branch to block '{target.label}' of another function")

        op = inst.opcode
        if op == Opcode.STORE:
            vty, pty = module.type_of(inst.operands[0]), module.type_of(inst.operands[1])
            if pty != PointerType(vty):
                out.append(f"store of '{vty}' through '{pty}'")
        elif op == Opcode.LOAD:
            pty = module.type_of(inst.operands[0])
            if pty != PointerType(inst.type):
                out.append(f"load of '{inst.type}' from '{pty}'")
        elif op == Opcode.CONDBR:
            if module.type_of(inst.operands[0]) != I1:
                out.append("conditional branch on a non-i1 value")
        elif op == Opcode.RET:
            expected = fn.type.return_type
            if isinstance(expected, VoidType):
                if inst.operands:
                    out.append("value returned from a void function")
            elif not inst.operands or module.type_of(inst.operands[0]) != expected:
                out.append(f"return does not produce '{expected}'")
        elif op == Opcode.CALL:
            cty = module.type_of(inst.callee)
            if not (isinstance(cty, PointerType) and isinstance(cty.pointee, FunctionType)):
                out.append(f"call through non-function type '{cty}'")
            else:
                try:
                    name = inst.callee.name if isinstance(inst.callee, GlobalRef) else "<indirect>"
                    check_call_signature(module, name, cty.pointee, inst.operands)
                except SignatureError as e:
                    out.append(e.error.message)
        return out


class LLVMVerifier(Verifier):
    """Lowers the module with llvmlite and runs LLVM's IR verifier."""

    def validate(self, module: Module) -> VerificationResult:
        try:
            text = str(LLVMEmitter().emit_module(module))
        except (KeyError, NameError, TypeError, ValueError) as e:
            return VerificationResult(False, [f"lowering failed: {e}"])
        try:
            llvm_binding.parse_assembly(text).verify()
        except RuntimeError as e:
            return VerificationResult(False, [str(e).strip()])
        return VerificationResult(True)


class ChainVerifier(Verifier):
    """Runs verifiers in order and stops at the first rejection."""

    def __init__(self, *verifiers: Verifier):
        self.verifiers = verifiers

    def validate(self, module: Module) -> VerificationResult:
        for verifier in self.verifiers:
            result = verifier.validate(module)
            if not result:
                logger.debug("%s rejected '%s'", type(verifier).__name__, module.name)
                return result
        return VerificationResult(True)


def default_verifier() -> Verifier:
    return ChainVerifier(StructuralVerifier(), LLVMVerifier())
