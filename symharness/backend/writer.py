"""Artifact writer: serializes a harness-augmented module to disk."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from llvmlite import binding as llvm_binding

from symharness.backend.emit import emit
from symharness.ir.module import Module

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    path: str
    ok: bool
    reason: Optional[str] = None


def artifact_name(module: Module, function_name: str, entry_name: str = "main") -> str:
    """``<module-id>.main.<function-name>.o``"""
    return f"{module.name}.{entry_name}.{function_name}.o"


class ArtifactWriter:
    """Writes LLVM bitcode (or textual assembly) for a module."""

    def __init__(self, output_dir: str = ".", output_format: str = "bitcode"):
        self.output_dir = output_dir
        self.output_format = output_format

    def encode(self, module: Module) -> bytes:
        text = emit(module)
        if self.output_format == "assembly":
            return text.encode("utf-8")
        return llvm_binding.parse_assembly(text).as_bitcode()

    def write(self, module: Module, filename: str) -> WriteResult:
        path = os.path.join(self.output_dir, filename)
        data = self.encode(module)
        try:
            with open(path, "wb") as out:
                out.write(data)
        except OSError as e:
            logger.error("cannot write '%s': %s", path, e.strerror or e)
            return WriteResult(path, False, str(e))
        logger.info("written: '%s'", path)
        return WriteResult(path, True)
