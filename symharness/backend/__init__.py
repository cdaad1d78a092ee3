"""LLVM backend: lowering, type layout, verification and artifact writing."""

from .emit import LLVMEmitter, TypeLowering, emit
from .layout import DataLayout
from .verifier import (
    Verifier, VerificationResult, StructuralVerifier, LLVMVerifier, ChainVerifier,
    default_verifier,
)
from .writer import ArtifactWriter, WriteResult, artifact_name
