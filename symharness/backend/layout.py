"""Type layout service backed by llvmlite's TargetData."""

from __future__ import annotations

from llvmlite import binding as llvm_binding

from symharness.backend.emit import TypeLowering
from symharness.config import DEFAULT_DATA_LAYOUT
from symharness.ir.module import Module, is_sized
from symharness.ir.types import Type, FunctionType, I8_PTR


class DataLayout:
    """Answers ``size_of(type)`` for the types of one module.

    Function types have no size of their own and answer the pointer width;
    unsized types (opaque structs) answer ``opaque_size``.
    """

    def __init__(self, module: Module, layout: str = DEFAULT_DATA_LAYOUT,
                 opaque_size: int = 100):
        self.module = module
        self.opaque_size = opaque_size
        self.target_data = llvm_binding.create_target_data(layout)
        self._types = TypeLowering(module)
        self._cache: dict[Type, int] = {}

    @property
    def pointer_size(self) -> int:
        return self.size_of(I8_PTR)

    def size_of(self, ty: Type) -> int:
        if isinstance(ty, FunctionType):
            return self.pointer_size
        if not is_sized(self.module, ty):
            return self.opaque_size
        size = self._cache.get(ty)
        if size is None:
            size = self._types.lower(ty).get_abi_size(self.target_data,
                                                      context=self._types.context)
            self._cache[ty] = size
        return size
