"""Program representation: types, arena module graph, builder and loader."""

from .types import (
    Type, VoidType, IntType, DoubleType, PointerType, ArrayType, StructType, FunctionType,
    TypeSyntaxError, parse_type, VOID, I1, I8, I32, I64, I8_PTR,
)
from .module import (
    Module, Function, BasicBlock, Instruction, GlobalVariable, Opcode, DebugLoc,
    Const, ZeroInit, CString, ConstArray, GlobalRef, CStringRef, ArgRef, InstRef,
    zero_value, is_sized,
)
from .builder import IRBuilder, check_call_signature
from .loader import load_module, module_from_dict
