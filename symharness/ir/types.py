"""Types of the program representation.

Types are immutable values spelled the way LLVM spells them (``i32``,
``i8*``, ``%struct.node*``, ``i32 (i8*, ...)``). Named struct types are
identified by name; their bodies live in the module's struct table so that
recursive structures can be expressed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Mapping


class Type:
    """Base class of all IR types."""

    def as_pointer(self) -> "PointerType":
        return PointerType(self)


@dataclass(frozen=True)
class VoidType(Type):
    def __str__(self) -> str:
        return "void"


@dataclass(frozen=True)
class IntType(Type):
    width: int

    def __str__(self) -> str:
        return f"i{self.width}"


@dataclass(frozen=True)
class DoubleType(Type):
    def __str__(self) -> str:
        return "double"


@dataclass(frozen=True)
class PointerType(Type):
    pointee: Type

    def __str__(self) -> str:
        return f"{self.pointee}*"


@dataclass(frozen=True)
class ArrayType(Type):
    element: Type
    count: int

    def __str__(self) -> str:
        return f"[{self.count} x {self.element}]"


@dataclass(frozen=True)
class StructType(Type):
    """Reference to a named struct; the body is looked up in the module."""
    name: str

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True)
class FunctionType(Type):
    return_type: Type
    params: tuple[Type, ...] = ()
    var_arg: bool = False

    def __str__(self) -> str:
        params = [str(p) for p in self.params]
        if self.var_arg:
            params.append("...")
        return f"{self.return_type} ({', '.join(params)})"


VOID = VoidType()
I1 = IntType(1)
I8 = IntType(8)
I32 = IntType(32)
I64 = IntType(64)
I8_PTR = PointerType(I8)


# ---------------------------------------------------------------------------
# Textual type parser
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\s*(\.\.\.|i\d+|void|double|%[\w.$-]+|\[|\]|\(|\)|\*|,|x\b|\d+)")


class TypeSyntaxError(ValueError):
    pass


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise TypeSyntaxError(f"bad type syntax near '{text[pos:]}' in '{text}'")
        tokens.append(m.group(1))
        pos = m.end()
    return tokens


class _TypeParser:
    def __init__(self, text: str, structs: Optional[Mapping[str, object]]):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.structs = structs

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, expected: Optional[str] = None) -> str:
        tok = self.peek()
        if tok is None or (expected is not None and tok != expected):
            raise TypeSyntaxError(f"expected '{expected or 'type'}' in '{self.text}'")
        self.pos += 1
        return tok

    def parse(self) -> Type:
        ty = self.parse_type()
        if self.peek() is not None:
            raise TypeSyntaxError(f"trailing tokens in '{self.text}'")
        return ty

    def parse_type(self) -> Type:
        ty = self.parse_base()
        while True:
            tok = self.peek()
            if tok == "*":
                self.take()
                if isinstance(ty, VoidType):
                    raise TypeSyntaxError(f"'void*' is not a type, use 'i8*' in '{self.text}'")
                ty = PointerType(ty)
            elif tok == "(":
                ty = self.parse_function(ty)
            else:
                return ty

    def parse_base(self) -> Type:
        tok = self.take()
        if tok == "void":
            return VOID
        if tok == "double":
            return DoubleType()
        if tok.startswith("i") and tok[1:].isdigit():
            return IntType(int(tok[1:]))
        if tok.startswith("%"):
            name = tok[1:]
            if self.structs is not None and name not in self.structs:
                raise TypeSyntaxError(f"unknown struct type '%{name}'")
            return StructType(name)
        if tok == "[":
            count = int(self.take())
            self.take("x")
            element = self.parse_type()
            self.take("]")
            return ArrayType(element, count)
        raise TypeSyntaxError(f"unexpected '{tok}' in '{self.text}'")

    def parse_function(self, return_type: Type) -> FunctionType:
        self.take("(")
        params: list[Type] = []
        var_arg = False
        while self.peek() != ")":
            if self.peek() == "...":
                self.take()
                var_arg = True
                break
            params.append(self.parse_type())
            if self.peek() == ",":
                self.take()
        self.take(")")
        return FunctionType(return_type, tuple(params), var_arg)


def parse_type(text: str, structs: Optional[Mapping[str, object]] = None) -> Type:
    """Parse an LLVM-style type spelling.

    When ``structs`` is given, struct references must name one of its keys.
    """
    return _TypeParser(text, structs).parse()
