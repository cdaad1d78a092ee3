"""Structured error objects for the harness synthesizer.

Every reported problem is machine-readable. Recoverable problems (a rejected
module, an unwritable artifact) are collected as ``HarnessError`` records in
the run report; the two fatal classes are raised as exceptions because they
indicate a pipeline-ordering or construction bug, not a data-dependent
failure.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    CONFIGURATION_ERROR = "configuration_error"
    SIGNATURE_ERROR = "signature_error"
    VERIFICATION_ERROR = "verification_error"
    IO_ERROR = "io_error"
    LOAD_ERROR = "load_error"


@dataclass
class HarnessError:
    kind: ErrorKind
    message: str
    function: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.function:
            d["function"] = self.function
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        where = f" in '{self.function}'" if self.function else ""
        return f"[{self.kind.value}]{where}: {self.message}"


def verification_error(function: str, messages: list[str]) -> HarnessError:
    return HarnessError(
        kind=ErrorKind.VERIFICATION_ERROR,
        message="synthesized module failed verification",
        function=function,
        details={"messages": messages},
    )


def io_error(function: str, path: str, reason: str) -> HarnessError:
    return HarnessError(
        kind=ErrorKind.IO_ERROR,
        message=f"cannot write '{path}'",
        function=function,
        details={"path": path, "reason": reason},
    )


class SymHarnessError(Exception):
    """Exception wrapping a HarnessError."""

    def __init__(self, error: HarnessError):
        self.error = error
        super().__init__(str(error))

    def to_json(self, indent: int = 2) -> str:
        return self.error.to_json(indent=indent)


class ConfigurationError(SymHarnessError):
    """A prerequisite is missing or a setting is invalid."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(HarnessError(
            kind=ErrorKind.CONFIGURATION_ERROR,
            message=message,
            details=details or {},
        ))


class SignatureError(SymHarnessError):
    """A constructed call does not match the callee's formal parameters."""

    def __init__(self, function: str, message: str, details: Optional[dict] = None):
        super().__init__(HarnessError(
            kind=ErrorKind.SIGNATURE_ERROR,
            message=message,
            function=function,
            details=details or {},
        ))


class LoadError(SymHarnessError):
    """A module description is malformed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(HarnessError(
            kind=ErrorKind.LOAD_ERROR,
            message=message,
            details=details or {},
        ))
