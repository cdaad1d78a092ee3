"""symharness configuration: project-level .symharnessrc.yml support.

Loads configuration from .symharnessrc.yml (or .symharnessrc.yaml,
.symharnessrc.json) found by walking up from a start directory.

Example .symharnessrc.yml:
    failure_function: __assert_fail
    candidate_policy: all          # first | all
    initializer_mode: isolate      # persist | isolate
    output_dir: build/harnesses
    output_format: bitcode         # bitcode | assembly
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from symharness.errors import ConfigurationError


CANDIDATE_POLICIES = ("first", "all")
INITIALIZER_MODES = ("persist", "isolate")
OUTPUT_FORMATS = ("bitcode", "assembly")

# x86-64 System V
DEFAULT_DATA_LAYOUT = "e-m:e-p270:32:32-p271:32:32-p272:64:64-i64:64-f80:128-n8:16:32:64-S128"


@dataclass
class HarnessConfig:
    """Settings for one harness synthesis run."""
    # Well-known names resolved against the module
    failure_function: str = "__assert_fail"
    abort_function: str = "__assert_fail"
    symbolic_primitive: str = "klee_make_symbolic"
    allocator: str = "malloc"
    entry_name: str = "main"
    state_prefix: str = "__ai_state_"
    # Pointer arguments point into the middle of an oversized symbolic buffer
    buffer_elements: int = 4000
    buffer_offset: int = 2000
    opaque_type_size: int = 100
    # "first" stops after the first harness written, "all" keeps going
    candidate_policy: str = "first"
    # "persist" keeps initializer changes across candidates, "isolate" restores them
    initializer_mode: str = "persist"
    # Output
    output_dir: str = "."
    output_format: str = "bitcode"
    data_layout: str = DEFAULT_DATA_LAYOUT
    check_entry_state: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.candidate_policy not in CANDIDATE_POLICIES:
            raise ConfigurationError(
                f"unknown candidate policy '{self.candidate_policy}'",
                {"allowed": list(CANDIDATE_POLICIES)},
            )
        if self.initializer_mode not in INITIALIZER_MODES:
            raise ConfigurationError(
                f"unknown initializer mode '{self.initializer_mode}'",
                {"allowed": list(INITIALIZER_MODES)},
            )
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigurationError(
                f"unknown output format '{self.output_format}'",
                {"allowed": list(OUTPUT_FORMATS)},
            )
        if not 0 <= self.buffer_offset < self.buffer_elements:
            raise ConfigurationError(
                "buffer_offset must lie inside the buffer",
                {"buffer_offset": self.buffer_offset,
                 "buffer_elements": self.buffer_elements},
            )


# ---------------------------------------------------------------------------
# Config file names (in priority order)
# ---------------------------------------------------------------------------

_CONFIG_FILES = [
    ".symharnessrc.yml",
    ".symharnessrc.yaml",
    ".symharnessrc.json",
]


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> HarnessConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from start_dir.
    If no config file is found, returns defaults.
    """
    if path is None:
        path = find_config(start_dir)

    if path is None:
        return HarnessConfig()

    with open(path, "r") as f:
        content = f.read()

    try:
        if path.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot parse config file '{path}'", {"reason": str(e)})

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file '{path}' must hold a mapping")
    return config_from_dict(data)


def config_from_dict(data: Dict[str, Any]) -> HarnessConfig:
    """Convert a parsed dict to HarnessConfig, coercing to the field types."""
    known = {f.name: f for f in fields(HarnessConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError("unknown config keys", {"keys": unknown})

    values: Dict[str, Any] = {}
    for key, value in data.items():
        default = getattr(HarnessConfig, key)
        if isinstance(default, bool):
            values[key] = bool(value)
        elif isinstance(default, int):
            values[key] = int(value)
        else:
            values[key] = str(value)
    return HarnessConfig(**values)
