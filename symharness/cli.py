"""symharness CLI.

Commands:
  symharness run <module.json>            Generate one harness artifact per qualifying function
  symharness candidates <module.json>     List the functions that would get a harness
  symharness emit <module.json>           Print the module as LLVM IR
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from symharness import __version__
from symharness.analysis.prepare import INIT_FUNCTIONS, prepare
from symharness.backend.emit import emit
from symharness.config import load_config
from symharness.errors import SymHarnessError
from symharness.ir.loader import load_module
from symharness.pipeline import HarnessPipeline, qualifying_candidates


def _load(args: argparse.Namespace):
    config = load_config(args.config, start_dir=os.path.dirname(os.path.abspath(args.file)))
    overrides = {
        "candidate_policy": getattr(args, "policy", None),
        "output_dir": getattr(args, "output_dir", None),
        "output_format": getattr(args, "output_format", None),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    if getattr(args, "isolate", False):
        config.initializer_mode = "isolate"
    config.validate()
    module = load_module(args.file, state_prefix=config.state_prefix)
    return config, module


def cmd_run(args: argparse.Namespace) -> int:
    """Run harness generation and print the report."""
    if not os.path.exists(args.file):
        print(json.dumps({"error": f"File not found: {args.file}"}))
        return 1
    try:
        config, module = _load(args)
        pipeline = HarnessPipeline(config)
        if args.prepare and INIT_FUNCTIONS not in module.globals:
            prepare(module, pipeline.build_callgraph(module), exclude=(config.entry_name,))
        report = pipeline.run(module)
    except SymHarnessError as e:
        print(e.to_json())
        return 1
    print(report.to_json())
    return 0


def cmd_candidates(args: argparse.Namespace) -> int:
    """List qualifying candidates without synthesizing anything."""
    if not os.path.exists(args.file):
        print(json.dumps({"error": f"File not found: {args.file}"}))
        return 1
    try:
        config, module = _load(args)
        pipeline = HarnessPipeline(config)
        callgraph = pipeline.build_callgraph(module)
        if args.prepare and INIT_FUNCTIONS not in module.globals:
            prepare(module, callgraph, exclude=(config.entry_name,))
        failure = module.get_function(config.failure_function)
        if failure is None:
            names = []
        else:
            names = [f.name for f in qualifying_candidates(module, callgraph, failure)]
    except SymHarnessError as e:
        print(e.to_json())
        return 1
    print(json.dumps({"module": module.name, "candidates": names}, indent=2))
    return 0


def cmd_emit(args: argparse.Namespace) -> int:
    """Lower the module to LLVM IR text."""
    if not os.path.exists(args.file):
        print(json.dumps({"error": f"File not found: {args.file}"}))
        return 1
    try:
        _, module = _load(args)
    except SymHarnessError as e:
        print(e.to_json())
        return 1
    text = emit(module)
    if args.output:
        with open(args.output, "w") as f:
            f.write(text)
        print(json.dumps({"status": "llvm_ir_emitted", "path": args.output}))
    else:
        print(text)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="symharness",
        description="Synthesize symbolic-execution harnesses for functions reaching an assertion",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run
    p_run = subparsers.add_parser("run", help="Generate harness artifacts")
    p_run.add_argument("file", help="Module description (.json)")
    p_run.add_argument("--config", help="Config file (default: nearest .symharnessrc.*)")
    p_run.add_argument("-o", "--output-dir", dest="output_dir", help="Artifact directory")
    p_run.add_argument("--policy", choices=["first", "all"], help="Stop after the first harness or not")
    p_run.add_argument("--isolate", action="store_true",
                       help="Restore global initializers between candidates")
    p_run.add_argument("--format", dest="output_format", choices=["bitcode", "assembly"],
                       help="Artifact encoding")
    p_run.add_argument("--prepare", action="store_true",
                       help="Derive the candidate list when the module has none")
    p_run.set_defaults(func=cmd_run)

    # candidates
    p_cand = subparsers.add_parser("candidates", help="List qualifying functions")
    p_cand.add_argument("file", help="Module description (.json)")
    p_cand.add_argument("--config", help="Config file")
    p_cand.add_argument("--prepare", action="store_true",
                        help="Derive the candidate list when the module has none")
    p_cand.set_defaults(func=cmd_candidates)

    # emit
    p_emit = subparsers.add_parser("emit", help="Print the module as LLVM IR")
    p_emit.add_argument("file", help="Module description (.json)")
    p_emit.add_argument("--config", help="Config file")
    p_emit.add_argument("-o", "--output", help="Write to a .ll file instead of stdout")
    p_emit.set_defaults(func=cmd_emit)

    args = parser.parse_args(argv)
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(name)s: %(message)s",
    )
    if not args.command:
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
