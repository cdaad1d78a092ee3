"""Harness generation pipeline.

    find failure function → call graph → candidate list
        → for each candidate calling the failure function directly:
              synthesize → verify → write → remove scaffolding

Only direct call edges from a candidate to the failure function qualify it;
reachability through intermediate callees is deliberately not followed.
Candidates are processed strictly in order because every synthesis mutates
the shared module.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from symharness.analysis.callgraph import CallGraph, PointsToCallGraph
from symharness.analysis.entry_state import state_at_call
from symharness.analysis.pointsto import PointsToAnalysis, AndersenAnalysis
from symharness.analysis.prepare import initial_functions
from symharness.backend.layout import DataLayout
from symharness.backend.verifier import Verifier, default_verifier
from symharness.backend.writer import ArtifactWriter, artifact_name
from symharness.config import HarnessConfig
from symharness.errors import ConfigurationError, HarnessError, verification_error, io_error
from symharness.harness import Harness, HarnessSynthesizer
from symharness.ir.module import Module, Function, Value

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    function: str
    path: str


@dataclass
class RunReport:
    module: str
    qualifying: list[str] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    failures: list[HarnessError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "qualifying": self.qualifying,
            "artifacts": [{"function": a.function, "path": a.path} for a in self.artifacts],
            "failures": [f.to_dict() for f in self.failures],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


# ---------------------------------------------------------------------------
# Reachability filter
# ---------------------------------------------------------------------------

def calls_directly(callgraph: CallGraph, caller: int, callee: int) -> bool:
    return any(edge.callee == callee for edge in callgraph.calls(caller))


def qualifying_candidates(module: Module, callgraph: CallGraph,
                          failure: Function) -> Iterator[Function]:
    """Candidates, in list order, with a direct call edge to ``failure``.

    Raises ConfigurationError if the module has no candidate list.
    """
    for fid in initial_functions(module):
        if calls_directly(callgraph, fid, failure.id):
            yield module.function(fid)


# ---------------------------------------------------------------------------
# Initializer snapshots (isolate mode)
# ---------------------------------------------------------------------------

def snapshot_initializers(module: Module) -> dict[str, Optional[Value]]:
    return {name: gv.initializer for name, gv in module.globals.items()}


def restore_initializers(module: Module, snapshot: dict[str, Optional[Value]]) -> None:
    for name, initializer in snapshot.items():
        if name in module.globals:
            module.globals[name].initializer = initializer


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class HarnessPipeline:
    """Runs harness generation over a loaded module."""

    def __init__(self, config: Optional[HarnessConfig] = None,
                 points_to: Optional[PointsToAnalysis] = None,
                 verifier: Optional[Verifier] = None,
                 writer: Optional[ArtifactWriter] = None):
        self.config = config or HarnessConfig()
        self.points_to = points_to or AndersenAnalysis(
            allocators=(self.config.allocator, "calloc", "realloc"))
        self.verifier = verifier or default_verifier()
        self.writer = writer or ArtifactWriter(self.config.output_dir, self.config.output_format)

    def build_callgraph(self, module: Module) -> CallGraph:
        return PointsToCallGraph(module, self.points_to.compute(module))

    def run(self, module: Module) -> RunReport:
        config = self.config
        report = RunReport(module.name)

        if module.state_prefix != config.state_prefix:
            raise ConfigurationError(
                f"module '{module.name}' was loaded with state prefix '{module.state_prefix}', "
                f"configured prefix is '{config.state_prefix}'",
                {"module_prefix": module.state_prefix, "config_prefix": config.state_prefix})

        failure = module.get_function(config.failure_function)
        if failure is None:
            logger.info("'%s' has no '%s', nothing to do", module.name, config.failure_function)
            return report

        callgraph = self.build_callgraph(module)
        if not callgraph.callees(failure.id):
            logger.info("nothing calls '%s' in '%s'", config.failure_function, module.name)
            return report

        layout = DataLayout(module, config.data_layout, config.opaque_type_size)
        synthesizer = HarnessSynthesizer(module, layout, config)

        for candidate in qualifying_candidates(module, callgraph, failure):
            report.qualifying.append(candidate.name)
            written = self._emit(synthesizer, candidate, report)
            if written and config.candidate_policy == "first":
                break
        return report

    def _emit(self, synthesizer: HarnessSynthesizer, candidate: Function,
              report: RunReport) -> bool:
        module, config = synthesizer.module, self.config
        snapshot = snapshot_initializers(module) if config.initializer_mode == "isolate" else None
        try:
            harness = synthesizer.synthesize(candidate.id)
            try:
                return self._verify_and_write(module, harness, report)
            finally:
                synthesizer.remove(harness)
        finally:
            if snapshot is not None:
                restore_initializers(module, snapshot)

    def _verify_and_write(self, module: Module, harness: Harness, report: RunReport) -> bool:
        config = self.config
        name = harness.candidate_name

        if config.check_entry_state:
            state = state_at_call(module, harness.entry, harness.call, config.symbolic_primitive)
            for gv in module.state_variables:
                if not state.is_concrete_zero(gv.name):
                    logger.warning("state variable '%s' is not zero on entry to '%s'",
                                   gv.name, name)

        result = self.verifier.validate(module)
        if not result:
            logger.error("harness for '%s' failed verification:\n  %s",
                         name, "\n  ".join(result.messages))
            report.failures.append(verification_error(name, result.messages))
            return False

        written = self.writer.write(module, artifact_name(module, name, config.entry_name))
        if not written.ok:
            report.failures.append(io_error(name, written.path, written.reason or ""))
            return False
        report.artifacts.append(Artifact(name, written.path))
        return True


def run(module: Module, config: Optional[HarnessConfig] = None) -> RunReport:
    """Generate harnesses for ``module`` with the default analyses."""
    return HarnessPipeline(config).run(module)
