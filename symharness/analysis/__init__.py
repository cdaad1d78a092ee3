"""Static analyses the synthesizer consumes: points-to, call graph, candidates."""

from .pointsto import AbstractObject, PointsToAnalysis, PointsToSets, AndersenAnalysis
from .callgraph import CallGraph, CallEdge, CallSite, PointsToCallGraph
from .prepare import INIT_FUNCTIONS, initial_functions, record_initial_functions, prepare
from .entry_state import EntryState, state_at_call
