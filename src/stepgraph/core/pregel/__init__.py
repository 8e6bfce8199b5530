"""Superstep execution: plans, the scheduler loop and compiled graphs."""

from stepgraph.core.pregel.plan import ExecutionPlan
from stepgraph.core.pregel.loop import RunStatus, StepCounter, StepEvent, SuperstepLoop
from stepgraph.core.pregel.compiled import CompiledGraph, StateSnapshot

__all__ = [
    'ExecutionPlan',
    'RunStatus',
    'StepCounter',
    'StepEvent',
    'SuperstepLoop',
    'CompiledGraph',
    'StateSnapshot',
]
