"""Pipeline orchestration: state machine, state directory, and stage runner."""

from shipline.pipeline.orchestrator import Pipeline, PipelineReport, StageOutcome
from shipline.pipeline.state import IllegalTransition, PipelineState, StateMachine
from shipline.pipeline.workspace import BuildState, Workspace

__all__ = [
    "BuildState",
    "IllegalTransition",
    "Pipeline",
    "PipelineReport",
    "PipelineState",
    "StageOutcome",
    "StateMachine",
    "Workspace",
]
