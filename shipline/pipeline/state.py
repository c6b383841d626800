"""Pipeline state machine."""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Stages a pipeline run moves through."""

    IDLE = "idle"
    BUILDING = "building"
    VERIFYING = "verifying"
    TESTING = "testing"
    GATING = "gating"
    PUBLISHING = "publishing"
    BACKING_UP = "backing_up"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


S = PipelineState

# Every command starts at IDLE and enters the chain at its own first stage.
TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    S.IDLE: frozenset({S.BUILDING, S.TESTING, S.PUBLISHING, S.BACKING_UP, S.ROLLING_BACK}),
    S.BUILDING: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.TESTING, S.DONE}),
    S.TESTING: frozenset({S.GATING}),
    S.GATING: frozenset({S.PUBLISHING, S.DONE}),
    S.PUBLISHING: frozenset({S.BACKING_UP, S.DONE}),
    S.BACKING_UP: frozenset({S.DEPLOYING}),
    S.DEPLOYING: frozenset({S.HEALTH_CHECKING, S.ROLLING_BACK}),
    S.HEALTH_CHECKING: frozenset({S.DONE, S.ROLLING_BACK}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK}),
    S.DONE: frozenset(),
    S.ROLLED_BACK: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL = frozenset({S.DONE, S.ROLLED_BACK, S.FAILED})


class IllegalTransition(Exception):
    """Raised when a run tries to move between unconnected states."""


class StateMachine:
    """Track one run's state and reject transitions the chain does not allow.

    Any non-terminal state may move to ``FAILED``.
    """

    def __init__(self) -> None:
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL

    def can_enter(self, target: PipelineState) -> bool:
        if target is PipelineState.FAILED:
            return not self.finished
        return target in TRANSITIONS[self.state]

    def enter(self, target: PipelineState) -> None:
        if not self.can_enter(target):
            raise IllegalTransition(f"{self.state.value} -> {target.value}")
        logger.debug("state %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)
