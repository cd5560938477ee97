"""Ordered deployment stages and the step-status tracker that owns their state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

import structlog

from agent_deploy.core.exceptions import DeploymentError, InvalidTransition
from agent_deploy.deploy.models import (
    ALLOWED_TRANSITIONS,
    DeploymentErrorInfo,
    StepState,
    StepStatus,
)
from agent_deploy.utils.metrics import record_step_state

logger = structlog.get_logger()

StepListener = Callable[[StepStatus], None]


class StageSkipped(Exception):
    """Raised by a stage body to mark its own step ``skipped``."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class Stage:
    """One named pipeline step.

    ``run`` receives the shared run context and returns nothing; it reports
    its outputs by writing to the context. ``error_type`` wraps unexpected
    exceptions so every failure carries a taxonomy kind.
    """

    name: str
    run: Callable[..., None]
    error_type: Type[DeploymentError] = DeploymentError


@dataclass(frozen=True)
class StepEvent:
    at: datetime
    status: StepStatus


class StepTracker:
    """Single writer for step statuses.

    Keeps an append-only event log and pushes every change to subscribers.
    Transitions must follow ``ALLOWED_TRANSITIONS``; a step never moves back.
    """

    def __init__(self, step_names: Sequence[str]):
        self._order: Tuple[str, ...] = tuple(step_names)
        self._statuses: Dict[str, StepStatus] = {name: StepStatus(name=name) for name in self._order}
        self._events: List[StepEvent] = []
        self._listeners: List[StepListener] = []

    def subscribe(self, listener: StepListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def events(self) -> Tuple[StepEvent, ...]:
        return tuple(self._events)

    def get(self, name: str) -> StepStatus:
        return self._statuses[name]

    def snapshot(self) -> Tuple[StepStatus, ...]:
        return tuple(self._statuses[name] for name in self._order)

    def all_terminal(self) -> bool:
        return all(s.state.is_terminal for s in self._statuses.values())

    def start(self, name: str) -> None:
        self._transition(name, StepState.IN_PROGRESS)

    def complete(self, name: str) -> None:
        self._transition(name, StepState.COMPLETED)

    def skip(self, name: str, reason: str) -> None:
        self._transition(name, StepState.SKIPPED, reason=reason)

    def fail(self, name: str, error: DeploymentErrorInfo) -> None:
        self._transition(name, StepState.FAILED, reason=error.message, error=error)

    def skip_remaining(self, reason: str) -> None:
        for name in self._order:
            if self._statuses[name].state == StepState.PENDING:
                self.skip(name, reason)

    def _transition(
        self,
        name: str,
        state: StepState,
        reason: Optional[str] = None,
        error: Optional[DeploymentErrorInfo] = None,
    ) -> None:
        current = self._statuses[name]
        if state not in ALLOWED_TRANSITIONS[current.state]:
            raise InvalidTransition(f"Step {name!r} cannot move from {current.state.value} to {state.value}")

        status = StepStatus(name=name, state=state, reason=reason, error=error)
        self._statuses[name] = status
        self._events.append(StepEvent(at=datetime.now(timezone.utc), status=status))
        if state.is_terminal:
            record_step_state(name, state.value)
        logger.debug("Step status changed", step=name, state=state.value, reason=reason)

        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Step listener failed", step=name)
