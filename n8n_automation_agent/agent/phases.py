"""Phase State Machine for one creation attempt.

    understanding → designing → building → deploying → testing → completed
          └──────────────┴───────────┴──────────┴──────────┴──▶ failed

Progress belongs to the active phase and may only grow within it. A new
attempt builds a new machine, so progress restarts at understanding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from n8n_automation_agent.agent.models import (
    PHASE_ORDER,
    PHASE_PROGRESS,
    AgentState,
    Phase,
    PhaseSnapshot,
)
from n8n_automation_agent.errors import ErrorCategory, ValidationError

logger = logging.getLogger("n8n_automation_agent.agent.phases")


@dataclass(frozen=True)
class PhaseTransition:
    previous: Phase | None
    current: Phase
    progress: int
    agent_id: str | None = None
    error_category: ErrorCategory | None = None


class PhaseStateMachine:
    def __init__(self) -> None:
        self._phase: Phase | None = None
        self._progress = 0
        self._agents: dict[str, AgentState] = {}
        self._error_category: ErrorCategory | None = None
        self._failed_by: str | None = None

    @property
    def phase(self) -> Phase | None:
        return self._phase

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def failed_by(self) -> str | None:
        return self._failed_by

    def snapshot(self) -> PhaseSnapshot:
        if self._phase is None:
            raise ValidationError("Phase machine has not started")
        return PhaseSnapshot(
            phase=self._phase,
            progress=self._progress,
            agents=dict(self._agents),
            error_category=self._error_category,
        )

    def advance(self, target: Phase | str, agent_id: str | None = None) -> PhaseTransition:
        """Move to the next phase in order. Skips and re-entries are rejected."""
        target = Phase.parse(target)
        if target is Phase.FAILED:
            raise ValidationError("Use fail() to enter the failed phase")
        if self._phase is not None and self._phase.is_terminal:
            raise ValidationError(f"Phase machine already finished in {self._phase.value}")

        expected = PHASE_ORDER[0] if self._phase is None else PHASE_ORDER[PHASE_ORDER.index(self._phase) + 1]
        if target is not expected:
            raise ValidationError(
                f"Illegal phase transition {self._phase.value if self._phase else 'start'} -> "
                f"{target.value} (expected {expected.value})"
            )
        previous = self._phase
        self._phase = target
        self._progress = max(self._progress, PHASE_PROGRESS[target])
        logger.debug("Phase %s -> %s (%d%%)", previous, target.value, self._progress)
        return PhaseTransition(previous=previous, current=target, progress=self._progress, agent_id=agent_id)

    def report_progress(self, progress: int) -> int:
        """Raise progress within the current phase; decreases are rejected."""
        if self._phase is None or self._phase.is_terminal:
            raise ValidationError("No active phase to report progress for")
        if not 0 <= progress <= 100:
            raise ValidationError(f"Progress out of range: {progress}")
        if progress < self._progress:
            raise ValidationError(
                f"Progress may not decrease within {self._phase.value}: {self._progress} -> {progress}"
            )
        self._progress = progress
        return progress

    def record_agent(self, state: AgentState) -> None:
        self._agents[state.agent_id] = state

    def fail(self, agent_id: str, category: ErrorCategory) -> PhaseTransition:
        if self._phase is not None and self._phase.is_terminal:
            raise ValidationError(f"Phase machine already finished in {self._phase.value}")
        previous = self._phase
        self._phase = Phase.FAILED
        self._error_category = category
        self._failed_by = agent_id
        logger.info("Phase %s -> failed (agent=%s, category=%s)", previous, agent_id, category.value)
        return PhaseTransition(
            previous=previous,
            current=Phase.FAILED,
            progress=self._progress,
            agent_id=agent_id,
            error_category=category,
        )


# ---------------------------------------------------------------------------
# Reporter interface handed to agents during a run
# ---------------------------------------------------------------------------


class PhaseReporter(Protocol):
    """Channel through which agents publish their own state.

    The Coordinator supplies one per session; each call is turned into an
    event before it returns.
    """

    async def enter(self, phase: Phase, agent_id: str) -> None: ...

    async def progress(self, agent_id: str, progress: int) -> None: ...

    async def agent_state(self, state: AgentState) -> None: ...


class NullReporter:
    """Reporter for agents used outside a Coordinator (tests, scripts)."""

    async def enter(self, phase: Phase, agent_id: str) -> None:
        return None

    async def progress(self, agent_id: str, progress: int) -> None:
        return None

    async def agent_state(self, state: AgentState) -> None:
        return None
