"""Per-phase timing for the creation pipeline.

PhaseMetrics       frozen record of one pipeline phase's duration and LLM usage.
MetricsCollector   async context manager; read .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("designing") as m:
        response = await engine.complete(messages, system=prompt)
        m.input_tokens = response.input_tokens
        m.output_tokens = response.output_tokens
    durations[m.phase] = m.result.duration_ms

The collector records whether the phase raised, so a failed phase still
contributes its duration to the DeploymentResult.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


@dataclasses.dataclass(frozen=True)
class PhaseMetrics:
    """Timing snapshot for one pipeline phase.

    Fields
    ------
    phase:         Phase name ("understanding", "designing", ...).
    start_ts:      Unix timestamp at phase start.
    end_ts:        Unix timestamp at phase end.
    duration_ms:   (end_ts - start_ts) * 1000.
    input_tokens:  LLM prompt tokens consumed (0 when the phase made no LLM call).
    output_tokens: LLM completion tokens produced.
    failed:        True when the phase exited with an exception.
    """

    phase: str
    start_ts: float
    end_ts: float
    duration_ms: float
    input_tokens: int = 0
    output_tokens: int = 0
    failed: bool = False


class MetricsCollector:
    """Async context manager that records one phase's timing."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.input_tokens: int = 0
        self.output_tokens: int = 0
        self._start_ts: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, exc_type: type | None, *_args: object) -> None:
        end_ts = time.time()
        self._result = PhaseMetrics(
            phase=self.phase,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=round((end_ts - self._start_ts) * 1000, 2),
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            failed=exc_type is not None,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self._result) if self._result is not None else {}
