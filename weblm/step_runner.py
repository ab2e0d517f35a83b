from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger("weblm.lecture")

C = TypeVar("C")


@dataclass
class RunnerStep(Generic[C]):
    """Step descriptor for the cancellable async runner."""
    name: str
    fn: Callable[[C], Awaitable[None]]


@dataclass
class RunResult:
    completed: int
    cancelled: bool
    stopped_at: Optional[str] = None


class StepRunner(Generic[C]):
    """Runs async steps strictly in order, checking a validity guard before each."""

    def __init__(self, steps: List[RunnerStep[C]], is_valid: Callable[[], bool]) -> None:
        """Purpose: Initialize the runner with an ordered step list and a guard.
        Inputs/Outputs: Inputs are RunnerSteps and a zero-arg validity predicate.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond RunnerStep definitions.
        Failure Modes: None; assumes valid coroutine functions in steps.
        If Removed: Narration steps have no ordered, cancellable driver.
        Testing Notes: Flip the guard inside a step and verify later steps never run.
        """
        # The guard is usually a cancellation token's is_valid.
        self._steps = steps
        self._is_valid = is_valid

    async def run(self, context: C) -> RunResult:
        """Purpose: Await steps in order while the guard holds.
        Inputs/Outputs: Input is a mutable context object; returns a RunResult.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: RunnerStep.fn and the validity guard.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: Playback cannot run or cancel between steps.
        Testing Notes: Verify ordering and the early stop on an invalid guard.
        """
        # A stale guard ends the run before the next step starts.
        completed = 0
        for step in self._steps:
            if not self._is_valid():
                logger.debug("runner stopped before step=%s", step.name)
                return RunResult(completed=completed, cancelled=True, stopped_at=step.name)
            await step.fn(context)
            completed += 1
        return RunResult(completed=completed, cancelled=not self._is_valid())
