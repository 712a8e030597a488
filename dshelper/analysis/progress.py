"""Numbered progress steps for long-running remote routines."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass
class ProgressStep:
    description: str
    status: str = "pending"  # pending, running, completed, failed
    error: str = ""


class StepProgress:
    """Report ``** Step i of n: ... DONE`` for a fixed list of steps."""

    def __init__(self, descriptions: list[str], logger: logging.Logger | None = None):
        self._steps = [ProgressStep(description=d) for d in descriptions]
        self._logger = logger or logging.getLogger(__name__)

    @property
    def steps(self) -> list[ProgressStep]:
        return list(self._steps)

    @contextmanager
    def step(self, description: str) -> Iterator[ProgressStep]:
        """Run the block as the step called *description*."""
        for index, step in enumerate(self._steps, start=1):
            if step.description == description:
                break
        else:
            raise KeyError(f"Step '{description}' not found")

        label = f"** Step {index} of {len(self._steps)}: {description}"
        step.status = "running"
        self._logger.info("%s ...", label)
        try:
            yield step
        except Exception as e:
            step.status = "failed"
            step.error = str(e)
            self._logger.info("%s ... FAILED", label)
            raise
        step.status = "completed"
        self._logger.info("%s ... DONE", label)

    def summary(self) -> list[dict]:
        return [
            {"description": s.description, "status": s.status, "error": s.error}
            for s in self._steps
        ]
