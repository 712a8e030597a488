"""Result containers returned by the orchestration routines."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import pandas as pd


def _records(df: pd.DataFrame) -> list[dict]:
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


@dataclass
class StatsResult:
    """Descriptive statistics in long form, one table per variable kind."""

    categorical: pd.DataFrame
    continuous: pd.DataFrame
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "categorical": _records(self.categorical),
            "continuous": _records(self.continuous),
        }


@dataclass
class OutcomeResult:
    """Outcome of deriving band variables from repeated measures."""

    name: str
    availability: pd.DataFrame
    cohorts: list[str]
    steps: list[dict] = field(default_factory=list)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "cohorts": self.cohorts,
            "availability": _records(self.availability),
            "steps": self.steps,
        }
