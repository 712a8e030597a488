"""Per-cohort record of the remote calls issued through :class:`Connections`."""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path


@dataclass
class CallRecord:
    """One verb sent to one cohort, and how that cohort answered."""
    timestamp: str
    cohort: str
    verb: str
    expression: str
    symbol: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CallLog:
    """JSONL file holding a :class:`CallRecord` per cohort and call.

    A call that a cohort refuses is recorded with the server's message
    before the error propagates, so the log shows which cohort stopped a
    run and why.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        cohort: str,
        verb: str,
        expression: str,
        symbol: str | None = None,
        error: str | None = None,
    ) -> CallRecord:
        entry = CallRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            cohort=cohort,
            verb=verb,
            expression=expression,
            symbol=symbol,
            error=error,
        )
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(asdict(entry)) + "\n")
        return entry

    def records(self, cohort: str | None = None) -> list[CallRecord]:
        """Recorded calls in order, optionally for one *cohort* only."""
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as fh:
            entries = [CallRecord(**json.loads(line)) for line in fh if line.strip()]
        if cohort is not None:
            entries = [e for e in entries if e.cohort == cohort]
        return entries

    def failures(self) -> list[CallRecord]:
        return [e for e in self.records() if not e.ok]
