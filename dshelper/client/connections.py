"""Connections to the cohort servers of a federated analysis."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

from dshelper.client.audit import CallLog
from dshelper.errors import ConnectionsNotFoundError, RemoteError

logger = logging.getLogger(__name__)


class DataSource(ABC):
    """One cohort server.

    A server only understands two verbs: *assign* evaluates an expression and
    stores the result under a name, *aggregate* evaluates an expression and
    returns a disclosure-controlled value.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def assign(self, symbol: str, expression: str) -> None:
        """Evaluate *expression* remotely and bind the result to *symbol*."""
        ...

    @abstractmethod
    def aggregate(self, expression: str) -> Any:
        """Evaluate *expression* remotely and return the result."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class Connections(Mapping[str, DataSource]):
    """Ordered mapping of cohort name -> :class:`DataSource`.

    Calls fan out to every source in order, one at a time.
    """

    _default: Connections | None = None

    def __init__(
        self,
        sources: Iterable[DataSource],
        call_log: CallLog | None = None,
    ) -> None:
        self._sources: dict[str, DataSource] = {}
        for source in sources:
            if source.name in self._sources:
                raise ValueError(f"Duplicate cohort name '{source.name}'")
            self._sources[source.name] = source
        self.call_log = call_log

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------

    def __getitem__(self, name: str) -> DataSource:
        if name not in self._sources:
            raise KeyError(
                f"Cohort '{name}' not found. Available: {self.names}"
            )
        return self._sources[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)

    def __repr__(self) -> str:
        return f"Connections({self.names})"

    @property
    def names(self) -> list[str]:
        return list(self._sources)

    def subset(self, names: Iterable[str] | str) -> Connections:
        """Return connections restricted to *names*, in that order.

        Raises:
            KeyError: If a name is not one of these connections.
        """
        if isinstance(names, str):
            names = [names]
        return Connections(
            [self[name] for name in names],
            call_log=self.call_log,
        )

    # ------------------------------------------------------------------
    # Remote verbs
    # ------------------------------------------------------------------

    def assign(self, symbol: str, expression: str) -> None:
        """Assign ``symbol <- expression`` on every cohort."""
        logger.debug("assign %s <- %s on %s", symbol, expression, self.names)
        self._fan_out("assign", expression, lambda s: s.assign(symbol, expression), symbol=symbol)

    def aggregate(self, expression: str) -> dict[str, Any]:
        """Evaluate *expression* on every cohort; results keyed by cohort."""
        logger.debug("aggregate %s on %s", expression, self.names)
        return self._fan_out("aggregate", expression, lambda s: s.aggregate(expression))

    def _fan_out(
        self,
        verb: str,
        expression: str,
        call: Callable[[DataSource], Any],
        symbol: str | None = None,
    ) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for name, source in self._sources.items():
            try:
                results[name] = call(source)
            except RemoteError as e:
                if self.call_log is not None:
                    self.call_log.record(name, verb, expression, symbol=symbol, error=e.message)
                raise
            if self.call_log is not None:
                self.call_log.record(name, verb, expression, symbol=symbol)
        return results

    # ------------------------------------------------------------------
    # Default connections
    # ------------------------------------------------------------------

    def register(self) -> Connections:
        """Make these the connections used when none are passed."""
        Connections._default = self
        return self

    @classmethod
    def clear_default(cls) -> None:
        cls._default = None


def find_connections() -> Connections:
    """Return the registered default connections.

    Raises:
        ConnectionsNotFoundError: If none have been registered.
    """
    if Connections._default is None:
        raise ConnectionsNotFoundError(
            "No connections were given and none are registered. "
            "Pass 'conns' or call Connections.register() first."
        )
    return Connections._default
