"""Exception types raised by dshelper."""

from __future__ import annotations


class DSHelperError(Exception):
    """Base class for dshelper errors."""


class ConnectionsNotFoundError(DSHelperError):
    """No connections were passed and no default connections are registered."""


class NoDataError(DSHelperError, ValueError):
    """None of the cohorts hold the data an operation needs."""


class DisclosureError(DSHelperError, ValueError):
    """A request would break the platform's disclosure settings."""


class ExpressionError(DSHelperError, ValueError):
    """A remote expression could not be parsed."""


class RemoteError(DSHelperError):
    """Error reported by a cohort server.

    Attributes
    ----------
    cohort:
        Name of the cohort whose server refused the call.
    """

    def __init__(self, cohort: str, message: str) -> None:
        super().__init__(f"[{cohort}] {message}")
        self.cohort = cohort
        self.message = message
