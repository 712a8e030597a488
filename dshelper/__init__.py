"""dshelper: helper routines for federated analysis across cohort servers."""

from dshelper.analysis.outcome import make_outcome
from dshelper.analysis.stats import get_stats
from dshelper.client.connections import Connections, DataSource, find_connections
from dshelper.errors import (
    ConnectionsNotFoundError,
    DisclosureError,
    DSHelperError,
    ExpressionError,
    NoDataError,
    RemoteError,
)
from dshelper.local.server import LocalDataSource

__version__ = "0.1.0"

__all__ = [
    "Connections",
    "ConnectionsNotFoundError",
    "DataSource",
    "DisclosureError",
    "DSHelperError",
    "ExpressionError",
    "LocalDataSource",
    "NoDataError",
    "RemoteError",
    "find_connections",
    "get_stats",
    "make_outcome",
]
