"""Client side: connections, expression building and remote verbs."""

from dshelper.client.audit import CallLog, CallRecord
from dshelper.client.connections import Connections, DataSource, find_connections
from dshelper.client.disclosure import DisclosureSettings

__all__ = [
    "CallLog",
    "CallRecord",
    "Connections",
    "DataSource",
    "DisclosureSettings",
    "find_connections",
]
