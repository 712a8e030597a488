"""In-process cohort servers for development and testing."""

from dshelper.local.server import LocalDataSource, read_table

__all__ = ["LocalDataSource", "read_table"]
