"""Storage adapters implementing RecordStorePort."""

from proclog.adapters.storage.duckdb_adapter import DuckDBAdapter
from proclog.adapters.storage.postgresql_adapter import PostgreSQLAdapter

__all__ = ["DuckDBAdapter", "PostgreSQLAdapter"]
