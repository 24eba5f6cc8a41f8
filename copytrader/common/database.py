"""DuckDB connection utilities."""

from typing import Optional

import duckdb

from .config import DuckDBConfig, settings
from .logging import get_logger

logger = get_logger(__name__)

# Global connection instance
_duckdb_conn: Optional[duckdb.DuckDBPyConnection] = None


def connect_duckdb(config: Optional[DuckDBConfig] = None) -> duckdb.DuckDBPyConnection:
    """Open a new DuckDB connection from configuration."""
    config = config or settings.duckdb
    conn = duckdb.connect(
        database=config.database_path,
        config={
            "memory_limit": config.memory_limit,
            "threads": config.threads,
        }
    )
    conn.execute("SELECT 1")
    return conn


def init_duckdb(config: Optional[DuckDBConfig] = None) -> duckdb.DuckDBPyConnection:
    """Initialize the shared DuckDB connection."""
    global _duckdb_conn

    if _duckdb_conn is not None:
        return _duckdb_conn

    try:
        _duckdb_conn = connect_duckdb(config)
        logger.info("DuckDB connection established")
        return _duckdb_conn

    except Exception as e:
        logger.error("Failed to initialize DuckDB", exception=e)
        raise


def close_duckdb() -> None:
    """Close DuckDB connection."""
    global _duckdb_conn

    if _duckdb_conn:
        _duckdb_conn.close()
        _duckdb_conn = None
        logger.info("DuckDB connection closed")
