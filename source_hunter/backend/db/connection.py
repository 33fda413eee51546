"""Database connection manager with FK enforcement, WAL mode and schema setup."""

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"
DEFAULT_DB_PATH = './data/source_hunter.db'


def get_db_path(db_path: Optional[str] = None) -> str:
    """Resolve the database path: explicit argument, then DB_PATH, then the default."""
    if db_path is None:
        db_path = os.environ.get('DB_PATH', DEFAULT_DB_PATH)
    return db_path


def open_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Open a long-lived SQLite connection with FK enforcement and WAL mode.

    The caller owns the connection and must close it. Used by the API lifespan
    and the CLI, which keep one connection for the whole process.
    """
    db_path = get_db_path(db_path)
    if db_path != ':memory:':
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # Connect with cross-thread compatibility
    conn = sqlite3.connect(db_path, check_same_thread=False)

    # Enable dict-like row access
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def get_connection(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager that yields an SQLite connection with FK enforcement and WAL mode.

    Args:
        db_path: Path to the SQLite database file. If None, reads from DB_PATH
                 environment variable, falling back to './data/source_hunter.db'.

    Yields:
        sqlite3.Connection: Database connection with foreign keys enabled,
                           WAL mode active, and row_factory set to sqlite3.Row.

    Example:
        with get_connection() as conn:
            init_schema(conn)
            rows = conn.execute("SELECT * FROM comments").fetchall()
    """
    conn = None
    try:
        conn = open_connection(db_path)
        yield conn

    finally:
        if conn is not None:
            conn.close()


def init_schema(conn: sqlite3.Connection) -> None:
    """
    Create all tables, indexes and default config rows (idempotent).

    executescript() resets per-connection PRAGMAs, so they are run separately.
    """
    sql = SCHEMA_SQL_PATH.read_text()
    lines = [line for line in sql.splitlines()
             if not line.strip().upper().startswith("PRAGMA")]
    conn.executescript("\n".join(lines))
    conn.execute("PRAGMA foreign_keys = ON")
    conn.commit()


def get_config(key: str, db_path: str = None, conn: Optional[sqlite3.Connection] = None) -> str:
    """
    Retrieve a configuration value from the system_config table.

    Args:
        key: The configuration key to look up.
        db_path: Path to the SQLite database file (ignored when conn is given).
        conn: Optional open connection to reuse.

    Returns:
        str: The configuration value for the given key.

    Raises:
        KeyError: If the configuration key does not exist in the database.

    Example:
        interval_ms = int(get_config('request_min_interval_ms'))
    """
    if conn is not None:
        return _read_config(conn, key)

    with get_connection(db_path) as own_conn:
        return _read_config(own_conn, key)


def _read_config(conn: sqlite3.Connection, key: str) -> str:
    cursor = conn.cursor()
    cursor.execute("SELECT value FROM system_config WHERE key = ?", (key,))
    row = cursor.fetchone()

    if row is None:
        raise KeyError(f"Config key not found: {key}")

    return row['value']


@dataclass(frozen=True)
class ScanSettings:
    """Scan tunables sourced from system_config.

    Attributes:
        request_min_interval: Seconds between outbound dispatch starts
        smart_score_threshold: Smart scan expands threads with score strictly above this
        candidate_limit: Default bound for the candidate ranking query
    """
    request_min_interval: float = 0.25
    smart_score_threshold: int = 10
    candidate_limit: int = 200


def load_scan_settings(conn: sqlite3.Connection) -> ScanSettings:
    """Read scan tunables from system_config, falling back to defaults for missing keys."""
    defaults = ScanSettings()

    def _value(key, default, cast):
        try:
            return cast(_read_config(conn, key))
        except (KeyError, ValueError, sqlite3.OperationalError):
            return default

    return ScanSettings(
        request_min_interval=_value(
            'request_min_interval_ms', defaults.request_min_interval * 1000, float) / 1000.0,
        smart_score_threshold=_value('smart_score_threshold', defaults.smart_score_threshold, int),
        candidate_limit=_value('candidate_limit', defaults.candidate_limit, int),
    )
