import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create a SQLite connection with WAL mode, shareable across worker threads.

    Callers serialize access themselves (SQLiteDocumentStore holds a lock).
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def init_database(db_path: str) -> sqlite3.Connection:
    """Initialize the document table and indexes."""
    conn = get_connection(db_path)
    schema_sql = SCHEMA_PATH.read_text()

    # PRAGMA lines are already applied by get_connection
    lines = schema_sql.splitlines()
    filtered = "\n".join(l for l in lines if not l.strip().upper().startswith("PRAGMA"))
    conn.executescript(filtered)

    logger.info(f"Document store initialized at {db_path}")
    return conn
