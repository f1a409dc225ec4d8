"""Initialize the SQLite database from schema.sql."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def now_iso(when: datetime | None = None) -> str:
    """Fixed-width local timestamp so stored values compare correctly as strings."""
    return (when or datetime.now()).isoformat(timespec="microseconds")


def get_conn(db_path: Path | None = None) -> sqlite3.Connection:
    """Open a short-lived connection (WAL, Row factory, FK cascade on)."""
    if db_path is None:
        from harvest_engine.config import cfg
        db_path = cfg.db_path
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path | None = None):
    """Create all tables from schema.sql."""
    if db_path is None:
        from harvest_engine.config import cfg
        db_path = cfg.db_path

    db_path.parent.mkdir(parents=True, exist_ok=True)

    schema_path = Path(__file__).parent / "schema.sql"
    schema_sql = schema_path.read_text()

    conn = sqlite3.connect(str(db_path))
    conn.executescript(schema_sql)
    conn.commit()
    conn.close()
    logger.info("Database initialized at %s", db_path)


def ensure_db(db_path: Path | None = None):
    """Create the schema if the database file does not exist yet."""
    if db_path is None:
        from harvest_engine.config import cfg
        db_path = cfg.db_path
    if not db_path.exists():
        init_db(db_path)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
