import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CAPABILITY_NAME = "technews-relay"


def get_state_dir() -> Path:
    configured = os.environ.get("RELAY_STATE_DIR")
    if configured:
        return Path(configured).expanduser().resolve()
    return (Path.home() / f".{CAPABILITY_NAME}").resolve()


def get_db_path() -> Path:
    """
    Get the path to the delivery ledger.

    Override with `RELAY_DB_PATH` if needed.
    """
    db_path_str = os.environ.get("RELAY_DB_PATH")
    if db_path_str:
        return Path(db_path_str).expanduser().resolve()
    return get_state_dir() / "relay.sqlite"


def init_db(db_path: Optional[Path] = None) -> None:
    """Initialize the database schema."""
    db_path = (db_path or get_db_path()).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    # Enable WAL mode for concurrency
    cursor.execute("PRAGMA journal_mode=WAL;")

    # One row per record already posted to Slack
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS deliveries (
        dedupe_key TEXT PRIMARY KEY,
        seqno INTEGER NOT NULL,
        subject TEXT,
        payload_count INTEGER NOT NULL DEFAULT 1,
        delivered_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_deliveries_delivered ON deliveries(delivered_at)")

    conn.commit()
    conn.close()


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get a connection to the database."""
    db_path = (db_path or get_db_path()).expanduser().resolve()
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 30000;")
    return conn


def make_dedupe_key(mailbox: str, uid: int, seqno: int) -> str:
    return f"{CAPABILITY_NAME}:{mailbox}:{uid}:{seqno}"


def is_delivered(dedupe_key: str, db_path: Optional[Path] = None) -> bool:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT 1 FROM deliveries WHERE dedupe_key = ?", (dedupe_key,)
        ).fetchone()
    finally:
        conn.close()
    return row is not None


def record_delivery(
    dedupe_key: str,
    seqno: int,
    subject: str,
    payload_count: int = 1,
    db_path: Optional[Path] = None,
) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO deliveries (dedupe_key, seqno, subject, payload_count)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(dedupe_key) DO UPDATE SET
                payload_count = excluded.payload_count,
                delivered_at = CURRENT_TIMESTAMP
            """,
            (dedupe_key, seqno, subject, payload_count),
        )
        conn.commit()
    finally:
        conn.close()
    logger.debug(f"Recorded delivery {dedupe_key}")


def list_deliveries(limit: int = 20, db_path: Optional[Path] = None) -> List[Dict[str, Any]]:
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM deliveries ORDER BY delivered_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]
