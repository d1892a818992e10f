import sqlite3
import os
import logging
from typing import Optional

from errors import PersistenceError

DB_PATH = os.getenv('DB_PATH', os.path.join(os.path.dirname(__file__), 'data', 'study_bot.db'))

logger = logging.getLogger(__name__)


def get_connection(db_path: Optional[str] = None):
    path = db_path or DB_PATH
    # Ensure the directory exists (crucial for cloud volumes)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return sqlite3.connect(path)


def init_db(db_path: Optional[str] = None):
    conn = get_connection(db_path)
    cursor = conn.cursor()
    try:
        # One row per named slot; payload is the JSON-encoded result history.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS result_slots (
                slot TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteBackend:
    """Persistence backend for ResultStore keeping each slot in one sqlite row."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DB_PATH
        init_db(self.db_path)

    def read(self, slot: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT payload FROM result_slots WHERE slot = ?", (slot,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not read slot {slot}: {e}") from e
        finally:
            conn.close()

        if row:
            return row[0]
        return None

    def write(self, slot: str, payload: str):
        conn = get_connection(self.db_path)
        cursor = conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO result_slots (slot, payload, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(slot) DO UPDATE SET payload = excluded.payload, updated_at = CURRENT_TIMESTAMP
            """, (slot, payload))
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not write slot {slot}: {e}") from e
        finally:
            conn.close()
        logger.debug("Persisted slot %s (%d bytes)", slot, len(payload))


if __name__ == "__main__":
    init_db()
    print(f"Database initialized at {DB_PATH}.")
