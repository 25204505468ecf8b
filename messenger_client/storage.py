"""
Durable local storage for the chat client.

A small SQLite key/value table that backs the key store. Values are stored
as given; keypairs are written unencrypted.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from e2ee.errors import UnavailableEnvironmentError

logger = logging.getLogger(__name__)


class LocalStore:
    """
    SQLite-backed key/value store.

    Args:
        storage_dir: Directory holding the database file
        filename: Database file name
    """

    def __init__(self, storage_dir: str = "client_data", filename: str = "keystore.db"):
        self.storage_dir = Path(storage_dir)
        self.db_path = self.storage_dir / filename
        self.db: Optional[sqlite3.Connection] = None

    def open(self) -> "LocalStore":
        """
        Create the directory and table if needed.

        Raises:
            UnavailableEnvironmentError: If the location is not writable
        """
        if self.db is not None:
            return self
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self.db = sqlite3.connect(str(self.db_path))
            self.db.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            self.db.commit()
        except (OSError, sqlite3.Error) as e:
            self.db = None
            raise UnavailableEnvironmentError(f"Cannot open local store at {self.db_path}: {e}") from e
        return self

    def put(self, key: str, value: str):
        """Insert or replace a value"""
        db = self.open().db
        try:
            db.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))
            db.commit()
        except sqlite3.Error as e:
            raise UnavailableEnvironmentError(f"Cannot write to local store: {e}") from e

    def get(self, key: str) -> Optional[str]:
        """
        Read a value.

        Returns:
            The stored value, or None if absent or the store cannot be opened

        Raises:
            UnavailableEnvironmentError: If an open store fails to read, so a
                transient error is never mistaken for a missing keypair
        """
        try:
            db = self.open().db
        except UnavailableEnvironmentError as e:
            logger.warning("Local store unavailable, treating %s as absent: %s", key, e)
            return None
        try:
            row = db.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise UnavailableEnvironmentError(f"Cannot read from local store: {e}") from e
        return row[0] if row else None

    def delete(self, key: str):
        """Remove a value if present"""
        db = self.open().db
        db.execute("DELETE FROM kv WHERE key = ?", (key,))
        db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
