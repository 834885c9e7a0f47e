"""Local mirror of remote collections.

A small SQLite key-value table holding the last known client and serve
attempt collections as JSON arrays. The mirror is a lossy cache: the remote
backend is the source of truth whenever it is reachable.
"""

import sqlite3
from pathlib import Path

import orjson
import structlog

from servetracker.models import Client, ServeAttempt
from servetracker.normalize import normalize_many

logger = structlog.get_logger()

CLIENTS_KEY = "serve-tracker-clients"
SERVES_KEY = "serve-tracker-serves"


class MirrorStore:
    """Persistent key-value store for mirrored collections."""

    def __init__(self, db_path: str | Path):
        """Open (and create if needed) the mirror database.

        Args:
            db_path: SQLite file path, or ":memory:"
        """
        if str(db_path) != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            db_path = str(path)
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS mirror (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def get(self, key: str) -> list[dict]:
        """Read the JSON array stored under a key; missing or corrupt reads as []."""
        row = self._conn.execute(
            "SELECT value FROM mirror WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return []
        try:
            value = orjson.loads(row[0])
        except orjson.JSONDecodeError:
            logger.warning("Corrupt mirror entry, ignoring", key=key)
            return []
        if not isinstance(value, list):
            logger.warning("Mirror entry is not a list, ignoring", key=key)
            return []
        return value

    def set(self, key: str, items: list[dict]) -> None:
        """Overwrite the array stored under a key."""
        self._conn.execute(
            "INSERT OR REPLACE INTO mirror (key, value) VALUES (?, ?)",
            (key, orjson.dumps(items).decode()),
        )
        self._conn.commit()

    def load_clients(self) -> list[Client]:
        return normalize_many("client", self.get(CLIENTS_KEY))

    def load_serves(self) -> list[ServeAttempt]:
        return normalize_many("serve", self.get(SERVES_KEY))

    def save_clients(self, clients: list[Client]) -> None:
        self.set(CLIENTS_KEY, [c.model_dump(mode="json") for c in clients])
        logger.debug("Mirror clients written", count=len(clients))

    def save_serves(self, serves: list[ServeAttempt]) -> None:
        self.set(SERVES_KEY, [s.model_dump(mode="json") for s in serves])
        logger.debug("Mirror serves written", count=len(serves))

    def clear(self) -> None:
        """Remove both mirrored collections."""
        self._conn.execute(
            "DELETE FROM mirror WHERE key IN (?, ?)", (CLIENTS_KEY, SERVES_KEY)
        )
        self._conn.commit()
        logger.info("Mirror cleared", db_path=self.db_path)
