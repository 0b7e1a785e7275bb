"""Key-value persistence adapters for quota and rotation state.

Both stores hold plain strings; callers serialize their records as JSON.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from quotakeeper._logging import get_logger
from quotakeeper.errors import PersistenceFailure

logger = get_logger("QuotaKeeper.Storage")

_DEFAULT_DB_PATH = Path.home() / ".quotakeeper" / "state.db"

DEFAULT_SCOPE = "application"

_CREATE_TABLE = """\
CREATE TABLE IF NOT EXISTS kv (
    scope       TEXT    NOT NULL,
    key         TEXT    NOT NULL,
    value       TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL,
    PRIMARY KEY (scope, key)
)
"""


class KeyValueStore(Protocol):
    """Scoped string store: get/set/remove by key."""

    scope: str

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store, used for tests and ephemeral sessions."""

    def __init__(self, scope: str = DEFAULT_SCOPE) -> None:
        self.scope = scope
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class SQLiteKeyValueStore:
    """Thread-safe, connection-per-call SQLite key-value store.

    Rows are partitioned by *scope* so several logical stores can share
    one database file.  Every ``sqlite3.Error`` is re-raised as
    :class:`PersistenceFailure`.
    """

    def __init__(
        self, db_path: Optional[Path] = None, scope: str = DEFAULT_SCOPE
    ) -> None:
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.scope = scope
        self._lock = threading.Lock()
        self._init_db()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), check_same_thread=False)

    def _init_db(self) -> None:
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(_CREATE_TABLE)
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(
                    f"Could not initialise {self.db_path}: {exc}"
                ) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the stored value for *key*, or *default*."""
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT value FROM kv WHERE scope = ? AND key = ?",
                    (self.scope, key),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not read '{key}': {exc}") from exc
        return row[0] if row is not None else default

    def set(self, key: str, value: str) -> None:
        """Insert or replace the value for *key*."""
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(
                        "INSERT OR REPLACE INTO kv (scope, key, value, updated_at) "
                        "VALUES (?, ?, ?, ?)",
                        (
                            self.scope,
                            key,
                            value,
                            datetime.now(timezone.utc).isoformat(),
                        ),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(
                    f"Could not write '{key}': {exc}"
                ) from exc

    def remove(self, key: str) -> None:
        """Delete *key* if present."""
        with self._lock:
            try:
                conn = self._connect()
                try:
                    conn.execute(
                        "DELETE FROM kv WHERE scope = ? AND key = ?",
                        (self.scope, key),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                raise PersistenceFailure(
                    f"Could not remove '{key}': {exc}"
                ) from exc


# ----------------------------------------------------------------------
# JSON record helpers
# ----------------------------------------------------------------------


def load_json_record(store: KeyValueStore, key: str) -> dict:
    """Read *key* as a JSON object.

    Missing, empty, or malformed payloads read as ``{}``.  A store that
    cannot be read at all raises :class:`PersistenceFailure`.
    """
    raw = store.get(key)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning(f"Discarding malformed payload under '{key}': {exc}")
        return {}
    if not isinstance(data, dict):
        logger.warning(
            f"Discarding payload under '{key}': expected object, "
            f"got {type(data).__name__}"
        )
        return {}
    return data


def save_json_record(store: KeyValueStore, key: str, data: dict) -> None:
    """Serialize *data* and write it under *key*."""
    store.set(key, json.dumps(data, separators=(",", ":")))
