from __future__ import annotations

import os
import secrets
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

CLIENT_IDENTITY_KEY = "pizzeria_client_identity"
MIGRATION_FLAG_KEY = "pizzeria_migration_to_database_complete"
# Pre-database tracking kept order snapshots client side.
LEGACY_TRACKING_KEYS = (
    "pizzeria_order_tracking",
    "pizzeria_last_order",
    "pizzeria_active_order",
)


class StorageUnavailable(RuntimeError):
    """Durable client storage cannot be read or written."""


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    client_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.user_id and not self.client_id


class ClientStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def setdefault(self, key: str, value: str) -> str:
        """Store `value` only if `key` is absent; return the stored value."""
        ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


class MemoryClientStorage:
    """Volatile storage; lives as long as the object."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = str(value)

    def setdefault(self, key: str, value: str) -> str:
        with self._lock:
            return self._data.setdefault(key, str(value))

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


def default_storage_path() -> Path:
    return Path(os.getenv("CLIENT_STORAGE_PATH", ".client_storage.sqlite"))


class SqliteClientStorage:
    """Durable key/value storage in a local SQLite file.

    `namespace` separates devices sharing one file (e.g. browser sessions of a
    Streamlit server).
    """

    def __init__(self, path: Optional[Path] = None, *, namespace: str = "default") -> None:
        self.path = Path(path) if path is not None else default_storage_path()
        self.namespace = str(namespace)

    def _connect(self) -> sqlite3.Connection:
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path))
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS client_storage (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            conn.commit()
            return conn
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(f"client storage at {self.path} is unavailable: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT value FROM client_storage WHERE namespace = ? AND key = ?",
                    (self.namespace, str(key)),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e
        return str(row[0]) if row else None

    def set(self, key: str, value: str) -> None:
        try:
            with closing(self._connect()) as conn:
                conn.execute(
                    """
                    INSERT INTO client_storage (namespace, key, value) VALUES (?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET value=excluded.value
                    """,
                    (self.namespace, str(key), str(value)),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

    def setdefault(self, key: str, value: str) -> str:
        try:
            with closing(self._connect()) as conn:
                conn.execute(
                    """
                    INSERT INTO client_storage (namespace, key, value) VALUES (?, ?, ?)
                    ON CONFLICT(namespace, key) DO NOTHING
                    """,
                    (self.namespace, str(key), str(value)),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT value FROM client_storage WHERE namespace = ? AND key = ?",
                    (self.namespace, str(key)),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e
        if row is None:
            raise StorageUnavailable(f"{key} vanished from client storage")
        return str(row[0])

    def remove(self, key: str) -> None:
        try:
            with closing(self._connect()) as conn:
                conn.execute(
                    "DELETE FROM client_storage WHERE namespace = ? AND key = ?",
                    (self.namespace, str(key)),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

    def keys(self) -> List[str]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT key FROM client_storage WHERE namespace = ? ORDER BY key",
                    (self.namespace,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e
        return [str(r[0]) for r in rows]


def _new_client_id() -> str:
    return f"client_{secrets.token_urlsafe(24)}"


class ClientIdentityProvider:
    """Issues the durable pseudo-anonymous id of this device.

    The id is created once and never regenerated: anonymous orders are found
    again only through it. When storage is unavailable the provider keeps a
    volatile id for its own lifetime (`degraded` is then True).
    """

    def __init__(self, storage: ClientStorage) -> None:
        self.storage = storage
        self.degraded = False
        self._volatile: Optional[str] = None
        self._lock = threading.Lock()

    def get_or_create_client_id(self) -> str:
        with self._lock:
            if self._volatile is not None:
                return self._volatile
            try:
                existing = self.storage.get(CLIENT_IDENTITY_KEY)
                if existing:
                    return existing
                # Another session on this device may have issued one meanwhile; first writer wins.
                candidate = _new_client_id()
                client_id = self.storage.setdefault(CLIENT_IDENTITY_KEY, candidate)
                if client_id == candidate:
                    logger.info("client_identity.created", client_suffix=client_id[-8:])
                return client_id
            except (StorageUnavailable, sqlite3.Error, OSError) as e:
                self._volatile = _new_client_id()
                self.degraded = True
                logger.warning("client_identity.degraded", error=str(e))
                return self._volatile

    def identity(self, user_id: Optional[str] = None) -> Identity:
        return Identity(user_id=str(user_id) if user_id else None, client_id=self.get_or_create_client_id())


def migrate_legacy_tracking(storage: ClientStorage) -> int:
    """Remove client-side order snapshots from before database tracking, once.

    The client identity is never touched. Returns the number of keys removed;
    unavailable storage is logged and counts as nothing removed (the flag stays
    unset, so the next session tries again).
    """
    try:
        if storage.get(MIGRATION_FLAG_KEY):
            return 0
        present = set(storage.keys())
        removed = 0
        for key in LEGACY_TRACKING_KEYS:
            if key in present:
                storage.remove(key)
                removed += 1
        storage.set(MIGRATION_FLAG_KEY, "true")
    except StorageUnavailable as e:
        logger.warning("client_storage.legacy_migration_skipped", error=str(e))
        return 0
    if removed:
        logger.info("client_storage.legacy_tracking_cleared", removed=removed)
    return removed
