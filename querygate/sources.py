"""
Data Source Registry with Encrypted Credentials

The gateway only ever *reads* DataSourceConfig records through the
ConfigStore protocol; the HTTP admin routes use the rest of it.

STORES:
-------
- SQLiteConfigStore:   persistent (survives restarts), password encrypted
                       with Fernet (see querygate.crypto)
- InMemoryConfigStore: process-local, for development and tests

SECURITY:
---------
- API responses NEVER include passwords (use to_public_dict)
- Sensitive connectionOptions values are masked in responses
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from querygate.core.config import Settings, get_settings
from querygate.crypto import CredentialCipher, mask_sensitive_config
from querygate.models import DataSourceConfig, SourceCreate, SourceUpdate

logger = logging.getLogger(__name__)


class ConfigStore(Protocol):
    """Lookup and admin operations over DataSourceConfig records."""

    def get(self, config_id: str) -> Optional[DataSourceConfig]:
        ...

    def list(self) -> List[DataSourceConfig]:
        ...

    def create(self, payload: SourceCreate) -> DataSourceConfig:
        ...

    def update(self, config_id: str, changes: SourceUpdate) -> Optional[DataSourceConfig]:
        ...

    def delete(self, config_id: str) -> bool:
        ...


def to_public_dict(config: DataSourceConfig) -> Dict[str, Any]:
    """Source as returned by the API: no password, masked secrets."""
    data = config.model_dump(exclude={"password"})
    data["connectionOptions"] = mask_sensitive_config(config.connectionOptions)
    data["hasPassword"] = bool(config.password)
    return data


# Fields an update may explicitly set back to null
_CLEARABLE_FIELDS = ("username", "password")


def _apply_update(config: DataSourceConfig, changes: SourceUpdate) -> DataSourceConfig:
    updates = {
        key: value
        for key, value in changes.model_dump(exclude_unset=True).items()
        if value is not None or key in _CLEARABLE_FIELDS
    }
    return DataSourceConfig(**{**config.model_dump(), **updates})


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryConfigStore:
    """Dict-backed store; contents are lost on restart."""

    def __init__(self, configs: Optional[List[DataSourceConfig]] = None):
        self._configs: Dict[str, DataSourceConfig] = {}
        self._lock = threading.Lock()
        for config in configs or []:
            self.add(config)

    def add(self, config: DataSourceConfig) -> DataSourceConfig:
        """Insert or replace a record under its own id."""
        with self._lock:
            self._configs[config.id] = config
        return config

    def get(self, config_id: str) -> Optional[DataSourceConfig]:
        with self._lock:
            return self._configs.get(config_id)

    def list(self) -> List[DataSourceConfig]:
        with self._lock:
            return list(self._configs.values())

    def create(self, payload: SourceCreate) -> DataSourceConfig:
        config = DataSourceConfig(id=str(uuid.uuid4()), **payload.model_dump())
        return self.add(config)

    def update(self, config_id: str, changes: SourceUpdate) -> Optional[DataSourceConfig]:
        with self._lock:
            current = self._configs.get(config_id)
            if current is None:
                return None
            updated = _apply_update(current, changes)
            self._configs[config_id] = updated
            return updated

    def delete(self, config_id: str) -> bool:
        with self._lock:
            return self._configs.pop(config_id, None) is not None


# =============================================================================
# SQLITE STORE
# =============================================================================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    host TEXT NOT NULL,
    port INTEGER NOT NULL,
    database TEXT NOT NULL,
    username TEXT,
    ssl INTEGER NOT NULL DEFAULT 0,
    connection_options TEXT NOT NULL DEFAULT '{}',
    encrypted_credentials TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sources_type ON sources(type);
"""


class SQLiteConfigStore:
    """
    Persistent store backed by a local SQLite file.

    The password is the only encrypted column; everything else is needed in
    clear for listing and signature computation.
    """

    def __init__(self, path: str, cipher: CredentialCipher):
        self.path = Path(path)
        self.cipher = cipher
        self._initialized = False
        self._init_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database (schema created on first use)."""
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    conn = sqlite3.connect(str(self.path))
                    try:
                        conn.executescript(_SCHEMA)
                        conn.commit()
                    finally:
                        conn.close()
                    self._initialized = True
                    logger.info(f"Source registry initialized at {self.path}")
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        return conn

    def _row_to_config(self, row: sqlite3.Row) -> DataSourceConfig:
        credentials = self.cipher.decrypt(row["encrypted_credentials"])
        return DataSourceConfig(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            host=row["host"],
            port=row["port"],
            database=row["database"],
            username=row["username"],
            password=credentials.get("password"),
            ssl=bool(row["ssl"]),
            connectionOptions=json.loads(row["connection_options"] or "{}"),
        )

    def _write(self, config: DataSourceConfig) -> None:
        now = datetime.now(timezone.utc).isoformat()
        encrypted = self.cipher.encrypt({"password": config.password} if config.password else {})
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO sources (id, name, type, host, port, database, username, ssl,
                                     connection_options, encrypted_credentials, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    type = excluded.type,
                    host = excluded.host,
                    port = excluded.port,
                    database = excluded.database,
                    username = excluded.username,
                    ssl = excluded.ssl,
                    connection_options = excluded.connection_options,
                    encrypted_credentials = excluded.encrypted_credentials,
                    updated_at = excluded.updated_at
                """,
                (
                    config.id, config.name, config.type, config.host, config.port, config.database,
                    config.username, int(config.ssl), json.dumps(config.connectionOptions or {}),
                    encrypted, now, now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, config_id: str) -> Optional[DataSourceConfig]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (config_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_config(row) if row else None

    def list(self) -> List[DataSourceConfig]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM sources ORDER BY created_at").fetchall()
        finally:
            conn.close()
        return [self._row_to_config(row) for row in rows]

    def create(self, payload: SourceCreate) -> DataSourceConfig:
        config = DataSourceConfig(id=str(uuid.uuid4()), **payload.model_dump())
        self._write(config)
        logger.info(f"Registered {config.type} source '{config.name}' ({config.id})")
        return config

    def update(self, config_id: str, changes: SourceUpdate) -> Optional[DataSourceConfig]:
        current = self.get(config_id)
        if current is None:
            return None
        updated = _apply_update(current, changes)
        self._write(updated)
        return updated

    def delete(self, config_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM sources WHERE id = ?", (config_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


def create_config_store(settings: Optional[Settings] = None) -> ConfigStore:
    """Build the source store described by settings."""
    settings = settings or get_settings()
    if settings.source_store == "memory":
        return InMemoryConfigStore()
    return SQLiteConfigStore(settings.sources_db_path, CredentialCipher(settings.secret_key))
