"""
Adapter Registry for QueryGate

Keeps at most one live adapter per data source id and rebuilds it when the
source's connection details change.

Usage:
    registry = AdapterRegistry()

    adapter = registry.create_or_reuse(config)   # connected adapter
    adapter.execute_query("SELECT 1")

    registry.close(config.id)
    registry.close_all()                          # on shutdown
"""

import hashlib
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Type

from querygate.adapters.base import BaseAdapter
from querygate.adapters.mongodb_adapter import MongoDBAdapter
from querygate.adapters.mysql_adapter import MySQLAdapter
from querygate.adapters.postgres_adapter import PostgresAdapter
from querygate.core.config import Settings, get_settings
from querygate.errors import engine_unsupported
from querygate.models import DataSourceConfig

logger = logging.getLogger(__name__)


# =============================================================================
# ENGINE MAP
# =============================================================================

# Map of engine name -> adapter class
ENGINES: Dict[str, Type[BaseAdapter]] = {
    "postgresql": PostgresAdapter,
    "mysql": MySQLAdapter,
    "mongodb": MongoDBAdapter,
}

ENGINE_ALIASES = {
    "postgres": "postgresql",
    "mariadb": "mysql",
    "mongo": "mongodb",
}


def resolve_engine(source_type: str, engines: Optional[Dict[str, Type[BaseAdapter]]] = None) -> str:
    """
    Map a source type (or alias) to a registered engine name.

    Raises:
        ConfigurationError: If no adapter exists for the type
    """
    engines = ENGINES if engines is None else engines
    name = (source_type or "").strip().lower()
    name = ENGINE_ALIASES.get(name, name)
    if name not in engines:
        raise engine_unsupported(source_type, sorted(engines))
    return name


def config_signature(config: DataSourceConfig) -> str:
    """
    Fingerprint of the connection-relevant fields of a config.

    Display name and password are excluded, so renaming a source keeps its
    pool. Key order inside connectionOptions does not matter, and type
    aliases hash alike except mariadb, whose sessions are set up differently.
    """
    source_type = (config.type or "").strip().lower()
    if source_type != "mariadb":
        source_type = ENGINE_ALIASES.get(source_type, source_type)
    payload = {
        "type": source_type,
        "host": config.host,
        "port": config.port,
        "database": config.database,
        "username": config.username,
        "ssl": config.ssl,
        "connectionOptions": config.connectionOptions or {},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class AdapterRegistryEntry:
    adapter: BaseAdapter
    signature: str


# =============================================================================
# REGISTRY
# =============================================================================

class AdapterRegistry:
    """
    Thread-safe map of config id -> live adapter.

    The lock only guards the map; connecting and disconnecting happen outside
    it so one slow engine never blocks lookups for the others.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 engines: Optional[Dict[str, Type[BaseAdapter]]] = None):
        self.settings = settings or get_settings()
        self.engines = dict(ENGINES if engines is None else engines)
        self._entries: Dict[str, AdapterRegistryEntry] = {}
        self._lock = threading.Lock()
        self._teardown = ThreadPoolExecutor(max_workers=2, thread_name_prefix="querygate-teardown")
        self._pending: Set[Future] = set()

    def create_or_reuse(self, config: DataSourceConfig) -> BaseAdapter:
        """
        Return a connected adapter for the config.

        Reuses the registered adapter when its signature matches; otherwise
        replaces it and retires the stale one in the background.

        Raises:
            ConfigurationError: If the source type has no adapter
            ConnectionError: If the engine cannot be reached
        """
        engine = resolve_engine(config.type, self.engines)
        signature = config_signature(config)
        stale = None

        with self._lock:
            entry = self._entries.get(config.id)
            if entry is not None and entry.signature == signature:
                adapter = entry.adapter
            else:
                if entry is not None:
                    stale = entry.adapter
                adapter = self.engines[engine](config, self.settings)
                self._entries[config.id] = AdapterRegistryEntry(adapter=adapter, signature=signature)

        if stale is not None:
            logger.info(f"Connection details changed for source '{config.id}', replacing {engine} adapter")
            self._retire(config.id, stale)
        elif entry is None:
            logger.info(f"Created {engine} adapter for source '{config.id}'")

        adapter.connect()
        return adapter

    def get(self, config_id: str) -> Optional[BaseAdapter]:
        with self._lock:
            entry = self._entries.get(config_id)
        return entry.adapter if entry else None

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def close(self, config_id: str) -> bool:
        """
        Retire and forget the adapter for a source.

        Returns:
            True if an adapter was registered
        """
        with self._lock:
            entry = self._entries.pop(config_id, None)
        if entry is None:
            return False
        self._retire_quietly(config_id, entry.adapter)
        return True

    def close_all(self, timeout: Optional[float] = None) -> int:
        """
        Retire every adapter in parallel and wait for all of them.

        Returns:
            Number of adapters closed
        """
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()

        if entries:
            with ThreadPoolExecutor(max_workers=min(8, len(entries)),
                                    thread_name_prefix="querygate-close") as pool:
                futures = [pool.submit(self._retire_quietly, cid, e.adapter) for cid, e in entries]
                wait(futures, timeout=timeout)
        self.drain(timeout)
        logger.info(f"Closed {len(entries)} adapter(s)")
        return len(entries)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for background teardown of replaced adapters."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def status(self) -> Dict[str, Any]:
        """Diagnostics for /internal/status."""
        with self._lock:
            entries = list(self._entries.items())
        return {
            "active": len(entries),
            "engines": sorted(self.engines),
            "adapters": {
                cid: {**entry.adapter.get_engine_info(), "signature": entry.signature[:12]}
                for cid, entry in entries
            },
        }

    def shutdown(self) -> None:
        self.close_all()
        self._teardown.shutdown(wait=True)

    def _retire(self, config_id: str, adapter: BaseAdapter) -> None:
        future = self._teardown.submit(self._retire_quietly, config_id, adapter)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _retire_quietly(config_id: str, adapter: BaseAdapter) -> None:
        # Retired adapters refuse to reconnect, so callers still holding one
        # cannot reopen a pool the registry no longer tracks
        try:
            adapter.retire()
        except Exception as e:
            logger.warning(f"Error disconnecting adapter for source '{config_id}': {e}")
