# =================================================================
#   Attendance Notify - Document Store
#   Path-addressed tree store (realtime-database style)
#
#   Paths look like "attendance/2024-01-03/R001". Reading an inner
#   path returns the nested dict below it; None means "absent".
#   Writing None removes. Null fields and empty dicts are pruned,
#   the same way a realtime database drops them.
# =================================================================

import copy
import json
import logging
import sqlite3
import threading
import time

logger = logging.getLogger(__name__)

_key_lock = threading.Lock()
_last_key = 0


def timestamp_key():
    """
    Millisecond timestamp usable as a child key.
    Strictly increasing within the process, so two entries logged in
    the same millisecond never overwrite each other.
    """
    global _last_key
    with _key_lock:
        now = int(time.time() * 1000)
        if now <= _last_key:
            now = _last_key + 1
        _last_key = now
        return str(now)


def split_path(path):
    parts = [p for p in str(path or '').strip('/').split('/') if p]
    for part in parts:
        if part in ('.', '..'):
            raise ValueError(f"Invalid path segment in {path!r}")
    return parts


def _prune(value):
    """Drop None fields and empty dicts; return None if nothing is left."""
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = _prune(child)
            if child is not None:
                cleaned[str(key)] = child
        return cleaned or None
    return value


def _overlaps(a, b):
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


class DocumentStore:
    """
    Interface the notification core depends on.

    Backends implement read / _set / transact; subscriptions are shared.
    """

    def __init__(self):
        self._subscribers = []
        self._sub_lock = threading.Lock()

    # --- interface -------------------------------------------------
    def read(self, path):
        raise NotImplementedError

    def transact(self, path, update_fn):
        """Atomic read-modify-write. update_fn(current) -> new value (None deletes)."""
        raise NotImplementedError

    def _set(self, parts, value):
        raise NotImplementedError

    def write(self, path, value):
        parts = split_path(path)
        self._set(parts, _prune(copy.deepcopy(value)))
        self._notify(parts)

    def remove(self, path):
        parts = split_path(path)
        self._set(parts, None)
        self._notify(parts)

    def ping(self):
        """Cheap connectivity check used by the health endpoint."""
        self.read('__ping__')
        return True

    # --- subscriptions --------------------------------------------
    def subscribe(self, path, callback):
        """
        Call callback(value) now and after every change touching path.
        Returns a function that cancels the subscription.
        """
        entry = (split_path(path), callback)
        with self._sub_lock:
            self._subscribers.append(entry)
        callback(self.read(path))

        def unsubscribe():
            with self._sub_lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def _notify(self, changed_parts):
        with self._sub_lock:
            targets = [s for s in self._subscribers if _overlaps(s[0], changed_parts)]
        for parts, callback in targets:
            try:
                callback(self.read('/'.join(parts)))
            except Exception as e:
                logger.error(f"[STORE] Subscriber for '{'/'.join(parts)}' failed: {e}", exc_info=True)


# =================================================================
#   In-memory backend
# =================================================================

class InMemoryDocumentStore(DocumentStore):
    """Nested-dict store guarded by a re-entrant lock."""

    def __init__(self, initial=None):
        super().__init__()
        self._lock = threading.RLock()
        self._root = _prune(copy.deepcopy(initial)) or {}

    def read(self, path):
        parts = split_path(path)
        with self._lock:
            node = self._root
            for part in parts:
                if not isinstance(node, dict) or part not in node:
                    return None
                node = node[part]
            return copy.deepcopy(node) if node != {} else None

    def _set(self, parts, value):
        with self._lock:
            if not parts:
                self._root = value if isinstance(value, dict) else {}
                return
            node = self._root
            trail = []
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    if value is None:
                        return
                    child = {}
                    node[part] = child
                trail.append((node, part))
                node = child
            if value is None:
                node.pop(parts[-1], None)
            else:
                node[parts[-1]] = value
            # Drop parents left empty by a removal
            for parent, key in reversed(trail):
                if parent[key] == {}:
                    del parent[key]
                else:
                    break

    def transact(self, path, update_fn):
        parts = split_path(path)
        with self._lock:
            current = self.read(path)
            new_value = _prune(copy.deepcopy(update_fn(current)))
            self._set(parts, new_value)
        self._notify(parts)
        return copy.deepcopy(new_value)


# =================================================================
#   SQLite backend
# =================================================================

class SQLiteDocumentStore(DocumentStore):
    """
    One row per leaf: (path, json value). Inner nodes are implied by
    their leaves. Needs a file path; every call opens its own connection
    so Flask worker threads never share one.
    """

    def __init__(self, db_path):
        super().__init__()
        if db_path == ':memory:':
            raise ValueError("SQLiteDocumentStore needs a file path; use InMemoryDocumentStore instead")
        self.db_path = db_path
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                path TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """)
        finally:
            conn.close()

    def _connect(self):
        # isolation_level=None: transactions are opened explicitly below
        return sqlite3.connect(self.db_path, timeout=10, isolation_level=None,
                               check_same_thread=False)

    @staticmethod
    def _flatten(prefix, value, out):
        if isinstance(value, dict):
            for key, child in value.items():
                SQLiteDocumentStore._flatten(f"{prefix}/{key}" if prefix else str(key), child, out)
        elif value is not None:
            out.append((prefix, json.dumps(value)))
        return out

    @staticmethod
    def _read_rows(conn, parts):
        path = '/'.join(parts)
        if not path:
            return path, conn.execute("SELECT path, value FROM nodes").fetchall()
        prefix = path + '/'
        rows = conn.execute(
            "SELECT path, value FROM nodes WHERE path = ? OR substr(path, 1, ?) = ?",
            (path, len(prefix), prefix)
        ).fetchall()
        return path, rows

    def _read(self, conn, parts):
        path, rows = self._read_rows(conn, parts)
        if not rows:
            return None
        tree = {}
        for row_path, raw in rows:
            if row_path == path:
                return json.loads(raw)
            relative = row_path[len(path) + 1:] if path else row_path
            keys = relative.split('/')
            node = tree
            for key in keys[:-1]:
                node = node.setdefault(key, {})
            node[keys[-1]] = json.loads(raw)
        return tree

    def _replace(self, conn, parts, value):
        path = '/'.join(parts)
        if path:
            prefix = path + '/'
            conn.execute(
                "DELETE FROM nodes WHERE path = ? OR substr(path, 1, ?) = ?",
                (path, len(prefix), prefix)
            )
            # A scalar ancestor is replaced by the new subtree
            ancestors = ['/'.join(parts[:i]) for i in range(1, len(parts))]
            if ancestors and value is not None:
                conn.executemany("DELETE FROM nodes WHERE path = ?", [(a,) for a in ancestors])
        else:
            conn.execute("DELETE FROM nodes")
        rows = self._flatten(path, value, [])
        if rows:
            conn.executemany("INSERT OR REPLACE INTO nodes (path, value) VALUES (?, ?)", rows)

    def read(self, path):
        conn = self._connect()
        try:
            return self._read(conn, split_path(path))
        finally:
            conn.close()

    def _set(self, parts, value):
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._replace(conn, parts, value)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def transact(self, path, update_fn):
        parts = split_path(path)
        conn = self._connect()
        try:
            # BEGIN IMMEDIATE takes the write lock before the read, so
            # concurrent increments from other processes serialise here.
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = self._read(conn, parts)
                new_value = _prune(copy.deepcopy(update_fn(current)))
                self._replace(conn, parts, new_value)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        self._notify(parts)
        return new_value


def create_store(config):
    """Build the store selected by STORE_BACKEND."""
    backend = (config.STORE_BACKEND or 'sqlite').lower()
    if backend == 'memory':
        logger.info("[STORE] Using in-memory document store")
        return InMemoryDocumentStore()
    if backend == 'sqlite':
        logger.info(f"[STORE] Using SQLite document store at {config.STORE_PATH}")
        return SQLiteDocumentStore(config.STORE_PATH)
    raise ValueError(f"Unknown STORE_BACKEND: {config.STORE_BACKEND!r}")
