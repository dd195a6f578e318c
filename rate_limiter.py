# =================================================================
#   Attendance Notify - Per-recipient Rate Limiter
#   Sliding 60-second window, max 5 sends per chat id
# =================================================================

import logging
import threading
import time

logger = logging.getLogger(__name__)


class MemoryWindowBackend:
    """Process-local windows. Each process enforces its own limit."""

    def __init__(self):
        self._windows = {}
        self._lock = threading.Lock()

    def update(self, recipient, update_fn):
        with self._lock:
            window, allowed = update_fn(list(self._windows.get(recipient, [])))
            if window:
                self._windows[recipient] = window
            else:
                self._windows.pop(recipient, None)
            return allowed


class StoreWindowBackend:
    """
    Windows kept in a document store shared by every dispatcher process
    (e.g. a SQLiteDocumentStore on a common volume), updated atomically.
    """

    def __init__(self, store, root='rateLimits'):
        self.store = store
        self.root = root

    def update(self, recipient, update_fn):
        result = {}

        def _apply(current):
            timestamps = list((current or {}).get('ts') or [])
            window, allowed = update_fn(timestamps)
            result['allowed'] = allowed
            return {'ts': window} if window else None

        self.store.transact(f"{self.root}/{_safe_key(recipient)}", _apply)
        return result.get('allowed', False)


def _safe_key(recipient):
    return str(recipient).replace('/', '_')


class RateLimiter:
    """
    Rolling-window limiter: a send is allowed when fewer than
    ``max_messages`` sends to the same recipient happened in the last
    ``window_seconds``. Allowed sends are recorded; refused ones are not.
    """

    def __init__(self, backend=None, max_messages=5, window_seconds=60, clock=time.time):
        self.backend = backend or MemoryWindowBackend()
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self.clock = clock

    def allow(self, recipient):
        now = self.clock()
        cutoff = now - self.window_seconds

        def _check(timestamps):
            recent = [t for t in timestamps if t > cutoff]
            if len(recent) >= self.max_messages:
                return recent, False
            recent.append(now)
            return recent, True

        allowed = self.backend.update(str(recipient), _check)
        if not allowed:
            logger.warning(f"[RATELIMIT] Blocked message to {recipient} - "
                           f"{self.max_messages}/{self.window_seconds}s limit reached")
        return allowed


def create_rate_limiter(config, shared_store=None):
    backend_name = (config.RATE_LIMIT_BACKEND or 'memory').lower()
    if backend_name == 'store':
        if shared_store is None:
            from document_store import SQLiteDocumentStore
            shared_store = SQLiteDocumentStore(config.RATE_LIMIT_STORE_PATH)
        backend = StoreWindowBackend(shared_store)
        logger.info("[RATELIMIT] Using shared store-backed windows")
    elif backend_name == 'memory':
        backend = MemoryWindowBackend()
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {config.RATE_LIMIT_BACKEND!r}")
    return RateLimiter(
        backend=backend,
        max_messages=config.MESSAGE_RATE_LIMIT,
        window_seconds=config.MESSAGE_RATE_WINDOW_SECONDS,
    )
