# =================================================================
#   Attendance Notify - Message Queue
#   Sequential background worker for bulk sends (reminders,
#   broadcasts) so bursts don't hammer the Telegram API.
# =================================================================

import collections
import concurrent.futures
import logging
import threading

logger = logging.getLogger(__name__)


class MessageQueue:
    """
    One worker thread, tasks run in FIFO order.

    A task is any zero-argument callable. If it raises it is retried
    up to ``max_retries`` times with ``base_delay * 2**(n-1)`` seconds
    between attempts; after that ``on_error(label, exc)`` is called and
    the task's Future carries the exception.
    """

    def __init__(self, max_retries=3, base_delay=1.0, on_error=None):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.on_error = on_error
        self._pending = collections.deque()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._worker = None
        self._busy = False
        self._stats = {'processed': 0, 'failed': 0, 'retried': 0, 'queued': 0}

    def start(self):
        with self._cond:
            if self._worker and self._worker.is_alive():
                return
            self._stop.clear()
            self._worker = threading.Thread(target=self._run, name='message-queue', daemon=True)
            self._worker.start()
        logger.info("[QUEUE] Worker started")

    def enqueue(self, task, label='task'):
        future = concurrent.futures.Future()
        with self._cond:
            self._pending.append((task, label, future))
            self._stats['queued'] += 1
            self._cond.notify()
        if not self._worker or not self._worker.is_alive():
            self.start()
        return future

    def _next(self):
        with self._cond:
            while not self._pending and not self._stop.is_set():
                self._cond.wait()
            if self._stop.is_set():
                return None
            self._busy = True
            return self._pending.popleft()

    def _run(self):
        while True:
            item = self._next()
            if item is None:
                break
            task, label, future = item
            try:
                if future.set_running_or_notify_cancel():
                    self._execute(task, label, future)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()
        logger.info("[QUEUE] Worker stopped")

    def _execute(self, task, label, future):
        attempt = 0
        while True:
            try:
                result = task()
            except Exception as e:
                if attempt < self.max_retries and not self._stop.is_set():
                    attempt += 1
                    delay = self.base_delay * (2 ** (attempt - 1))
                    with self._cond:
                        self._stats['retried'] += 1
                    logger.warning(f"[QUEUE] {label} failed ({e}); retry {attempt}/{self.max_retries} in {delay:g}s")
                    self._stop.wait(delay)
                    continue

                with self._cond:
                    self._stats['failed'] += 1
                logger.error(f"[QUEUE] {label} failed after {attempt + 1} attempt(s): {e}")
                if self.on_error:
                    try:
                        self.on_error(label, e)
                    except Exception as hook_error:
                        logger.error(f"[QUEUE] on_error hook raised: {hook_error}")
                future.set_exception(e)
                return

            with self._cond:
                self._stats['processed'] += 1
            future.set_result(result)
            return

    def get_stats(self):
        with self._cond:
            stats = dict(self._stats)
            stats['pending'] = len(self._pending)
        return stats

    def clear(self):
        """Drop everything not yet started. Returns how many were dropped."""
        with self._cond:
            dropped = list(self._pending)
            self._pending.clear()
        for _, _, future in dropped:
            future.cancel()
        if dropped:
            logger.info(f"[QUEUE] Cleared {len(dropped)} pending task(s)")
        return len(dropped)

    def join(self, timeout=None):
        """Block until the queue is drained and the worker is idle."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    def stop(self, timeout=5):
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._worker:
            self._worker.join(timeout=timeout)
