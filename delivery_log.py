# =================================================================
#   Attendance Notify - Bot Delivery Log
#   Failed sends, bot interactions and per-command usage counters
#
#   Store layout:
#     botLogs/errors/{ts}          failed / rate-limited sends
#     botLogs/interactions/{ts}    every bot command handled
#     botLogs/commandStats/{cmd}   {count, lastUsed}, atomic increments
#
#   Writing a log entry is best-effort. A broken store must never turn
#   a failed notification into a failed request, so every write below
#   swallows its own errors.
# =================================================================

import datetime
import logging
import re

from document_store import timestamp_key

logger = logging.getLogger(__name__)

LOG_ROOT = 'botLogs'
LOG_KINDS = ('errors', 'interactions')
MAX_MESSAGE_CHARS = 200
MAX_ERROR_CHARS = 500


def _now_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def command_stat_key(command):
    """'/attendance' -> 'attendance', '/start/x' -> 'start_x'."""
    return re.sub(r'^_', '', str(command).replace('/', '_'))


class DeliveryLog:

    def __init__(self, store):
        self.store = store

    def _best_effort(self, action, *args):
        try:
            action(*args)
            return True
        except Exception as e:
            logger.debug(f"[BOTLOG] Log write dropped: {e}")
            return False

    def log_failed_message(self, chat_id, message, error):
        entry = {
            'chatId': str(chat_id),
            'message': str(message)[:MAX_MESSAGE_CHARS],
            'error': str(error)[:MAX_ERROR_CHARS],
            'timestamp': _now_iso(),
        }
        return self._best_effort(self.store.write, f"{LOG_ROOT}/errors/{timestamp_key()}", entry)

    def log_interaction(self, chat_id, command, roll_number=None, result='ok', note=None):
        def _write():
            now = _now_iso()
            self.store.write(f"{LOG_ROOT}/interactions/{timestamp_key()}", {
                'chatId': str(chat_id),
                'command': command,
                'rollNumber': roll_number,
                'result': result,
                'note': note,
                'timestamp': now,
            })
            self.store.transact(
                f"{LOG_ROOT}/commandStats/{command_stat_key(command)}",
                lambda cur: {
                    'count': ((cur or {}).get('count') or 0) + 1,
                    'lastUsed': now,
                }
            )

        return self._best_effort(_write)

    # --- read side (admin dashboard) ---------------------------------

    def list_entries(self, kind):
        if kind not in LOG_KINDS:
            raise ValueError(f"Unknown log kind: {kind!r}")
        data = self.store.read(f"{LOG_ROOT}/{kind}") or {}
        entries = [dict(value, id=key) for key, value in data.items() if isinstance(value, dict)]
        entries.sort(key=lambda e: (e.get('timestamp') or '', e['id']), reverse=True)
        return entries

    def command_stats(self):
        data = self.store.read(f"{LOG_ROOT}/commandStats") or {}
        stats = [dict(value, cmd=key) for key, value in data.items() if isinstance(value, dict)]
        stats.sort(key=lambda s: s.get('count', 0), reverse=True)
        return stats
