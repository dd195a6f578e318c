# =================================================================
#   Attendance Notify - Admin Broadcasts
# =================================================================

import datetime
import logging

from document_store import timestamp_key

logger = logging.getLogger(__name__)


def broadcast_text(message):
    return f"📢 *OFFICIAL BROADCAST*\n\n{message}"


class BroadcastService:

    def __init__(self, store, dispatcher, students_source):
        self.store = store
        self.dispatcher = dispatcher
        self.students_source = students_source

    def broadcast(self, message, sent_by=None):
        """Send to every registered chat, then record the broadcast. Returns the stored entry."""
        message = (message or '').strip()
        if not message:
            raise ValueError("Broadcast message cannot be empty")

        text = broadcast_text(message)
        recipients = sent = 0
        for student in self.students_source():
            chat_id = student.get('telegramChatId')
            if not chat_id:
                continue
            recipients += 1
            if self.dispatcher.send(chat_id, text):
                sent += 1

        entry = {
            'message': message,
            'recipientCount': recipients,
            'sentCount': sent,
            'sentBy': sent_by,
            'timestamp': datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        key = timestamp_key()
        self.store.write(f"broadcasts/{key}", entry)
        logger.info(f"[BROADCAST] Sent to {sent}/{recipients} chats")
        return dict(entry, id=key)

    def list_broadcasts(self):
        data = self.store.read('broadcasts') or {}
        entries = [dict(value, id=key) for key, value in data.items() if isinstance(value, dict)]
        entries.sort(key=lambda e: (e.get('timestamp') or '', e['id']), reverse=True)
        return entries
