# =================================================================
#   Attendance Notify - Bot Command Handler
#   Handles Telegram webhook updates:
#     /start att_<date>[_<class>]_<token>   QR check-in
#     /start, /help                         help + chat id to register
#     /attendance                           today's status
#     /percentage                           overall attendance %
#     /download                             .xlsx report as a document
# =================================================================

import datetime
import logging

import reports
from attendance_events import AttendanceStatus, ValidationError
from daily_tokens import class_slug, parse_start_payload

logger = logging.getLogger(__name__)

STATUS_DISPLAY = {
    'IN': '✅ Entered',
    'ABSENT': '❌ Absent',
    'LEAVE': '📌 On Leave',
}

HELP_TEXT = (
    "🤖 *Attendance Bot*\n\n"
    "/attendance - today's attendance status\n"
    "/percentage - your overall attendance\n"
    "/download - your attendance report (.xlsx)\n\n"
    "Scan the classroom QR code to check in."
)


def _registration_hint(chat_id):
    return (
        "👋 This chat isn't linked to a student yet.\n\n"
        f"Give your class teacher this Chat ID to register: `{chat_id}`"
    )


class BotCommandHandler:

    def __init__(self, processor, dispatcher, token_issuer, delivery_log, clock=datetime.datetime.now):
        self.processor = processor
        self.dispatcher = dispatcher
        self.token_issuer = token_issuer
        self.delivery_log = delivery_log
        self.clock = clock

    def handle_update(self, update):
        """
        Process one Telegram update. Returns {'command', 'result'} for
        message updates, None for anything we ignore.
        """
        message = (update or {}).get('message') or (update or {}).get('edited_message')
        if not message or not message.get('text'):
            return None

        chat_id = str((message.get('chat') or {}).get('id', '')).strip()
        text = message['text'].strip()
        if not chat_id:
            return None

        command, _, argument = text.partition(' ')
        # "/percentage@MyBot" in group chats
        command = command.split('@', 1)[0].lower()
        argument = argument.strip()

        student = self.processor.find_student_by_chat(chat_id)
        roll = student.get('rollNumber') if student else None

        if command == '/start' and argument.startswith('att_'):
            result, note = self._check_in(chat_id, student, argument)
        elif command in ('/start', '/help'):
            self._reply(chat_id, HELP_TEXT if student else _registration_hint(chat_id))
            result, note = 'ok', None
        elif not student:
            self._reply(chat_id, _registration_hint(chat_id))
            result, note = 'unregistered', None
        elif command == '/attendance':
            result, note = self._attendance(chat_id, student)
        elif command == '/percentage':
            result, note = self._percentage(chat_id, student)
        elif command == '/download':
            result, note = self._download(chat_id, student)
        else:
            self._reply(chat_id, "🤔 Unknown command. Send /help to see what I can do.")
            result, note = 'unknown', None

        self.delivery_log.log_interaction(chat_id, command, roll_number=roll, result=result, note=note)
        return {'command': command, 'result': result}

    def _reply(self, chat_id, text):
        self.dispatcher.send(chat_id, text)

    def _today(self):
        return self.clock().strftime('%Y-%m-%d')

    # --- commands ----------------------------------------------------

    def _check_in(self, chat_id, student, payload):
        parts = parse_start_payload(payload)
        if not parts:
            self._reply(chat_id, "❌ This QR code is not valid.")
            return 'invalid', payload[:64]
        if not student:
            self._reply(chat_id, _registration_hint(chat_id))
            return 'unregistered', None

        date, slug, token = parts['date'], parts['class_slug'], parts['token']
        if date != self._today():
            self._reply(chat_id, "⌛ This QR code has expired. Scan today's code.")
            return 'expired', date

        if slug:
            valid = self.token_issuer.verify_class_token(date, slug, token)
            if valid and class_slug(student.get('studentClass', '')) != slug:
                self._reply(chat_id, "🚫 This QR code belongs to a different class.")
                return 'wrong_class', slug
        else:
            valid = self.token_issuer.verify_daily_token(date, token)
        if not valid:
            logger.warning(f"[BOT] Rejected QR token from chat {chat_id} for {date}")
            self._reply(chat_id, "❌ This QR code is not valid.")
            return 'invalid', date

        try:
            record = self.processor.mark_attendance(student, date, AttendanceStatus.PRESENT)
        except ValidationError as e:
            self._reply(chat_id, f"❌ Could not mark attendance: {e}")
            return 'error', str(e)

        self._reply(
            chat_id,
            f"✅ Attendance marked for *{student.get('name', '')}* on {date}.\n"
            f"Check-in time: {record.get('checkInTime')}"
        )
        return 'ok', date

    def _attendance(self, chat_id, student):
        today = self._today()
        record = self.processor.store.read(f"attendance/{today}/{student['rollNumber']}")
        status = record.get('status') if isinstance(record, dict) else None
        shown = STATUS_DISPLAY.get(status, '⏳ Not marked yet')
        self._reply(chat_id, f"📅 Today's Attendance ({today}):\nStatus: {shown}")
        return 'ok', status

    def _percentage(self, chat_id, student):
        percentage = self.processor.attendance_percentage(student['rollNumber'])
        self._reply(chat_id, f"📊 Your Current Attendance: {percentage:.2f}%")
        return 'ok', f"{percentage:.2f}"

    def _download(self, chat_id, student):
        self._reply(chat_id, "⏳ Generating your report... Please wait.")
        history = self.processor.student_history(student['rollNumber'])
        content = reports.build_attendance_workbook(student, history)
        if self.dispatcher.send_document(chat_id, content, reports.report_filename(student)):
            return 'ok', None
        self._reply(chat_id, "⚠️ Could not send the report right now. Please try again later.")
        return 'error', 'sendDocument failed'
