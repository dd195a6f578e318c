# =================================================================
#   Attendance Notify - Attendance Event Processor
#
#   mark_attendance() persists the day's record first, then fans out
#   notifications:
#     ABSENT / LEAVE  -> parent email
#     ABSENT          -> student chat (plain alert, or escalation after
#                        3 consecutive absent days)
#     ABSENT / LEAVE  -> low-attendance warning (< 75%) to student,
#                        parent and admin chats
#   Nothing in the fan-out can undo or fail the record write.
# =================================================================

import datetime
import enum
import logging
from urllib.parse import urlencode

import email_service

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d'


class ValidationError(ValueError):
    """Bad input to a mutating operation; surfaced to the caller."""


class AttendanceStatus(enum.Enum):
    PRESENT = 'IN'
    CHECKED_OUT = 'CHECKOUT'
    ON_LEAVE = 'LEAVE'
    ABSENT = 'ABSENT'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid status {value!r}; expected one of {', '.join(s.value for s in cls)}"
            ) from None

    @property
    def persisted(self):
        """Checking out keeps the student marked present."""
        return 'IN' if self is AttendanceStatus.CHECKED_OUT else self.value

    @property
    def notifies(self):
        return self in (AttendanceStatus.ABSENT, AttendanceStatus.ON_LEAVE)


def parse_date(value):
    try:
        return datetime.datetime.strptime(str(value), DATE_FORMAT).date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date {value!r}; expected YYYY-MM-DD") from None


def canonical_date(value):
    """Zero-padded YYYY-MM-DD, so '2024-1-5' and '2024-01-05' share a bucket."""
    return parse_date(value).strftime(DATE_FORMAT)


def today_str(clock=datetime.datetime.now):
    return clock().strftime(DATE_FORMAT)


def apply_transition(existing, student, status, time_str):
    """
    Build the updated AttendanceRecord from the stored one.

    - IN        keeps the first checkInTime of the day
    - CHECKOUT  stays IN, stamps checkOutTime
    - LEAVE     becomes LEAVE, stamps checkOutTime
    - ABSENT    clears both timestamps
    """
    existing = existing or {}
    record = {
        'id': student['rollNumber'],
        'name': student.get('name', ''),
        'rollNumber': student['rollNumber'],
        'studentClass': student.get('studentClass', ''),
        'status': status.persisted,
        'checkInTime': existing.get('checkInTime') or None,
        'checkOutTime': existing.get('checkOutTime') or None,
        'parentEmail': student.get('parentEmail') or '',
    }
    if student.get('classArm'):
        record['classArm'] = student['classArm']

    if status is AttendanceStatus.PRESENT:
        record['checkInTime'] = existing.get('checkInTime') or time_str
    elif status is AttendanceStatus.CHECKED_OUT:
        record['checkOutTime'] = time_str
    elif status is AttendanceStatus.ON_LEAVE:
        record['checkOutTime'] = time_str
    elif status is AttendanceStatus.ABSENT:
        record['checkInTime'] = None
        record['checkOutTime'] = None
    return record


class AttendanceEventProcessor:

    def __init__(self, store, dispatcher, settings, app_base_url='',
                 email_sender=email_service.send_status_alert,
                 minimum_percentage=75, consecutive_threshold=3,
                 clock=datetime.datetime.now):
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings
        self.app_base_url = (app_base_url or '').rstrip('/')
        self.email_sender = email_sender
        self.minimum_percentage = minimum_percentage
        self.consecutive_threshold = consecutive_threshold
        self.clock = clock

    # --- marking ---------------------------------------------------

    def mark_attendance(self, student, date, status):
        """Persist the day's record, then notify. Returns the stored record."""
        if not student or not str(student.get('rollNumber') or '').strip():
            raise ValidationError("Invalid student: roll number is required")
        status = AttendanceStatus.parse(status)
        date = canonical_date(date)

        roll = str(student['rollNumber']).strip()
        student = dict(student, rollNumber=roll)
        path = f"attendance/{date}/{roll}"
        time_str = self.clock().strftime('%H:%M:%S')

        existing = self.store.read(path)
        record = apply_transition(existing, student, status, time_str)
        self.store.write(path, record)
        logger.info(f"[ATTENDANCE] {roll} marked {status.value} for {date}")

        if status.notifies:
            self._notify(student, date, status)
        return record

    def _notify(self, student, date, status):
        roll = student['rollNumber']

        if student.get('parentEmail'):
            self._guard(f"parent email for {roll}", self._email_parent, student, status, date)

        if status is AttendanceStatus.ABSENT and student.get('telegramChatId'):
            self._guard(f"absence alert for {roll}", self._alert_absence, student, date)

        self._guard(f"low-attendance check for {roll}", self._escalate_low_attendance, student)

    def _guard(self, label, fn, *args):
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"[ATTENDANCE] Notification step failed ({label}): {e}", exc_info=True)

    def _email_parent(self, student, status, date):
        ok, error = self.email_sender(student, status.value, date)
        if not ok:
            logger.warning(f"[ATTENDANCE] Parent email for {student['rollNumber']} not sent: {error}")

    def _alert_absence(self, student, date):
        roll = student['rollNumber']
        name = student.get('name', '')
        if self.consecutive_absences(roll, date):
            link = f"{self.app_base_url}/inform-faculty?{urlencode({'rollNumber': roll, 'date': date})}"
            text = (
                f"⚠️ Alert: Your child {name} has been absent for "
                f"{self.consecutive_threshold} days continuously.\n\n"
                f"Would you like to inform the faculty about the reason?\n\n"
                f"[Click here to generate & send email]({link})"
            )
            logger.info(f"[ATTENDANCE] Consecutive-absence escalation for {roll}")
        else:
            text = f"🔔 Alert: Your child {name} (Roll No: {roll}) is ABSENT today ({date})."
        self.dispatcher.send(student['telegramChatId'], text)

    def _escalate_low_attendance(self, student):
        roll = student['rollNumber']
        percentage = self.attendance_percentage(roll)
        if percentage >= self.minimum_percentage:
            return

        name = student.get('name', '')
        klass = student.get('studentClass', '')
        minimum = f"{self.minimum_percentage:g}"
        logger.warning(f"[ATTENDANCE] {roll} below minimum attendance: {percentage:.2f}%")

        escalation = (
            f"🚨 *LOW ATTENDANCE WARNING*\n\n"
            f"👤 Student: *{name}*\n"
            f"🎓 Class: {klass}\n"
            f"🔢 Roll No: {roll}\n"
            f"📉 Current Attendance: *{percentage:.2f}%*\n\n"
            f"⚠️ This is below the mandatory *{minimum}%* requirement.\n"
            f"Please ensure regular attendance to avoid academic consequences."
        )
        parent_warning = (
            f"👨‍👩‍👦 *Parent Alert - Low Attendance*\n\n"
            f"Dear Parent,\n\n"
            f"Your child *{name}* (Roll No: {roll}, Class: {klass}) "
            f"has an attendance of *{percentage:.2f}%*, which is below the required *{minimum}%*.\n\n"
            f"Please contact the school administration immediately."
        )

        if student.get('telegramChatId'):
            self.dispatcher.send(student['telegramChatId'], escalation)
        if student.get('parentTelegramChatId'):
            self.dispatcher.send(student['parentTelegramChatId'], parent_warning)
        if self.settings.has_admin_chat:
            self.dispatcher.send(self.settings.admin_chat_id, escalation)

    # --- reads -----------------------------------------------------

    def consecutive_absences(self, roll_number, date):
        """
        True when `date` plus the two calendar days before it are all
        ABSENT. A missing record breaks the run.
        """
        day = parse_date(date)
        run = 1
        for offset in range(1, self.consecutive_threshold):
            previous = (day - datetime.timedelta(days=offset)).strftime(DATE_FORMAT)
            record = self.store.read(f"attendance/{previous}/{roll_number}")
            if isinstance(record, dict) and record.get('status') == 'ABSENT':
                run += 1
            else:
                break
        return run >= self.consecutive_threshold

    def attendance_percentage(self, roll_number):
        """IN days / days with any record x 100, over every date; 0 when none."""
        present = total = 0
        for day_records in (self.store.read('attendance') or {}).values():
            if not isinstance(day_records, dict) or roll_number not in day_records:
                continue
            total += 1
            record = day_records[roll_number]
            if isinstance(record, dict) and record.get('status') == 'IN':
                present += 1
        return 0 if total == 0 else (present / total) * 100

    def student_history(self, roll_number):
        history = []
        for date, day_records in (self.store.read('attendance') or {}).items():
            record = (day_records or {}).get(roll_number) if isinstance(day_records, dict) else None
            if isinstance(record, dict):
                history.append({
                    'date': date,
                    'status': record.get('status'),
                    'checkInTime': record.get('checkInTime'),
                    'checkOutTime': record.get('checkOutTime'),
                })
        history.sort(key=lambda r: r['date'])
        return history

    def get_student(self, roll_number):
        student = self.store.read(f"students/{roll_number}")
        if not isinstance(student, dict):
            return None
        student.setdefault('rollNumber', roll_number)
        return student

    def find_student_by_chat(self, chat_id):
        for roll, student in (self.store.read('students') or {}).items():
            if isinstance(student, dict) and str(student.get('telegramChatId') or '') == str(chat_id):
                student.setdefault('rollNumber', roll)
                return student
        return None

    def list_students(self):
        students = []
        for roll, student in (self.store.read('students') or {}).items():
            if isinstance(student, dict):
                student.setdefault('rollNumber', roll)
                students.append(student)
        return students
