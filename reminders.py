# =================================================================
#   Attendance Notify - Class Reminders
#   "Class starts in 30 minutes" messages to every registered chat,
#   pushed through the message queue. Polled by APScheduler.
# =================================================================

import datetime
import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

WINDOW_MINUTES = (28, 32)


def reminder_text(class_name, class_time):
    return (
        f"⏰ *Upcoming Class Reminder*\n\n"
        f"Your *{class_name}* class starts in 30 minutes ({class_time}).\n\n"
        f"Don't forget to attend and mark your presence!"
    )


class ClassReminderService:
    """
    `schedule` is [(class_name, 'HH:MM'), ...]; `students_source` is a
    callable returning the current student list. Each (date, class) is
    reminded at most once per process; keys from earlier days are dropped.
    """

    def __init__(self, schedule, students_source, queue, dispatcher, clock=datetime.datetime.now):
        self.schedule = list(schedule)
        self.students_source = students_source
        self.queue = queue
        self.dispatcher = dispatcher
        self.clock = clock
        self._sent = set()
        self._lock = threading.Lock()

    def _minutes_until(self, now, class_time):
        hh, mm = (int(part) for part in class_time.split(':'))
        starts = now.replace(hour=hh, minute=mm, second=0, microsecond=0)
        return round((starts - now).total_seconds() / 60)

    def check_and_send(self):
        """Queue reminders for classes starting soon. Returns how many were queued."""
        now = self.clock()
        today = now.strftime('%Y-%m-%d')
        queued = 0

        with self._lock:
            self._sent = {key for key in self._sent if key[0] == today}

        for class_name, class_time in self.schedule:
            minutes = self._minutes_until(now, class_time)
            if not WINDOW_MINUTES[0] <= minutes <= WINDOW_MINUTES[1]:
                continue

            key = (today, class_name)
            with self._lock:
                if key in self._sent:
                    continue
                self._sent.add(key)

            logger.info(f"[REMINDER] Queuing reminders for {class_name} ({class_time})")
            text = reminder_text(class_name, class_time)
            for student in self.students_source():
                chat_id = student.get('telegramChatId')
                if not chat_id:
                    continue
                self.queue.enqueue(
                    lambda chat_id=chat_id, text=text: self.dispatcher.send(chat_id, text),
                    f"reminder:{class_name}:{student.get('rollNumber')}",
                )
                queued += 1
        return queued


def start_reminder_scheduler(service, interval_seconds=60):
    """Run check_and_send on a BackgroundScheduler. Caller owns shutdown()."""

    def _job():
        try:
            service.check_and_send()
        except Exception as e:
            logger.error(f"[REMINDER] Reminder check failed: {e}", exc_info=True)

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=_job,
        trigger="interval",
        seconds=interval_seconds,
        id='class_reminders',
        name='Upcoming class reminders',
        replace_existing=True
    )
    scheduler.start()
    logger.info(f"[REMINDER] Scheduler active (every {interval_seconds}s, {len(service.schedule)} classes)")
    return scheduler
