import datetime

from config import parse_class_schedule
from reminders import ClassReminderService, start_reminder_scheduler


class ImmediateQueue:
    """Runs tasks inline instead of on a worker thread."""

    def __init__(self):
        self.labels = []

    def enqueue(self, task, label="task"):
        self.labels.append(label)
        return task()


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, chat_id, text):
        self.sent.append((chat_id, text))
        return True


STUDENTS = [
    {"rollNumber": "R001", "telegramChatId": "111"},
    {"rollNumber": "R002", "telegramChatId": "222"},
    {"rollNumber": "R003"},
]


def make_service(clock):
    queue, dispatcher = ImmediateQueue(), RecordingDispatcher()
    service = ClassReminderService(
        [("Mathematics", "09:00"), ("Physics", "11:00")],
        lambda: STUDENTS, queue, dispatcher, clock=clock,
    )
    return service, queue, dispatcher


def test_reminds_thirty_minutes_before(clock):
    clock.now = datetime.datetime(2024, 1, 10, 8, 30)
    service, queue, dispatcher = make_service(clock)

    assert service.check_and_send() == 2
    assert queue.labels == ["reminder:Mathematics:R001", "reminder:Mathematics:R002"]
    assert [chat for chat, _ in dispatcher.sent] == ["111", "222"]
    assert "*Mathematics* class starts in 30 minutes (09:00)" in dispatcher.sent[0][1]


def test_only_once_per_class_per_day(clock):
    clock.now = datetime.datetime(2024, 1, 10, 8, 29)
    service, queue, dispatcher = make_service(clock)

    service.check_and_send()
    clock.advance(minutes=2)
    assert service.check_and_send() == 0
    assert len(dispatcher.sent) == 2

    clock.now = datetime.datetime(2024, 1, 11, 8, 30)
    assert service.check_and_send() == 2


def test_outside_window_sends_nothing(clock):
    service, queue, dispatcher = make_service(clock)
    for now in (datetime.datetime(2024, 1, 10, 8, 27), datetime.datetime(2024, 1, 10, 8, 33),
                datetime.datetime(2024, 1, 10, 9, 30)):
        clock.now = now
        assert service.check_and_send() == 0
    assert dispatcher.sent == []


def test_window_edges_are_inclusive(clock):
    clock.now = datetime.datetime(2024, 1, 10, 8, 28)
    service, _, _ = make_service(clock)
    assert service.check_and_send() == 2

    clock.now = datetime.datetime(2024, 1, 10, 10, 32)
    assert service.check_and_send() == 2


class DeferredQueue:
    """Holds tasks until run_all(), like a worker thread that is behind."""

    def __init__(self):
        self.tasks = []

    def enqueue(self, task, label="task"):
        self.tasks.append(task)

    def run_all(self):
        for task in self.tasks:
            task()


def test_deferred_tasks_keep_their_own_class_text(clock):
    clock.now = datetime.datetime(2024, 1, 10, 8, 30)
    queue, dispatcher = DeferredQueue(), RecordingDispatcher()
    service = ClassReminderService(
        [("Mathematics", "09:00"), ("Physics", "09:00")],
        lambda: STUDENTS[:1], queue, dispatcher, clock=clock,
    )

    assert service.check_and_send() == 2
    queue.run_all()

    texts = [text for _, text in dispatcher.sent]
    assert "*Mathematics* class" in texts[0]
    assert "*Physics* class" in texts[1]


def test_earlier_days_are_forgotten(clock):
    clock.now = datetime.datetime(2024, 1, 10, 8, 30)
    service, _, _ = make_service(clock)
    service.check_and_send()
    assert ("2024-01-10", "Mathematics") in service._sent

    clock.now = datetime.datetime(2024, 1, 11, 7, 0)
    service.check_and_send()
    assert service._sent == set()


def test_scheduler_runs_the_check(clock):
    service, _, _ = make_service(clock)
    scheduler = start_reminder_scheduler(service, interval_seconds=3600)
    try:
        job = scheduler.get_job("class_reminders")
        assert job is not None
        assert job.trigger.interval == datetime.timedelta(seconds=3600)
    finally:
        scheduler.shutdown(wait=False)


def test_parse_class_schedule():
    assert parse_class_schedule("Mathematics@09:00; Computer Science@14:00;bad;Late@25:00;Art@7:5") == [
        ("Mathematics", "09:00"), ("Computer Science", "14:00"), ("Art", "07:05"),
    ]
