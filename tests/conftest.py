import datetime
import json
import os

# Must be set before config is imported: it picks the config class and
# would otherwise generate a SECRET_KEY into .env.
os.environ["FLASK_ENV"] = "testing"
os.environ.setdefault("SECRET_KEY", "testing-secret-key")

import httpx
import jwt
import pytest

from attendance_events import AttendanceEventProcessor
from config import BotSettings, TestingConfig
from delivery_log import DeliveryLog
from document_store import InMemoryDocumentStore
from rate_limiter import RateLimiter
from telegram_dispatcher import TelegramDispatcher

BOT_TOKEN = "123456:TEST-TOKEN"
ADMIN_CHAT = "900"


class FakeClock:
    """Callable returning a settable datetime."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)

    def timestamp(self):
        return self.now.timestamp()


class FakeTelegram:
    """httpx.MockTransport handler that records calls and replays queued outcomes."""

    def __init__(self):
        self.requests = []
        self.outcomes = []

    def handler(self, request):
        self.requests.append(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return httpx.Response(200, json={"ok": True, "result": {}})

    def calls(self, method):
        return [r for r in self.requests if r.url.path.endswith(f"/{method}")]

    def messages(self):
        return [json.loads(r.content) for r in self.calls("sendMessage")]

    def texts_for(self, chat_id):
        return [m["text"] for m in self.messages() if m["chat_id"] == str(chat_id)]


class EmailRecorder:

    def __init__(self):
        self.sent = []

    def __call__(self, student, status, date):
        self.sent.append((student["rollNumber"], status, date))
        return True, None


class NotifyTestConfig(TestingConfig):
    TELEGRAM_BOT_TOKEN = BOT_TOKEN
    ADMIN_TELEGRAM_CHAT_ID = ADMIN_CHAT
    RATELIMIT_ENABLED = False


@pytest.fixture()
def clock():
    return FakeClock(datetime.datetime(2024, 1, 10, 8, 0, 0))


@pytest.fixture()
def store():
    return InMemoryDocumentStore()


@pytest.fixture()
def settings():
    return BotSettings(bot_token=BOT_TOKEN, admin_chat_id=ADMIN_CHAT, bot_username="TestAttendanceBot")


@pytest.fixture()
def telegram():
    return FakeTelegram()


@pytest.fixture()
def http_client(telegram):
    client = httpx.Client(transport=httpx.MockTransport(telegram.handler))
    yield client
    client.close()


@pytest.fixture()
def delivery_log(store):
    return DeliveryLog(store)


@pytest.fixture()
def rate_limiter(clock):
    return RateLimiter(max_messages=5, window_seconds=60, clock=clock.timestamp)


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def dispatcher(settings, rate_limiter, delivery_log, http_client, sleeps):
    return TelegramDispatcher(settings, rate_limiter, delivery_log, client=http_client,
                              max_retries=3, backoff_seconds=1.0, sleep=sleeps.append)


@pytest.fixture()
def emails():
    return EmailRecorder()


@pytest.fixture()
def processor(store, dispatcher, settings, emails, clock):
    return AttendanceEventProcessor(store, dispatcher, settings,
                                    app_base_url="https://school.example",
                                    email_sender=emails, clock=clock)


@pytest.fixture()
def student():
    return {
        "rollNumber": "R001",
        "name": "Asha Verma",
        "studentClass": "Class XII",
        "parentEmail": "parent@example.com",
        "telegramChatId": "111",
        "parentTelegramChatId": "222",
    }


@pytest.fixture()
def registered(store, student):
    store.write(f"students/{student['rollNumber']}", student)
    return student


@pytest.fixture()
def app(store, http_client, clock):
    from server import create_app
    return create_app(NotifyTestConfig, store=store, http_client=http_client, clock=clock)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth_headers():
    token = jwt.encode(
        {"sub": "staff-1", "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)},
        NotifyTestConfig.SECRET_KEY,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def seed(store):
    """seed(roll, {date: status}) writes bare attendance records."""

    def _seed(roll, statuses):
        for date, status in statuses.items():
            store.write(f"attendance/{date}/{roll}", {"rollNumber": roll, "status": status})

    return _seed
