
# =================================================================
#   Attendance Notify - Application Configuration
#   Loads settings from environment variables (.env file)
# =================================================================

import os
import secrets
from dotenv import load_dotenv

# Load .env file from the same directory as this file
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))


# Placeholder values shipped in .env.example. Treated exactly like "not set".
BOT_TOKEN_PLACEHOLDER = 'YOUR_TELEGRAM_BOT_TOKEN'
ADMIN_CHAT_PLACEHOLDER = 'YOUR_ADMIN_CHAT_ID'
BOT_USERNAME_PLACEHOLDER = 'YOUR_BOT_USERNAME'

VERIFICATION_MODES = ('auto', 'enforce', 'disabled')


def _get_or_generate_secret_key():
    """
    Gets SECRET_KEY from environment, or auto-generates one on first run.
    If auto-generated, writes it back to the .env file so it persists.
    """
    key = os.environ.get('SECRET_KEY', '')

    if not key or key == 'auto_generate_on_first_run':
        key = secrets.token_hex(32)

        env_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env')
        try:
            if os.path.exists(env_path):
                with open(env_path, 'r') as f:
                    content = f.read()
                if 'SECRET_KEY=' in content:
                    content = content.replace('SECRET_KEY=auto_generate_on_first_run', f'SECRET_KEY={key}')
                else:
                    content = content.rstrip('\n') + f'\nSECRET_KEY={key}\n'
                with open(env_path, 'w') as f:
                    f.write(content)
            else:
                with open(env_path, 'w') as f:
                    f.write(f'SECRET_KEY={key}\n')
        except OSError:
            # Read-only checkout: the key just won't survive a restart.
            pass

    return key


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _clean(value, placeholder):
    """Map empty strings and shipped placeholders to None."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value == placeholder:
        return None
    return value


# =================================================================
#   Configuration Classes
# =================================================================

class BaseConfig:
    """Base configuration shared by all environments."""

    # Security
    SECRET_KEY = _get_or_generate_secret_key()
    JWT_ALGORITHM = 'HS256'

    # Document store
    STORE_BACKEND = os.environ.get('STORE_BACKEND', 'sqlite')      # sqlite | memory
    STORE_PATH = os.environ.get('STORE_PATH', 'attendance_store.db')

    # Server
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:3000').rstrip('/')
    LOG_FILE = os.environ.get('LOG_FILE', 'attendance_notify.log')

    # ===== TELEGRAM BOT =====
    TELEGRAM_BOT_TOKEN = os.environ.get('TELEGRAM_BOT_TOKEN', BOT_TOKEN_PLACEHOLDER)
    ADMIN_TELEGRAM_CHAT_ID = os.environ.get('ADMIN_TELEGRAM_CHAT_ID', ADMIN_CHAT_PLACEHOLDER)
    TELEGRAM_BOT_USERNAME = os.environ.get('TELEGRAM_BOT_USERNAME', BOT_USERNAME_PLACEHOLDER)
    TELEGRAM_API_BASE = os.environ.get('TELEGRAM_API_BASE', 'https://api.telegram.org')
    # Shared secret Telegram echoes in X-Telegram-Bot-Api-Secret-Token
    TELEGRAM_WEBHOOK_SECRET = os.environ.get('TELEGRAM_WEBHOOK_SECRET', '')
    # auto | enforce | disabled
    WEBAPP_VERIFICATION = os.environ.get('WEBAPP_VERIFICATION', 'auto').strip().lower()

    # ===== DELIVERY =====
    HTTP_TIMEOUT_SECONDS = float(os.environ.get('HTTP_TIMEOUT_SECONDS', '10'))
    MESSAGE_RATE_LIMIT = int(os.environ.get('MESSAGE_RATE_LIMIT', '5'))              # per recipient
    MESSAGE_RATE_WINDOW_SECONDS = int(os.environ.get('MESSAGE_RATE_WINDOW_SECONDS', '60'))
    RATE_LIMIT_BACKEND = os.environ.get('RATE_LIMIT_BACKEND', 'memory')             # memory | store
    RATE_LIMIT_STORE_PATH = os.environ.get('RATE_LIMIT_STORE_PATH', 'rate_limits.db')
    SEND_MAX_RETRIES = int(os.environ.get('SEND_MAX_RETRIES', '3'))
    SEND_BACKOFF_SECONDS = float(os.environ.get('SEND_BACKOFF_SECONDS', '1.0'))     # 1s -> 2s -> 4s

    # ===== ATTENDANCE REQUIREMENTS =====
    MINIMUM_ATTENDANCE_PERCENTAGE = 75   # Institute minimum requirement (%)
    ATTENDANCE_WARNING_THRESHOLD = 60    # Critical warning threshold (%)
    CONSECUTIVE_ABSENCE_THRESHOLD = 3    # Days in a row before escalation

    # ===== EMAIL =====
    SMTP_SERVER = os.environ.get('SMTP_SERVER', 'smtp.gmail.com')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SENDER_EMAIL = os.environ.get('SENDER_EMAIL', '')
    SENDER_PASSWORD = os.environ.get('SENDER_PASSWORD', '')
    SENDER_NAME = os.environ.get('SENDER_NAME', 'Attendance Notify')
    FACULTY_EMAIL = os.environ.get('FACULTY_EMAIL', '')
    ENABLE_ABSENT_ALERTS = _env_bool('ENABLE_ABSENT_ALERTS', True)
    EMAIL_TEST_MODE = _env_bool('EMAIL_TEST_MODE', False)

    # ===== BACKGROUND JOBS =====
    ENABLE_SCHEDULER = _env_bool('ENABLE_SCHEDULER', True)
    REMINDER_POLL_SECONDS = int(os.environ.get('REMINDER_POLL_SECONDS', '60'))
    # "Mathematics@09:00;Physics@11:00"
    CLASS_SCHEDULE = os.environ.get(
        'CLASS_SCHEDULE',
        'Mathematics@09:00;Physics@11:00;Computer Science@14:00;English@16:00'
    )

    # HTTP rate limiting (flask-limiter)
    RATE_LIMIT_API = "100 per minute"    # Max API calls per IP
    RATE_LIMIT_MARK = "30 per minute"    # Attendance marking per IP
    RATE_LIMIT_STORAGE_URI = os.environ.get('RATE_LIMIT_STORAGE_URI', 'memory://')


class DevelopmentConfig(BaseConfig):
    """Development environment configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(BaseConfig):
    """Production environment configuration."""
    DEBUG = False
    TESTING = False


class TestingConfig(BaseConfig):
    """Testing environment configuration."""
    DEBUG = True
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    STORE_BACKEND = 'memory'
    RATE_LIMIT_BACKEND = 'memory'
    ENABLE_SCHEDULER = False
    EMAIL_TEST_MODE = True
    FACULTY_EMAIL = ''
    SEND_BACKOFF_SECONDS = 0.0
    LOG_FILE = None
    TELEGRAM_BOT_TOKEN = BOT_TOKEN_PLACEHOLDER
    ADMIN_TELEGRAM_CHAT_ID = ADMIN_CHAT_PLACEHOLDER
    TELEGRAM_BOT_USERNAME = 'TestAttendanceBot'
    TELEGRAM_WEBHOOK_SECRET = ''
    WEBAPP_VERIFICATION = 'auto'


# --- Select configuration based on FLASK_ENV ---
_env = os.environ.get('FLASK_ENV', 'development').lower()
_config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}

Config = _config_map.get(_env, DevelopmentConfig)


# =================================================================
#   Bot settings passed to dispatcher / verifier / token issuer
# =================================================================

class BotSettings:
    """
    Chat-bot credentials with an explicit "unconfigured" state.

    Placeholder strings never leak past this object: a missing token is
    None, and callers ask ``is_configured`` instead of comparing sentinels.
    """

    def __init__(self, bot_token=None, admin_chat_id=None, bot_username=None,
                 verification_mode='auto', webhook_secret=None,
                 api_base='https://api.telegram.org', timeout=10.0):
        if verification_mode not in VERIFICATION_MODES:
            raise ValueError(
                f"verification_mode must be one of {VERIFICATION_MODES}, got {verification_mode!r}"
            )
        self.bot_token = _clean(bot_token, BOT_TOKEN_PLACEHOLDER)
        self.admin_chat_id = _clean(admin_chat_id, ADMIN_CHAT_PLACEHOLDER)
        self.bot_username = _clean(bot_username, BOT_USERNAME_PLACEHOLDER)
        self.verification_mode = verification_mode
        self.webhook_secret = _clean(webhook_secret, '')
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_config(cls, config=Config):
        return cls(
            bot_token=config.TELEGRAM_BOT_TOKEN,
            admin_chat_id=config.ADMIN_TELEGRAM_CHAT_ID,
            bot_username=config.TELEGRAM_BOT_USERNAME,
            verification_mode=config.WEBAPP_VERIFICATION,
            webhook_secret=config.TELEGRAM_WEBHOOK_SECRET,
            api_base=config.TELEGRAM_API_BASE,
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )

    @property
    def is_configured(self):
        return self.bot_token is not None

    @property
    def has_admin_chat(self):
        return self.admin_chat_id is not None

    def __repr__(self):
        # Never print the token itself
        return (f"<BotSettings configured={self.is_configured} admin={self.has_admin_chat} "
                f"username={self.bot_username!r} verification={self.verification_mode!r}>")


def parse_class_schedule(raw):
    """Parse "Name@HH:MM;Name@HH:MM" into [(name, 'HH:MM'), ...]."""
    schedule = []
    for chunk in (raw or '').split(';'):
        chunk = chunk.strip()
        if not chunk or '@' not in chunk:
            continue
        name, _, when = chunk.rpartition('@')
        name, when = name.strip(), when.strip()
        try:
            hh, mm = (int(part) for part in when.split(':'))
        except ValueError:
            continue
        if name and 0 <= hh < 24 and 0 <= mm < 60:
            schedule.append((name, f"{hh:02d}:{mm:02d}"))
    return schedule
