# =================================================================
#   Attendance Notify - Daily QR Tokens
#   One random token per date (and optionally per class), embedded in
#   a Telegram deep link: https://t.me/<bot>?start=att_<date>_<token>
# =================================================================

import datetime
import logging
import re
import secrets

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"   # no 0/O/1/I/L
TOKEN_LENGTH = 8

_PAYLOAD_RE = re.compile(r"^att_(\d{4}-\d{2}-\d{2})_(?:([a-z0-9-]+)_)?([A-Z2-9]{8})$")


def generate_token_string(length=TOKEN_LENGTH):
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def class_slug(class_name):
    """'Class XII' -> 'class-xii'."""
    return re.sub(r"[^a-z0-9]+", "-", str(class_name).lower())


def parse_start_payload(payload):
    """
    Split a /start argument back into its parts.
    Returns {'date', 'class_slug', 'token'} or None if it isn't an attendance link.
    """
    match = _PAYLOAD_RE.match((payload or "").strip())
    if not match:
        return None
    date, slug, token = match.groups()
    return {"date": date, "class_slug": slug, "token": token}


class DailyTokenIssuer:

    def __init__(self, store, settings, clock=None):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))

    def _get_or_create(self, path, date):
        existing = self.store.read(path)
        if isinstance(existing, dict) and existing.get("token"):
            return existing["token"]

        candidate = {
            "token": generate_token_string(),
            "date": date,
            "createdAt": self.clock().isoformat(),
        }

        # First writer wins: the transaction keeps a record that appeared
        # since our read, and we return whatever ended up stored.
        stored = self.store.transact(
            path, lambda current: current if isinstance(current, dict) and current.get("token") else candidate
        )
        if stored["token"] != candidate["token"]:
            logger.info(f"[TOKENS] Lost token race for {path}; using the stored token")
        else:
            logger.info(f"[TOKENS] Issued new token for {path}")
        return stored["token"]

    def get_or_create_token(self, date):
        return self._get_or_create(f"qrTokens/{date}", date)

    def get_token(self, date):
        record = self.store.read(f"qrTokens/{date}")
        return record.get("token") if isinstance(record, dict) else None

    def verify_daily_token(self, date, token):
        stored = self.get_token(date)
        return bool(stored) and stored == token

    # --- per-class tokens -------------------------------------------

    def get_or_create_class_token(self, date, class_name):
        return self._get_or_create(f"classQrTokens/{date}/{class_slug(class_name)}", date)

    def get_class_token(self, date, slug):
        record = self.store.read(f"classQrTokens/{date}/{slug}")
        return record.get("token") if isinstance(record, dict) else None

    def verify_class_token(self, date, slug, token):
        stored = self.get_class_token(date, slug)
        return bool(stored) and stored == token

    # --- deep links ---------------------------------------------------

    def deep_link(self, date, token, slug=None):
        """Telegram start link, or '' when no bot username is configured."""
        if not self.settings.bot_username:
            return ""
        payload = f"att_{date}_{slug}_{token}" if slug else f"att_{date}_{token}"
        return f"https://t.me/{self.settings.bot_username}?start={payload}"
