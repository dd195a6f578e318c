# =================================================================
#   Attendance Notify - Telegram Mini App initData Verification
#
#   1. Parse initData into key=value pairs, pull out `hash`.
#   2. data_check_string = remaining pairs sorted by key, "k=v" joined by "\n".
#   3. secret_key = HMAC_SHA256(key="WebAppData", msg=bot_token)
#   4. expected   = hex(HMAC_SHA256(key=secret_key, msg=data_check_string))
#   5. valid iff expected == hash
# =================================================================

import hashlib
import hmac
import json
import logging
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

WEBAPP_KEY = b"WebAppData"


def data_check_string(pairs):
    return "\n".join(f"{k}={v}" for k, v in sorted(pairs, key=lambda kv: kv[0]))


def sign_init_data(pairs, bot_token):
    """Hex signature for the given (key, value) pairs (hash excluded)."""
    secret_key = hmac.new(WEBAPP_KEY, bot_token.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(secret_key, data_check_string(pairs).encode("utf-8"), hashlib.sha256).hexdigest()


def parse_init_data(init_data):
    """initData -> dict, decoding JSON-valued fields such as `user`."""
    result = {}
    for key, value in parse_qsl(init_data or "", keep_blank_values=True):
        try:
            result[key] = json.loads(value)
        except ValueError:
            result[key] = value
    return result


class WebAppVerifier:
    """
    Checks that a mini-app payload was signed with our bot token.

    Modes (BotSettings.verification_mode):
      auto      permissive when the payload is empty or no bot token is
                configured (local development), enforced otherwise
      enforce   always verify; no token or no payload means invalid
      disabled  everything passes
    """

    def __init__(self, settings):
        self.settings = settings
        if settings.verification_mode == "disabled":
            logger.warning("[VERIFY] initData verification is DISABLED - do not run like this in production")

    def verify(self, init_data):
        mode = self.settings.verification_mode
        if mode == "disabled":
            return True
        if not init_data or not self.settings.is_configured:
            if mode == "enforce":
                logger.warning("[VERIFY] Rejected initData - empty payload or bot token not configured")
                return False
            return True

        try:
            pairs = parse_qsl(init_data, keep_blank_values=True)
        except ValueError as e:
            logger.warning(f"[VERIFY] Unparseable initData: {e}")
            return False

        received = next((v for k, v in pairs if k == "hash"), None)
        if not received:
            logger.warning("[VERIFY] No hash found in initData.")
            return False

        remaining = [(k, v) for k, v in pairs if k != "hash"]
        expected = sign_init_data(remaining, self.settings.bot_token)

        # bytes: compare_digest refuses non-ASCII str
        valid = hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8"))
        if not valid:
            logger.warning("[VERIFY] Hash mismatch - possible spoofed request.")
        return valid
