# =================================================================
#   Attendance Notify - Telegram Message Dispatcher
#   Outbound sendMessage / sendDocument with rate limiting,
#   retry + exponential backoff, and failure logging
# =================================================================

import json
import logging
import time

import httpx

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR = "Rate limit exceeded (5 msg/min)"


def _is_retryable(status_code):
    return status_code == 429 or status_code >= 500


def _describe(exc):
    return str(exc) or exc.__class__.__name__


class TelegramDispatcher:
    """
    Sends chat messages on behalf of the notification core.

    ``send`` never raises: every failure path ends in a delivery-log
    entry. The rate limiter is consulted once per logical send; the
    retry loop (1s, 2s, 4s by default) only covers the HTTP call.
    """

    def __init__(self, settings, rate_limiter, delivery_log, client=None,
                 max_retries=3, backoff_seconds=1.0, sleep=time.sleep):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.delivery_log = delivery_log
        self.client = client or httpx.Client(timeout=settings.timeout)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def _url(self, method):
        return f"{self.settings.api_base}/bot{self.settings.bot_token}/{method}"

    def _enabled(self, chat_id):
        return bool(chat_id) and self.settings.is_configured

    def send(self, chat_id, text):
        """Send a Markdown message. Returns True when Telegram accepted it."""
        if not self._enabled(chat_id):
            return False
        chat_id = str(chat_id)

        try:
            allowed = self.rate_limiter.allow(chat_id)
        except Exception as e:
            # A broken shared window store should not silence notifications
            logger.error(f"[DISPATCH] Rate limiter unavailable, sending anyway: {e}")
            allowed = True
        if not allowed:
            self.delivery_log.log_failed_message(chat_id, text, RATE_LIMIT_ERROR)
            return False

        payload = {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"}
        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"[DISPATCH] Retry {attempt}/{self.max_retries} for chat {chat_id} in {delay:g}s")
                self.sleep(delay)

            try:
                response = self.client.post(self._url("sendMessage"), json=payload,
                                            timeout=self.settings.timeout)
            except httpx.HTTPError as e:
                last_error = _describe(e)
                logger.error(f"[DISPATCH] Telegram API error for chat {chat_id}: {last_error}")
                continue
            except Exception as e:
                last_error = _describe(e)
                logger.error(f"[DISPATCH] Unexpected send failure for chat {chat_id}: {last_error}", exc_info=True)
                break

            if response.is_success:
                if attempt:
                    logger.info(f"[DISPATCH] Delivered to chat {chat_id} after {attempt} retr{'y' if attempt == 1 else 'ies'}")
                return True

            try:
                body = response.json()
            except ValueError:
                body = {}
            last_error = f"HTTP {response.status_code}: {json.dumps(body, separators=(',', ':'), ensure_ascii=False)}"
            logger.error(f"[DISPATCH] Telegram rejected message to chat {chat_id}: {last_error}")
            if not _is_retryable(response.status_code):
                break

        self.delivery_log.log_failed_message(chat_id, text, last_error)
        return False

    def send_document(self, chat_id, content, filename):
        """Upload a file (bytes) as a document. Failures are only logged locally."""
        if not self._enabled(chat_id):
            return False
        try:
            response = self.client.post(
                self._url("sendDocument"),
                data={"chat_id": str(chat_id)},
                files={"document": (filename, content)},
                timeout=self.settings.timeout,
            )
            if not response.is_success:
                logger.warning(f"[DISPATCH] sendDocument to chat {chat_id} failed: HTTP {response.status_code}")
                return False
            return True
        except Exception as e:
            logger.warning(f"[DISPATCH] sendDocument to chat {chat_id} failed: {_describe(e)}")
            return False

    def close(self):
        self.client.close()
