# =================================================================
#   Attendance Notify Server
# =================================================================

import atexit
import datetime
import hmac
import logging
import time
from functools import wraps
from logging.handlers import RotatingFileHandler

import jwt
from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

import analytics
import email_service
from attendance_events import AttendanceEventProcessor, ValidationError, canonical_date, today_str
from bot_commands import BotCommandHandler
from broadcasts import BroadcastService
from config import BotSettings, Config, parse_class_schedule
from daily_tokens import DailyTokenIssuer, class_slug
from delivery_log import DeliveryLog
from document_store import create_store
from message_queue import MessageQueue
from rate_limiter import create_rate_limiter
from reminders import ClassReminderService, start_reminder_scheduler
from telegram_dispatcher import TelegramDispatcher
from webhook_verify import WebAppVerifier, parse_init_data

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(log_file=None, level=logging.INFO):
    """Console + rotating file logging, set up once per process."""
    handlers = [logging.StreamHandler()]
    if log_file:
        log_file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=5,
            encoding='utf-8'
        )
        log_file_handler.setLevel(logging.INFO)
        log_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(log_file_handler)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    # Only warnings and errors from the web server and scheduler
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('apscheduler.executors.default').setLevel(logging.ERROR)
    logging.getLogger('httpx').setLevel(logging.WARNING)


# --- Rate Limiting: bound per app in create_app() ---
limiter = Limiter(key_func=get_remote_address)

api = Blueprint('api', __name__, url_prefix='/api')


class NotifyServices:
    """Everything the routes need, wired once per app."""

    def __init__(self, config, store=None, http_client=None, clock=None):
        clock = clock or datetime.datetime.now
        self.config = config
        self.clock = clock
        self.store = store if store is not None else create_store(config)
        self.settings = BotSettings.from_config(config)

        shared = self.store if (config.RATE_LIMIT_BACKEND or '').lower() == 'store' else None
        self.rate_limiter = create_rate_limiter(config, shared_store=shared)
        self.delivery_log = DeliveryLog(self.store)
        self.dispatcher = TelegramDispatcher(
            self.settings, self.rate_limiter, self.delivery_log,
            client=http_client,
            max_retries=config.SEND_MAX_RETRIES,
            backoff_seconds=config.SEND_BACKOFF_SECONDS,
        )
        self.processor = AttendanceEventProcessor(
            self.store, self.dispatcher, self.settings,
            app_base_url=config.APP_BASE_URL,
            email_sender=lambda student, status, date: email_service.send_status_alert(student, status, date, config),
            minimum_percentage=config.MINIMUM_ATTENDANCE_PERCENTAGE,
            consecutive_threshold=config.CONSECUTIVE_ABSENCE_THRESHOLD,
            clock=clock,
        )
        self.verifier = WebAppVerifier(self.settings)
        self.tokens = DailyTokenIssuer(self.store, self.settings)
        self.queue = MessageQueue(
            max_retries=config.SEND_MAX_RETRIES,
            base_delay=config.SEND_BACKOFF_SECONDS,
            on_error=lambda label, exc: logger.error(f"[QUEUE] Gave up on {label}: {exc}"),
        )
        self.bot = BotCommandHandler(self.processor, self.dispatcher, self.tokens, self.delivery_log, clock=clock)
        self.broadcasts = BroadcastService(self.store, self.dispatcher, self.processor.list_students)
        self.reminders = ClassReminderService(
            parse_class_schedule(config.CLASS_SCHEDULE),
            self.processor.list_students, self.queue, self.dispatcher, clock=clock,
        )
        self.scheduler = None

    def start_background(self):
        self.scheduler = start_reminder_scheduler(self.reminders, self.config.REMINDER_POLL_SECONDS)
        atexit.register(self.shutdown)

    def shutdown(self):
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.queue.stop()
        self.dispatcher.close()


def services():
    return current_app.extensions['attendance_notify']


# =================================================================
#   Helpers
# =================================================================

# Checks for a valid JWT in the Authorization header and hands the
# decoded claims to the route as its first argument.
def token_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        auth_header = request.headers.get('Authorization', '')
        if auth_header.startswith('Bearer '):
            token = auth_header.split(" ", 1)[1].strip()

        if not token:
            return jsonify({'message': 'Authorization Token is missing!'}), 401

        try:
            data = jwt.decode(token, current_app.config['SECRET_KEY'],
                              algorithms=[current_app.config['JWT_ALGORITHM']])
        except jwt.ExpiredSignatureError:
            return jsonify({'message': 'Token has expired!'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'message': 'Token is invalid!'}), 401

        return f(data, *args, **kwargs)
    return decorated


def validate_required_fields(data, required_fields):
    """
    Validates that request data contains all required fields and they're not empty.

    Returns:
        (is_valid, error_message) tuple
    """
    if not data:
        return False, "No data provided in request body"

    for field in required_fields:
        if field not in data:
            return False, f"Missing required field: '{field}'"
        if not str(data[field]).strip():
            return False, f"Field '{field}' cannot be empty"

    return True, None


def _require_student(roll_number):
    student = services().processor.get_student(roll_number)
    if student is None:
        return None, (jsonify({'message': f"Student {roll_number} not found"}), 404)
    return student, None


def _json_body():
    """The request's JSON object, or {} for a missing or non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _date_or_today(value):
    if value:
        return canonical_date(value)
    return today_str(services().clock)


@api.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({'message': str(e)}), 400


# =================================================================
#   Health
# =================================================================

@api.route('/health', methods=['GET'])
@limiter.exempt
def health_check():
    """Server status plus document store connectivity."""
    svc = services()
    status = {
        "status": "healthy",
        "environment": "development" if current_app.config.get('DEBUG') else "production",
        "store": "unknown",
        "telegram": "configured" if svc.settings.is_configured else "not configured",
    }

    try:
        svc.store.ping()
        status["store"] = "connected"
    except Exception as e:
        status["status"] = "degraded"
        status["store"] = f"error: {str(e)}"
        logger.error(f"Health check - Store error: {e}")

    http_code = 200 if status["status"] == "healthy" else 503
    return jsonify(status), http_code


# =================================================================
#   Attendance
# =================================================================

@api.route('/attendance/mark', methods=['POST'])
@limiter.limit(lambda: current_app.config['RATE_LIMIT_MARK'])
@token_required
def mark_attendance(current_user):
    data = _json_body()
    is_valid, error = validate_required_fields(data, ['rollNumber', 'status'])
    if not is_valid:
        return jsonify({'message': error}), 400

    student, missing = _require_student(str(data['rollNumber']).strip())
    if missing:
        return missing

    date = _date_or_today(data.get('date'))
    record = services().processor.mark_attendance(student, date, data['status'])
    logger.info(f"[ATTENDANCE] Marked by {current_user.get('sub', 'unknown')}: "
                f"{student['rollNumber']} -> {record['status']} ({date})")
    return jsonify({'message': 'Attendance recorded', 'date': date, 'record': record})


@api.route('/attendance/<roll_number>/percentage', methods=['GET'])
@token_required
def attendance_percentage(current_user, roll_number):
    _, missing = _require_student(roll_number)
    if missing:
        return missing
    percentage = services().processor.attendance_percentage(roll_number)
    return jsonify({
        'rollNumber': roll_number,
        'percentage': round(percentage, 2),
        'belowMinimum': percentage < current_app.config['MINIMUM_ATTENDANCE_PERCENTAGE'],
    })


@api.route('/attendance/<roll_number>/consecutive', methods=['GET'])
@token_required
def consecutive_absences(current_user, roll_number):
    _, missing = _require_student(roll_number)
    if missing:
        return missing
    date = _date_or_today(request.args.get('date'))
    return jsonify({
        'rollNumber': roll_number,
        'date': date,
        'consecutiveAbsent': services().processor.consecutive_absences(roll_number, date),
    })


@api.route('/attendance/<roll_number>/analysis', methods=['GET'])
@token_required
def student_analysis(current_user, roll_number):
    student, missing = _require_student(roll_number)
    if missing:
        return missing
    history = services().processor.student_history(roll_number)
    profile = analytics.analyze_student(
        roll_number, history, current_app.config['MINIMUM_ATTENDANCE_PERCENTAGE']
    )
    profile['name'] = student.get('name', '')
    profile['studentClass'] = student.get('studentClass', '')
    return jsonify(profile)


# =================================================================
#   Inform Faculty (linked from the consecutive-absence alert)
# =================================================================

@api.route('/inform-faculty/draft', methods=['GET'])
def faculty_draft():
    roll_number = (request.args.get('rollNumber') or '').strip()
    if not roll_number:
        return jsonify({'message': "Missing required field: 'rollNumber'"}), 400
    student, missing = _require_student(roll_number)
    if missing:
        return missing
    date = _date_or_today(request.args.get('date'))
    return jsonify({'rollNumber': roll_number, 'date': date,
                    'draft': email_service.build_faculty_draft(student, date)})


@api.route('/inform-faculty', methods=['POST'])
@limiter.limit("5 per minute")
def inform_faculty():
    data = _json_body()
    is_valid, error = validate_required_fields(data, ['rollNumber', 'date'])
    if not is_valid:
        return jsonify({'message': error}), 400

    student, missing = _require_student(str(data['rollNumber']).strip())
    if missing:
        return missing
    date = _date_or_today(data['date'])

    ok, error = email_service.send_faculty_notice(student, date, data.get('draft'), services().config)
    if not ok:
        logger.warning(f"[FACULTY] Notice for {student['rollNumber']} not sent: {error}")
        return jsonify({'message': f"Could not send notice: {error}"}), 502
    return jsonify({'message': 'Faculty has been informed'})


# =================================================================
#   QR Tokens
# =================================================================

@api.route('/qr/token', methods=['POST'])
@token_required
def issue_qr_token(current_user):
    data = _json_body()
    date = _date_or_today(data.get('date'))
    tokens = services().tokens

    class_name = str(data.get('class') or '').strip()
    if class_name:
        slug = class_slug(class_name)
        token = tokens.get_or_create_class_token(date, class_name)
        return jsonify({'date': date, 'class': class_name, 'classSlug': slug, 'token': token,
                        'deepLink': tokens.deep_link(date, token, slug)})

    token = tokens.get_or_create_token(date)
    return jsonify({'date': date, 'token': token, 'deepLink': tokens.deep_link(date, token)})


@api.route('/qr/verify', methods=['POST'])
@limiter.limit(lambda: current_app.config['RATE_LIMIT_MARK'])
def verify_qr_token():
    data = _json_body()
    is_valid, error = validate_required_fields(data, ['date', 'token'])
    if not is_valid:
        return jsonify({'message': error}), 400

    date = _date_or_today(data['date'])
    token = str(data['token']).strip()
    tokens = services().tokens
    class_name = str(data.get('class') or '').strip()
    if class_name:
        valid = tokens.verify_class_token(date, class_slug(class_name), token)
    else:
        valid = tokens.verify_daily_token(date, token)
    return jsonify({'date': date, 'valid': valid})


# =================================================================
#   Telegram
# =================================================================

@api.route('/telegram/verify', methods=['POST'])
def verify_webapp():
    data = _json_body()
    init_data = data.get('initData') or ''
    if not services().verifier.verify(init_data):
        return jsonify({'valid': False, 'message': 'initData signature is invalid'}), 401
    return jsonify({'valid': True, 'data': parse_init_data(init_data)})


@api.route('/telegram/webhook', methods=['POST'])
@limiter.exempt
def telegram_webhook():
    svc = services()
    expected = svc.settings.webhook_secret
    if expected:
        received = request.headers.get('X-Telegram-Bot-Api-Secret-Token', '')
        if not hmac.compare_digest(received, expected):
            logger.warning(f"[BOT] Webhook call with bad secret from {request.remote_addr}")
            return jsonify({'ok': False}), 403

    update = _json_body()
    try:
        handled = svc.bot.handle_update(update)
    except Exception as e:
        # Telegram redelivers on non-2xx, which would replay the failure
        logger.error(f"[BOT] Update {update.get('update_id')} failed: {e}", exc_info=True)
        return jsonify({'ok': False})
    return jsonify({'ok': True, 'handled': handled})


# =================================================================
#   Broadcasts & Bot Logs (admin dashboard)
# =================================================================

@api.route('/broadcast', methods=['POST'])
@limiter.limit("10 per minute")
@token_required
def send_broadcast(current_user):
    data = _json_body()
    is_valid, error = validate_required_fields(data, ['message'])
    if not is_valid:
        return jsonify({'message': error}), 400
    entry = services().broadcasts.broadcast(data['message'], sent_by=current_user.get('sub'))
    return jsonify(entry), 201


@api.route('/broadcasts', methods=['GET'])
@token_required
def list_broadcasts(current_user):
    return jsonify(services().broadcasts.list_broadcasts())


@api.route('/bot-logs/command-stats', methods=['GET'])
@token_required
def command_stats(current_user):
    return jsonify(services().delivery_log.command_stats())


@api.route('/bot-logs/<kind>', methods=['GET'])
@token_required
def bot_logs(current_user, kind):
    try:
        entries = services().delivery_log.list_entries(kind)
    except ValueError as e:
        return jsonify({'message': str(e)}), 400
    limit = request.args.get('limit', type=int)
    return jsonify(entries[:limit] if limit else entries)


@api.route('/queue/stats', methods=['GET'])
@token_required
def queue_stats(current_user):
    return jsonify(services().queue.get_stats())


# =================================================================
#   App Factory
# =================================================================

def create_app(config_class=Config, store=None, http_client=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.config['RATELIMIT_DEFAULT'] = config_class.RATE_LIMIT_API
    app.config['RATELIMIT_STORAGE_URI'] = config_class.RATE_LIMIT_STORAGE_URI

    configure_logging(config_class.LOG_FILE)

    # --- CORS for the dashboard / mini app ---
    CORS(app, resources={r"/api/*": {"origins": "*"}})
    limiter.init_app(app)

    svc = NotifyServices(config_class, store=store, http_client=http_client, clock=clock)
    app.extensions['attendance_notify'] = svc
    app.register_blueprint(api)

    # --- Security Headers ---
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'SAMEORIGIN'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        if not app.config.get('DEBUG'):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # --- Request/Response Logging ---
    @app.before_request
    def log_request_info():
        request._start_time = time.time()
        if request.path != '/api/health':
            logger.info(f"[REQUEST] {request.method} {request.path} - Client: {request.remote_addr}")

    @app.after_request
    def log_response_info(response):
        duration = 0
        if hasattr(request, '_start_time'):
            duration = (time.time() - request._start_time) * 1000  # ms
        # Only non-200 responses or slow requests (>500ms)
        if response.status_code != 200 or duration > 500:
            logger.info(f"[RESPONSE] {request.method} {request.path} - Status: {response.status_code} - {duration:.0f}ms")
        return response

    if config_class.ENABLE_SCHEDULER:
        svc.start_background()

    logger.info(f"Server ready - Telegram {'configured' if svc.settings.is_configured else 'NOT configured'}, "
                f"verification={svc.settings.verification_mode}")
    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host=Config.HOST, port=Config.PORT, debug=False, use_reloader=False)
