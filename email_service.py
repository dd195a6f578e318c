# =================================================================
#   Attendance Notify - Email Service
#   Parent absence/leave alerts and faculty notices over SMTP
# =================================================================

import smtplib
import html
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import logging

from config import Config

logger = logging.getLogger(__name__)


def send_email(to_email, subject, html_content, config=None):
    """
    Core email sending function - handles all SMTP logic
    Returns: (success: bool, error_msg: str or None)
    """
    config = config or Config

    if not to_email or '@' not in to_email:
        logger.warning(f"Invalid email address: {to_email}")
        return False, "Invalid email address"

    if config.EMAIL_TEST_MODE:
        logger.info(f"[EMAIL:TEST] To: {to_email} | Subject: {subject}")
        return True, None

    if not config.SENDER_EMAIL or not config.SENDER_PASSWORD:
        logger.warning("Email not sent - SMTP sender credentials are not configured")
        return False, "SMTP not configured"

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{config.SENDER_NAME} <{config.SENDER_EMAIL}>"
        msg['To'] = to_email
        msg.attach(MIMEText(html_content, 'html'))

        with smtplib.SMTP(config.SMTP_SERVER, config.SMTP_PORT, timeout=config.HTTP_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(config.SENDER_EMAIL, config.SENDER_PASSWORD)
            server.send_message(msg)

        logger.info(f"Email sent successfully to {to_email}")
        return True, None

    except smtplib.SMTPAuthenticationError:
        error_msg = "SMTP authentication failed - check the sender app password"
        logger.error(f"Email failed - {error_msg}")
        return False, error_msg

    except smtplib.SMTPException as e:
        error_msg = f"SMTP error: {str(e)}"
        logger.error(f"Email failed to {to_email}: {error_msg}")
        return False, error_msg

    except Exception as e:
        error_msg = f"Unexpected error: {str(e)}"
        logger.error(f"Email failed to {to_email}: {error_msg}")
        return False, error_msg


_PAGE = """
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; background: #f5f5f5; margin: 0; padding: 20px; }}
            .container {{ background: white; max-width: 600px; margin: 0 auto; border-radius: 8px; overflow: hidden; box-shadow: 0 2px 8px rgba(0,0,0,0.1); }}
            .header {{ background: {color}; color: white; padding: 30px; text-align: center; }}
            .header h1 {{ margin: 0; font-size: 24px; }}
            .content {{ padding: 30px; }}
            .info-box {{ background: #f8f9fa; padding: 20px; border-radius: 5px; margin: 20px 0; }}
            .info-box p {{ margin: 10px 0; font-size: 16px; }}
            .footer {{ background: #f8f9fa; padding: 20px; text-align: center; color: #666; font-size: 12px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header"><h1>{title}</h1></div>
            <div class="content">{body}</div>
            <div class="footer"><p><strong>{sender}</strong> - School Attendance Notifications</p></div>
        </div>
    </body>
    </html>
    """


def _render(title, color, body, config):
    return _PAGE.format(title=html.escape(title), color=color, body=body,
                        sender=html.escape(config.SENDER_NAME))


# =================================================================
#   ALERT: ABSENT / LEAVE (sent when the status is marked)
# =================================================================

def send_status_alert(student, status, date, config=None):
    """
    Tell the parent their child was marked ABSENT or on LEAVE.
    `student` is a StudentProfile-shaped dict.
    """
    config = config or Config
    if not config.ENABLE_ABSENT_ALERTS:
        logger.debug("Absent alerts disabled")
        return False, "Disabled"

    name = student.get('name') or 'your child'
    roll = student.get('rollNumber', '')
    klass = student.get('studentClass', '')
    on_leave = status == 'LEAVE'

    label = 'ON LEAVE' if on_leave else 'ABSENT'
    subject = f"{'📌' if on_leave else '⚠️'} {name} - marked {label} on {date}"
    body = f"""
                <p style="font-size: 16px; color: #333;">Dear Parent,</p>
                <p style="font-size: 16px; color: #333;">
                    Your child <strong>{html.escape(name)}</strong> (Class {html.escape(klass)})
                    has been marked <strong>{label}</strong> today.
                </p>
                <div class="info-box">
                    <p><strong>🔢 Roll No:</strong> {html.escape(roll)}</p>
                    <p><strong>🎓 Class:</strong> {html.escape(klass)}</p>
                    <p><strong>📌 Status:</strong> {html.escape(status)}</p>
                    <p><strong>📅 Date:</strong> {html.escape(date)}</p>
                </div>
                <p style="font-size: 14px; color: #666; margin-top: 20px;">
                    If this is incorrect, please contact the class teacher.
                </p>
    """
    color = '#17a2b8' if on_leave else '#dc3545'
    return send_email(student.get('parentEmail'), subject,
                      _render(f"{label.title()} Alert", color, body, config), config)


# =================================================================
#   FACULTY NOTICE (parent explains consecutive absences)
# =================================================================

def build_faculty_draft(student, date):
    """Plain-text letter the parent can edit before sending."""
    name = student.get('name', '')
    roll = student.get('rollNumber', '')
    return (
        f"Subject: Notification regarding consecutive absences - {name} ({roll})\n\n"
        f"Dear Faculty Member,\n\n"
        f"I am writing to inform you that my child, {name}, student of class "
        f"{student.get('studentClass', '')} (Roll No: {roll}), has been absent for the past "
        f"three days (concluding on {date}).\n\n"
        f"We apologize for the inconvenience and are working to ensure their return as soon as "
        f"possible. Please let us know if there is any academic work they need to catch up on.\n\n"
        f"Sincerely,\n"
        f"Guardian of {name}"
    )


def send_faculty_notice(student, date, draft=None, config=None):
    config = config or Config
    if not config.FACULTY_EMAIL:
        return False, "Faculty email not configured"
    draft = draft or build_faculty_draft(student, date)
    subject = f"Consecutive absences - {student.get('name', '')} ({student.get('rollNumber', '')})"
    paragraphs = ''.join(
        f'<p style="font-size: 15px; color: #333;">{html.escape(p).replace(chr(10), "<br>")}</p>'
        for p in draft.split('\n\n')
    )
    return send_email(config.FACULTY_EMAIL, subject,
                      _render("Absence Notice", '#6d28d9', paragraphs, config), config)
