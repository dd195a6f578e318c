# =================================================================
#   Attendance Notify - Reports
#   Per-student .xlsx attendance export (sent by the bot's /download)
# =================================================================

import io
import logging

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    'IN': 'Present',
    'ABSENT': 'Absent',
    'LEAVE': 'On Leave',
}


def report_filename(student):
    return f"Attendance_Report_{student.get('rollNumber', 'student')}.xlsx"


def build_attendance_workbook(student, history):
    """
    `history` is a list of {date, status, checkInTime, checkOutTime}
    (see AttendanceEventProcessor.student_history). Returns the .xlsx bytes.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Attendance Report"

    ws.append([f"Student: {student.get('name', '')}",
               f"Roll No: {student.get('rollNumber', '')}",
               f"Class: {student.get('studentClass', '')}"])
    ws.append([])

    headers = ["Date", "Status", "Check-In", "Check-Out"]
    ws.append(headers)
    for cell in ws[3]:
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')

    present = 0
    for entry in history:
        status = entry.get('status')
        if status == 'IN':
            present += 1
        ws.append([
            entry.get('date'),
            STATUS_LABELS.get(status, status or ''),
            entry.get('checkInTime') or '-',
            entry.get('checkOutTime') or '-',
        ])

    ws.append([])
    percentage = (present / len(history) * 100) if history else 0
    ws.append(["Total days", len(history), "Attendance %", round(percentage, 2)])

    for column, width in zip("ABCD", (14, 12, 12, 12)):
        ws.column_dimensions[column].width = width

    buffer = io.BytesIO()
    wb.save(buffer)
    logger.info(f"Excel report built - Roll: {student.get('rollNumber')}, Days: {len(history)}")
    return buffer.getvalue()
