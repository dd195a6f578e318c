import math
from datetime import datetime

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _is_present(record):
    return record.get('status') == 'IN'


def calculate_status_and_improvement(present_days, total_days, target_percent=75.0, critical_percent=60.0):
    """
    Where a student stands against the attendance requirement.

    Args:
        present_days (int): Days marked IN.
        total_days (int): Days with any attendance record.
        target_percent (float): Required attendance percentage (default 75.0).
        critical_percent (float): Below this the student is Critical (default 60.0).

    Returns:
        dict with current_percent, status ('Good' / 'Warning' / 'Critical'),
        needed_to_recover (consecutive present days to reach the target),
        buffer_available (days that can be missed while staying above it),
        message and action_plan.
    """
    if total_days == 0:
        return {
            "current_percent": 0.0,
            "status": "Good",
            "needed_to_recover": 0,
            "buffer_available": 0,
            "message": "No attendance recorded yet.",
            "action_plan": "Attendance will be tracked from the first marked day."
        }

    current_percent = (present_days / total_days) * 100

    if current_percent < critical_percent:
        status = "Critical"
        message = f"Critical: attendance is below {critical_percent:g}%."
    elif current_percent < target_percent:
        status = "Warning"
        message = f"Warning: attendance is below the required {target_percent:g}%."
    else:
        status = "Good"
        message = f"Attendance is above the required {target_percent:g}%."

    # (present + x) / (total + x) >= target  =>  x >= (target*total - present) / (1 - target)
    target_rate = target_percent / 100.0
    needed_to_recover = 0
    if current_percent < target_percent:
        denominator = 1.0 - target_rate
        if denominator > 0:
            needed_to_recover = math.ceil(((total_days * target_rate) - present_days) / denominator)
        else:
            needed_to_recover = 999

    # present / (total + x) >= target  =>  x <= present/target - total
    buffer_available = 0
    if current_percent > target_percent and target_rate > 0:
        buffer_available = int(present_days / target_rate - total_days)

    if needed_to_recover > 0:
        action_plan = f"Attend the next {needed_to_recover} days without a break to reach {target_percent:g}%."
    elif buffer_available > 0:
        action_plan = f"Safe for now: up to {buffer_available} days can be missed while staying above {target_percent:g}%."
    else:
        action_plan = "Keep attending regularly to stay above the requirement."

    return {
        "current_percent": round(current_percent, 1),
        "status": status,
        "needed_to_recover": needed_to_recover,
        "buffer_available": buffer_available,
        "message": message,
        "action_plan": action_plan
    }


# =============================================================================
#   Pattern Analysis (records sorted oldest -> newest, each {date, status})
# =============================================================================

def calculate_risk_score(records):
    """
    0 (safe) .. 100 (critical).
    Overall % up to 40 pts, last-7-days % up to 35 pts, trailing ABSENT run up to 25 pts.
    """
    if not records:
        return 0

    pct = sum(1 for r in records if _is_present(r)) / len(records) * 100

    recent = records[-7:]
    recent_pct = sum(1 for r in recent if _is_present(r)) / len(recent) * 100

    consecutive = 0
    for record in reversed(records):
        if record.get('status') != 'ABSENT':
            break
        consecutive += 1

    score = 0
    if pct < 60:
        score += 40
    elif pct < 75:
        score += 28
    elif pct < 85:
        score += 12

    if recent_pct < 43:
        score += 35
    elif recent_pct < 57:
        score += 22
    elif recent_pct < 71:
        score += 10

    score += min(consecutive * 8, 25)
    return min(round(score), 100)


def risk_label(score):
    if score >= 70:
        return "Critical"
    if score >= 45:
        return "High"
    if score >= 20:
        return "Moderate"
    return "Safe"


def detect_trend(records):
    """Compare the attendance rate of the newer half against the older half."""
    if not records or len(records) < 4:
        return "insufficient"

    half = len(records) // 2
    first, last = records[:half], records[half:]
    diff = (sum(1 for r in last if _is_present(r)) / len(last)
            - sum(1 for r in first if _is_present(r)) / len(first))

    if diff > 0.12:
        return "improving"
    if diff < -0.12:
        return "declining"
    return "stable"


def get_day_pattern(records):
    """Absence rate per school day (Mon-Sat); Sundays and bad dates are skipped."""
    totals, absences = {}, {}
    for record in records or []:
        try:
            day = DAY_NAMES[datetime.strptime(record.get('date', ''), '%Y-%m-%d').weekday()]
        except (TypeError, ValueError):
            continue
        if day == "Sun":
            continue
        totals[day] = totals.get(day, 0) + 1
        if record.get('status') == 'ABSENT':
            absences[day] = absences.get(day, 0) + 1

    return [
        {
            'day': day,
            'total': totals.get(day, 0),
            'absent': absences.get(day, 0),
            'absenceRate': round(absences.get(day, 0) / totals[day] * 100) if totals.get(day) else 0,
        }
        for day in DAY_NAMES[:-1]
    ]


def get_streaks(records):
    """Current run of same-kind days (present vs not present) and the best run seen."""
    if not records:
        return {'current': 0, 'best': 0, 'currentType': 'present'}

    best = current = 0
    previous = None
    for record in records:
        present = _is_present(record)
        if previous is None or present == previous:
            current += 1
        else:
            best = max(best, current)
            current = 1
        previous = present

    best = max(best, current)
    return {
        'current': current,
        'best': best,
        'currentType': 'present' if _is_present(records[-1]) else 'absent',
    }


def analyze_student(roll_number, records, target_percent=75.0):
    """Full profile for one student from their {date, status} history."""
    ordered = sorted(records or [], key=lambda r: r.get('date', ''))

    total = len(ordered)
    present = sum(1 for r in ordered if _is_present(r))
    absent = sum(1 for r in ordered if r.get('status') == 'ABSENT')
    leave = sum(1 for r in ordered if r.get('status') == 'LEAVE')
    pct = (present / total * 100) if total else 0.0
    risk = calculate_risk_score(ordered)

    return {
        'rollNumber': roll_number,
        'total': total,
        'present': present,
        'absent': absent,
        'leave': leave,
        'percentage': round(pct, 1),
        'risk': risk,
        'riskLabel': risk_label(risk),
        'trend': detect_trend(ordered),
        'streaks': get_streaks(ordered),
        'dayPattern': get_day_pattern(ordered),
        'standing': calculate_status_and_improvement(present, total, target_percent),
        'belowThreshold': pct < target_percent,
    }
