import analytics


def days(*statuses, start=1):
    return [{"date": f"2024-01-{start + i:02d}", "status": s} for i, s in enumerate(statuses)]


def test_status_and_improvement_warning():
    result = analytics.calculate_status_and_improvement(6, 10)
    assert result["status"] == "Warning"
    assert result["current_percent"] == 60.0
    # (6 + x) / (10 + x) >= 0.75  ->  x = 6
    assert result["needed_to_recover"] == 6
    assert result["buffer_available"] == 0


def test_status_and_improvement_good_with_buffer():
    result = analytics.calculate_status_and_improvement(9, 10)
    assert result["status"] == "Good"
    # 9 / (10 + x) >= 0.75  ->  x <= 2
    assert result["buffer_available"] == 2
    assert "2 days" in result["action_plan"]


def test_status_and_improvement_critical_and_empty():
    assert analytics.calculate_status_and_improvement(1, 10)["status"] == "Critical"
    assert analytics.calculate_status_and_improvement(0, 0)["current_percent"] == 0.0


def test_risk_score_bounds():
    assert analytics.calculate_risk_score([]) == 0
    assert analytics.calculate_risk_score(days(*["IN"] * 10)) == 0
    # 0% overall (40) + 0% recent (35) + 10 trailing absences capped at 25
    assert analytics.calculate_risk_score(days(*["ABSENT"] * 10)) == 100


def test_risk_score_middle():
    # overall 70% -> 28, last 7 = 4/7 (57.1%) -> 10, one trailing absence -> 8
    records = days("IN", "IN", "IN", "IN", "IN", "ABSENT", "IN", "ABSENT", "IN", "ABSENT")
    assert analytics.calculate_risk_score(records) == 46
    assert analytics.risk_label(46) == "High"


def test_risk_labels():
    assert analytics.risk_label(0) == "Safe"
    assert analytics.risk_label(20) == "Moderate"
    assert analytics.risk_label(70) == "Critical"


def test_trend():
    assert analytics.detect_trend(days("IN", "IN", "ABSENT")) == "insufficient"
    assert analytics.detect_trend(days("ABSENT", "ABSENT", "IN", "IN")) == "improving"
    assert analytics.detect_trend(days("IN", "IN", "ABSENT", "ABSENT")) == "declining"
    assert analytics.detect_trend(days("IN", "ABSENT", "IN", "ABSENT")) == "stable"


def test_streaks():
    result = analytics.get_streaks(days("IN", "IN", "IN", "ABSENT", "LEAVE"))
    assert result == {"current": 2, "best": 3, "currentType": "absent"}
    assert analytics.get_streaks([]) == {"current": 0, "best": 0, "currentType": "present"}


def test_day_pattern_skips_sundays():
    # 2024-01-07 is a Sunday, 2024-01-08 a Monday
    records = [
        {"date": "2024-01-07", "status": "ABSENT"},
        {"date": "2024-01-08", "status": "ABSENT"},
        {"date": "2024-01-15", "status": "IN"},
        {"date": "not-a-date", "status": "ABSENT"},
    ]
    pattern = {d["day"]: d for d in analytics.get_day_pattern(records)}
    assert "Sun" not in pattern
    assert pattern["Mon"] == {"day": "Mon", "total": 2, "absent": 1, "absenceRate": 50}
    assert pattern["Tue"]["total"] == 0


def test_analyze_student_sorts_and_summarises():
    records = list(reversed(days("IN", "IN", "ABSENT", "LEAVE")))
    profile = analytics.analyze_student("R001", records)

    assert profile["rollNumber"] == "R001"
    assert (profile["total"], profile["present"], profile["absent"], profile["leave"]) == (4, 2, 1, 1)
    assert profile["percentage"] == 50.0
    assert profile["belowThreshold"] is True
    assert profile["streaks"]["currentType"] == "absent"
    assert profile["standing"]["status"] == "Critical"
