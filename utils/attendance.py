"""Attendance marking and statistics.

Present, late and exempted absences all count as attended. Statistics only
consider active (not dropped-out) students.
"""
from __future__ import annotations

import calendar
import csv
import logging
from collections import defaultdict
from datetime import date
from io import StringIO
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from extensions import db
from models import AttendanceRecord, CohortEpic, CohortStudent, Holiday
from utils.audit import log_event
from utils.cohorts import get_cohort
from utils.payment_dates import parse_date
from utils.validation import ValidationError

logger = logging.getLogger(__name__)

STATUSES = ("present", "late", "absent")
ABSENCE_TYPES = ("informed", "uninformed", "exempted")
POOR_ATTENDANCE_THRESHOLD = 60
MEDALS = ("🥇", "🥈", "🥉")


def _attr(record: Any, name: str):
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def is_attended(record: Any) -> bool:
    status = _attr(record, "status")
    return status in ("present", "late") or (status == "absent" and _attr(record, "absence_type") == "exempted")


def attendance_breakdown(records: Sequence[Any]) -> Dict[str, Any]:
    present = sum(1 for r in records if _attr(r, "status") == "present")
    late = sum(1 for r in records if _attr(r, "status") == "late")
    exempted = sum(1 for r in records if _attr(r, "status") == "absent" and _attr(r, "absence_type") == "exempted")
    absent = sum(1 for r in records if _attr(r, "status") == "absent" and _attr(r, "absence_type") != "exempted")
    attended = present + late + exempted
    total = len(records)
    return {
        "present": present,
        "late": late,
        "absent": absent,
        "exempted": exempted,
        "attended": attended,
        "total": total,
        "percentage": round(attended / total * 100, 2) if total else 0.0,
    }


def _chronological(records: Iterable[Any]) -> List[Any]:
    return sorted(records, key=lambda r: (str(_attr(r, "session_date")), _attr(r, "session_number") or 0))


def current_streak(records: Sequence[Any]) -> int:
    """Attended sessions counted back from the most recent one."""
    streak = 0
    for record in reversed(_chronological(records)):
        if not is_attended(record):
            break
        streak += 1
    return streak


def longest_streak(records: Sequence[Any]) -> int:
    best = run = 0
    for record in _chronological(records):
        run = run + 1 if is_attended(record) else 0
        best = max(best, run)
    return best


def epic_status(percentage: float) -> Dict[str, str]:
    if percentage >= 90:
        return {"text": "Excellent", "variant": "success"}
    if percentage >= 75:
        return {"text": "Good", "variant": "info"}
    if percentage >= 60:
        return {"text": "Fair", "variant": "warning"}
    return {"text": "Needs Attention", "variant": "error"}


def rank_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort by percentage then streak (both descending); ties share a rank.

    Ranks are dense (1, 1, 2, ...) and the top three ranks get a medal.
    """
    entries.sort(key=lambda e: (-e["attendance_percentage"], -e["current_streak"]))
    rank = 0
    previous = None
    for entry in entries:
        key = (entry["attendance_percentage"], entry["current_streak"])
        if key != previous:
            rank += 1
            previous = key
        entry["rank"] = rank
        entry["badge"] = MEDALS[rank - 1] if rank <= len(MEDALS) else None
    return entries


# --------------------------
# Queries
# --------------------------

def _get_epic(cohort_id: int, epic_id: int) -> CohortEpic:
    epic = db.session.get(CohortEpic, epic_id)
    if epic is None or epic.cohort_id != cohort_id:
        raise LookupError("Epic not found in this cohort")
    return epic


def _active_students(cohort_id: int) -> List[CohortStudent]:
    return (
        CohortStudent.query.filter_by(cohort_id=cohort_id, dropped_out_status="active")
        .order_by(CohortStudent.first_name, CohortStudent.last_name)
        .all()
    )


def _records(cohort_id: int, epic_id: int, date_from=None, date_to=None, student_ids=None) -> List[AttendanceRecord]:
    query = AttendanceRecord.query.filter_by(cohort_id=cohort_id, epic_id=epic_id)
    if date_from:
        query = query.filter(AttendanceRecord.session_date >= parse_date(date_from))
    if date_to:
        query = query.filter(AttendanceRecord.session_date <= parse_date(date_to))
    if student_ids is not None:
        query = query.filter(AttendanceRecord.student_id.in_(list(student_ids)))
    return query.all()


def mark_attendance(cohort_id: int, epic_id: int, session_date, session_number: int, student_id: int,
                    status: str, absence_type: Optional[str] = None, reason: Optional[str] = None,
                    user_id: Optional[int] = None, commit: bool = True) -> AttendanceRecord:
    """Insert or update the record for one student in one session."""
    if status not in STATUSES:
        raise ValidationError({"status": f"Status must be one of {', '.join(STATUSES)}"})
    if status == "absent":
        absence_type = absence_type or "uninformed"
        if absence_type not in ABSENCE_TYPES:
            raise ValidationError({"absence_type": f"Absence type must be one of {', '.join(ABSENCE_TYPES)}"})
    else:
        absence_type = None
    session_day = parse_date(session_date)
    if session_day is None:
        raise ValidationError({"session_date": "Session date is required"})
    cohort = get_cohort(cohort_id)
    _get_epic(cohort_id, epic_id)
    session_number = int(session_number or 1)
    if not 1 <= session_number <= max(cohort.sessions_per_day or 1, 1):
        raise ValidationError({"session_number": "Session number is outside the cohort's sessions per day"})
    student = db.session.get(CohortStudent, student_id)
    if student is None or student.cohort_id != cohort_id:
        raise LookupError("Student not found in this cohort")

    record = AttendanceRecord.query.filter_by(
        student_id=student_id, epic_id=epic_id, session_date=session_day, session_number=session_number
    ).first()
    if record is None:
        record = AttendanceRecord(
            cohort_id=cohort_id,
            epic_id=epic_id,
            student_id=student_id,
            session_date=session_day,
            session_number=session_number,
        )
        db.session.add(record)
    record.status = status
    record.absence_type = absence_type
    record.reason = reason
    record.marked_by = user_id
    if commit:
        db.session.commit()
    return record


def bulk_mark_attendance(cohort_id: int, epic_id: int, session_date, session_number: int,
                         entries: Sequence[Mapping[str, Any]], user_id: Optional[int] = None) -> Dict[str, Any]:
    """Mark a whole session at once; all-or-nothing."""
    saved = []
    for entry in entries:
        saved.append(mark_attendance(
            cohort_id, epic_id, session_date, session_number,
            int(entry["student_id"]), entry.get("status"),
            absence_type=entry.get("absence_type"), reason=entry.get("reason"),
            user_id=user_id, commit=False,
        ))
    log_event("attendance_marked", target=f"epic:{epic_id}",
              detail=f"date={session_date} session={session_number} count={len(saved)}")
    db.session.commit()
    return {"marked": len(saved), "records": [r.to_dict() for r in saved]}


def session_stats(cohort_id: int, epic_id: int, session_date, session_number: int) -> Dict[str, Any]:
    _get_epic(cohort_id, epic_id)
    day = parse_date(session_date)
    if day is None:
        raise ValidationError({"session_date": "Session date is required"})
    records = AttendanceRecord.query.filter_by(
        cohort_id=cohort_id, epic_id=epic_id, session_date=day, session_number=int(session_number)
    ).all()
    total_students = len(_active_students(cohort_id))
    breakdown = attendance_breakdown(records)
    return {
        "session_number": int(session_number),
        "session_date": day.isoformat(),
        "total_students": total_students,
        "present_count": breakdown["present"],
        "late_count": breakdown["late"],
        "absent_count": breakdown["absent"],
        "exempted_count": breakdown["exempted"],
        "attended_count": breakdown["attended"],
        "attendance_percentage": breakdown["percentage"],
        "is_cancelled": total_students > 0 and not records,
        "breakdown": breakdown,
    }


def student_entries(cohort_id: int, epic_id: int, date_from=None, date_to=None) -> List[Dict[str, Any]]:
    students = _active_students(cohort_id)
    by_student: Dict[int, List[AttendanceRecord]] = defaultdict(list)
    for record in _records(cohort_id, epic_id, date_from, date_to, [s.id for s in students]):
        by_student[record.student_id].append(record)
    entries = []
    for student in students:
        records = by_student.get(student.id, [])
        breakdown = attendance_breakdown(records)
        entries.append({
            "student": {
                "id": student.id,
                "first_name": student.first_name,
                "last_name": student.last_name,
                "email": student.email,
            },
            "attendance_percentage": breakdown["percentage"],
            "current_streak": current_streak(records),
            "longest_streak": longest_streak(records),
            "total_sessions": breakdown["total"],
            "present_sessions": breakdown["attended"],
            "late_sessions": breakdown["late"],
            "absent_sessions": breakdown["absent"],
            "exempted_sessions": breakdown["exempted"],
        })
    return rank_entries(entries)


def _top_streak(entries: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    if not entries:
        return {"value": 0, "student_names": []}
    best = max(e["current_streak"] for e in entries)
    names = [
        f"{e['student']['first_name']} {e['student']['last_name'] or ''}".strip()
        for e in entries if e["current_streak"] == best
    ]
    return {"value": best, "student_names": names if best > 0 else []}


def epic_stats(cohort_id: int, epic_id: int, date_from=None, date_to=None) -> Dict[str, Any]:
    _get_epic(cohort_id, epic_id)
    students = _active_students(cohort_id)
    records = _records(cohort_id, epic_id, date_from, date_to, [s.id for s in students])
    breakdown = attendance_breakdown(records)
    sessions = {(r.session_date, r.session_number) for r in records}
    entries = student_entries(cohort_id, epic_id, date_from, date_to)
    uninformed = sum(1 for r in records if r.status == "absent" and r.absence_type == "uninformed")
    return {
        "total_students": len(students),
        "total_sessions": len(sessions),
        "attendance_breakdown": dict(breakdown, expected=len(sessions) * len(students)),
        "absence_breakdown": {"uninformed": uninformed},
        "top_streak": _top_streak(entries),
        "epic_status": epic_status(breakdown["percentage"]),
        "students_with_perfect_attendance": sum(
            1 for e in entries if e["total_sessions"] and e["attendance_percentage"] == 100
        ),
        "students_with_poor_attendance": sum(
            1 for e in entries if e["total_sessions"] and e["attendance_percentage"] < POOR_ATTENDANCE_THRESHOLD
        ),
        "date_range": {
            "from": parse_date(date_from).isoformat() if date_from else None,
            "to": parse_date(date_to).isoformat() if date_to else None,
        },
    }


def student_stats(cohort_id: int, epic_id: int, student_id: int, date_from=None, date_to=None) -> Dict[str, Any]:
    student = db.session.get(CohortStudent, student_id)
    if student is None or student.cohort_id != cohort_id:
        raise LookupError("Student not found in this cohort")
    epic = _get_epic(cohort_id, epic_id)
    entries = student_entries(cohort_id, epic_id, date_from, date_to)
    entry = next((e for e in entries if e["student"]["id"] == student_id), None)
    if entry is None:
        # Dropped-out students keep their history but are not ranked
        records = _records(cohort_id, epic_id, date_from, date_to, [student_id])
        breakdown = attendance_breakdown(records)
        entry = {
            "student": {"id": student.id, "first_name": student.first_name,
                        "last_name": student.last_name, "email": student.email},
            "attendance_percentage": breakdown["percentage"],
            "current_streak": current_streak(records),
            "longest_streak": longest_streak(records),
            "total_sessions": breakdown["total"],
            "present_sessions": breakdown["attended"],
            "late_sessions": breakdown["late"],
            "absent_sessions": breakdown["absent"],
            "exempted_sessions": breakdown["exempted"],
            "rank": 0,
            "badge": None,
        }
    return dict(entry, rank_out_of=len(entries), epic={"id": epic.id, "name": epic.name})


def student_streaks(cohort_id: int, epic_id: int) -> Dict[str, Any]:
    entries = student_entries(cohort_id, epic_id)
    streaks = [
        {"student": e["student"], "current_streak": e["current_streak"], "longest_streak": e["longest_streak"]}
        for e in entries
    ]
    average = round(sum(s["current_streak"] for s in streaks) / len(streaks), 2) if streaks else 0.0
    return {"streaks": streaks, "top_streak": _top_streak(entries), "average_streak": average}


def leaderboard(cohort_id: int, epic_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    epic = _get_epic(cohort_id, epic_id)
    entries = student_entries(cohort_id, epic_id)
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    return {
        "entries": entries[offset:offset + limit],
        "total_students": len(entries),
        "epic": {"id": epic.id, "name": epic.name},
    }


def holidays_between(cohort_id: Optional[int], start: date, end: date) -> List[Holiday]:
    """Published holidays in range: global ones plus those for the cohort."""
    query = Holiday.query.filter(
        Holiday.status == "published", Holiday.date >= start, Holiday.date <= end
    )
    if cohort_id is None:
        query = query.filter(Holiday.holiday_type == "global")
    else:
        query = query.filter(db.or_(
            Holiday.holiday_type == "global",
            db.and_(Holiday.holiday_type == "cohort_specific", Holiday.cohort_id == cohort_id),
        ))
    return query.order_by(Holiday.date).all()


def calendar_month(cohort_id: int, epic_id: int, month: str) -> Dict[str, Any]:
    """Per-day session statistics for ``YYYY-MM`` plus published holidays."""
    _get_epic(cohort_id, epic_id)
    try:
        year, month_num = (int(part) for part in month.split("-"))
        first = date(year, month_num, 1)
    except (ValueError, AttributeError):
        raise ValidationError({"month": "Month must look like YYYY-MM"})
    last = date(year, month_num, calendar.monthrange(year, month_num)[1])
    total_students = len(_active_students(cohort_id))

    by_day: Dict[date, Dict[int, List[AttendanceRecord]]] = defaultdict(lambda: defaultdict(list))
    for record in _records(cohort_id, epic_id, first, last):
        by_day[record.session_date][record.session_number].append(record)
    holidays: Dict[date, List[Dict[str, Any]]] = defaultdict(list)
    for holiday in holidays_between(cohort_id, first, last):
        holidays[holiday.date].append(holiday.to_dict())

    days = []
    for day_num in range(1, last.day + 1):
        day = date(year, month_num, day_num)
        sessions = []
        day_records: List[AttendanceRecord] = []
        for number in sorted(by_day.get(day, {})):
            records = by_day[day][number]
            day_records.extend(records)
            breakdown = attendance_breakdown(records)
            sessions.append({
                "session_number": number,
                "total_students": total_students,
                "attendance_percentage": breakdown["percentage"],
                "breakdown": breakdown,
            })
        days.append({
            "date": day.isoformat(),
            "sessions": sessions,
            "total_sessions": len(sessions),
            "overall_attendance": attendance_breakdown(day_records)["percentage"],
            "is_holiday": day in holidays,
            "holidays": holidays.get(day, []),
        })

    active_days = [d for d in days if d["total_sessions"]]
    average = round(sum(d["overall_attendance"] for d in active_days) / len(active_days), 2) if active_days else 0.0
    return {
        "month": f"{year:04d}-{month_num:02d}",
        "days": days,
        "monthly_stats": {
            "days_with_attendance": len(active_days),
            "total_sessions": sum(d["total_sessions"] for d in days),
            "average_attendance": average,
        },
    }


def create_holiday(data: Mapping[str, Any]) -> Holiday:
    title = (data.get("title") or "").strip()
    day = parse_date(data.get("date"))
    holiday_type = data.get("holiday_type") or "global"
    errors = {}
    if not title:
        errors["title"] = "Title is required"
    if day is None:
        errors["date"] = "Date is required"
    if holiday_type not in ("global", "cohort_specific"):
        errors["holiday_type"] = "Holiday type must be global or cohort_specific"
    if holiday_type == "cohort_specific" and not data.get("cohort_id"):
        errors["cohort_id"] = "A cohort is required for cohort-specific holidays"
    if errors:
        raise ValidationError(errors)
    holiday = Holiday(
        title=title,
        date=day,
        description=data.get("description"),
        holiday_type=holiday_type,
        cohort_id=data.get("cohort_id") if holiday_type == "cohort_specific" else None,
        status="published" if data.get("publish") else "draft",
    )
    db.session.add(holiday)
    log_event("holiday_created", target=f"holiday:{day}", detail=title)
    db.session.commit()
    return holiday


def list_holidays(cohort_id: Optional[int] = None, status: Optional[str] = None) -> List[Holiday]:
    query = Holiday.query
    if cohort_id is not None:
        query = query.filter(db.or_(Holiday.holiday_type == "global", Holiday.cohort_id == cohort_id))
    if status:
        query = query.filter(Holiday.status == status)
    return query.order_by(Holiday.date).all()


def publish_holiday(holiday_id: int) -> Holiday:
    holiday = db.session.get(Holiday, holiday_id)
    if holiday is None:
        raise LookupError("Holiday not found")
    holiday.status = "published"
    db.session.commit()
    return holiday


def export_attendance_csv(cohort_id: int, epic_id: int, date_from=None, date_to=None) -> str:
    _get_epic(cohort_id, epic_id)
    students = {s.id: s for s in CohortStudent.query.filter_by(cohort_id=cohort_id).all()}
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow(["session_date", "session_number", "student_name", "email", "status", "absence_type", "reason"])
    for record in _chronological(_records(cohort_id, epic_id, date_from, date_to)):
        student = students.get(record.student_id)
        writer.writerow([
            record.session_date.isoformat(),
            record.session_number,
            student.full_name if student else "",
            student.email if student else "",
            record.status,
            record.absence_type or "",
            record.reason or "",
        ])
    return buf.getvalue()
