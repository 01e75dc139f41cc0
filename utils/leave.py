from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from extensions import db
from models import CohortEpic, CohortStudent, LeaveApplication
from utils.attendance import mark_attendance
from utils.audit import log_event
from utils.payment_dates import parse_date
from utils.validation import ValidationError

logger = logging.getLogger(__name__)

LEAVE_STATUSES = ("pending", "approved", "rejected")
MAX_LEAVE_DAYS = 60


def _get_application(application_id: int) -> LeaveApplication:
    application = db.session.get(LeaveApplication, application_id)
    if application is None:
        raise LookupError("Leave application not found")
    return application


def apply_for_leave(student_id: int, data: Mapping[str, Any]) -> LeaveApplication:
    student = db.session.get(CohortStudent, student_id)
    if student is None:
        raise LookupError("Student not found")
    if not student.is_active:
        raise PermissionError("Dropped-out students cannot apply for leave")

    errors: Dict[str, str] = {}
    start = parse_date(data.get("session_date"))
    end = parse_date(data.get("end_date")) if data.get("end_date") else None
    reason = (data.get("reason") or "").strip()
    if start is None:
        errors["session_date"] = "Leave date is required"
    if not reason:
        errors["reason"] = "Please give a reason for the leave"
    if start and end:
        if end < start:
            errors["end_date"] = "End date cannot be before the start date"
        elif (end - start).days + 1 > MAX_LEAVE_DAYS:
            errors["end_date"] = f"Leave cannot exceed {MAX_LEAVE_DAYS} days"
    if errors:
        raise ValidationError(errors)

    epic_id = data.get("epic_id")
    if epic_id is None:
        active = CohortEpic.query.filter_by(cohort_id=student.cohort_id, is_active=True).first()
        epic_id = active.id if active else None

    application = LeaveApplication(
        student_id=student.id,
        cohort_id=student.cohort_id,
        epic_id=epic_id,
        session_date=start,
        end_date=end if end and end != start else None,
        is_date_range=bool(end and end != start),
        session_number=int(data["session_number"]) if data.get("session_number") else None,
        reason=reason,
    )
    db.session.add(application)
    log_event("leave_applied", target=f"student:{student.id}", detail=f"{start} to {end or start}")
    db.session.commit()
    return application


def leave_dates(application: LeaveApplication):
    end = application.end_date if application.is_date_range and application.end_date else application.session_date
    day = application.session_date
    while day <= end:
        yield day
        day += timedelta(days=1)


def _mark_absent(application: LeaveApplication, user_id: Optional[int]) -> int:
    """Record an informed absence for every day of the leave; returns sessions marked."""
    if application.epic_id is None:
        logger.warning("Leave %s approved without an epic; attendance not marked", application.id)
        return 0
    sessions = [application.session_number] if application.session_number else None
    if sessions is None:
        cohort = application.student.cohort
        sessions = list(range(1, (cohort.sessions_per_day or 1) + 1))
    marked = 0
    for day in leave_dates(application):
        for number in sessions:
            try:
                mark_attendance(
                    application.cohort_id, application.epic_id, day, number, application.student_id,
                    "absent", absence_type="informed", reason=f"Leave approved: {application.reason}",
                    user_id=user_id, commit=False,
                )
                marked += 1
            except (ValueError, LookupError) as exc:
                logger.warning("Could not mark leave %s on %s session %s: %s", application.id, day, number, exc)
    return marked


def approve_leave(application_id: int, user_id: Optional[int] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    application = _get_application(application_id)
    if application.leave_status != "pending":
        raise ValueError("Only pending applications can be approved")
    application.leave_status = "approved"
    application.approved_by = user_id
    application.approved_at = datetime.utcnow()
    application.approval_notes = notes
    marked = _mark_absent(application, user_id)
    log_event("leave_approved", target=f"leave:{application.id}", detail=f"sessions_marked={marked}")
    db.session.commit()
    return {"application": application.to_dict(), "sessions_marked": marked}


def reject_leave(application_id: int, reason: str, user_id: Optional[int] = None) -> LeaveApplication:
    application = _get_application(application_id)
    if application.leave_status != "pending":
        raise ValueError("Only pending applications can be rejected")
    if not (reason or "").strip():
        raise ValidationError({"rejection_reason": "A rejection reason is required"})
    application.leave_status = "rejected"
    application.rejection_reason = reason.strip()
    application.approved_by = user_id
    application.approved_at = datetime.utcnow()
    log_event("leave_rejected", target=f"leave:{application.id}", detail=reason.strip())
    db.session.commit()
    return application


def delete_leave(application_id: int, student_id: Optional[int] = None) -> None:
    application = _get_application(application_id)
    if student_id is not None and application.student_id != student_id:
        raise LookupError("Leave application not found")
    if application.leave_status != "pending":
        raise PermissionError("Only pending applications can be deleted")
    db.session.delete(application)
    db.session.commit()


def list_leave(cohort_id: Optional[int] = None, student_id: Optional[int] = None,
               status: Optional[str] = None) -> List[LeaveApplication]:
    query = LeaveApplication.query
    if cohort_id is not None:
        query = query.filter_by(cohort_id=cohort_id)
    if student_id is not None:
        query = query.filter_by(student_id=student_id)
    if status:
        if status not in LEAVE_STATUSES:
            raise ValidationError({"status": "Unknown leave status"})
        query = query.filter_by(leave_status=status)
    return query.order_by(LeaveApplication.created_at.desc(), LeaveApplication.id.desc()).all()


def leave_stats(cohort_id: Optional[int] = None) -> Dict[str, int]:
    applications = list_leave(cohort_id=cohort_id)
    stats = {status: 0 for status in LEAVE_STATUSES}
    for application in applications:
        stats[application.leave_status] = stats.get(application.leave_status, 0) + 1
    stats["total"] = len(applications)
    return stats
