from __future__ import annotations

import csv
import logging
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Cohort, CohortEpic, CohortStudent, StudentPayment
from utils.audit import log_event
from utils.payment_dates import parse_date
from utils.validation import (
    ValidationError,
    is_valid_email,
    is_valid_phone,
    is_valid_postal_code,
    normalize_phone,
)

logger = logging.getLogger(__name__)


def get_cohort(cohort_id: int) -> Cohort:
    cohort = db.session.get(Cohort, cohort_id)
    if cohort is None:
        raise LookupError("Cohort not found")
    return cohort


def _apply_cohort_fields(cohort: Cohort, data: Mapping[str, Any]) -> None:
    errors: Dict[str, str] = {}
    if "cohort_code" in data:
        cohort.cohort_code = (data.get("cohort_code") or "").strip()
    if "name" in data:
        cohort.name = (data.get("name") or "").strip()
    if "description" in data:
        cohort.description = data.get("description")
    try:
        if "start_date" in data:
            cohort.start_date = parse_date(data.get("start_date"))
        if "end_date" in data:
            cohort.end_date = parse_date(data.get("end_date"))
    except ValueError as exc:
        errors["dates"] = str(exc)
    for key in ("duration_months", "sessions_per_day", "max_students"):
        if key in data and data.get(key) not in (None, ""):
            try:
                value = int(data[key])
            except (TypeError, ValueError):
                errors[key] = f"{key} must be a whole number"
                continue
            if value < 1:
                errors[key] = f"{key} must be at least 1"
            setattr(cohort, key, value)

    if not cohort.cohort_code:
        errors["cohort_code"] = "Cohort code is required"
    if not cohort.name:
        errors["name"] = "Cohort name is required"
    if cohort.start_date is None and "dates" not in errors:
        errors["start_date"] = "Start date is required"
    if cohort.start_date and cohort.end_date and cohort.end_date < cohort.start_date:
        errors["end_date"] = "End date cannot be before the start date"
    if errors:
        raise ValidationError(errors)


def create_cohort(data: Mapping[str, Any]) -> Cohort:
    cohort = Cohort()
    _apply_cohort_fields(cohort, data)
    if Cohort.query.filter_by(cohort_code=cohort.cohort_code).first():
        raise ValidationError({"cohort_code": "Cohort code already exists"})
    db.session.add(cohort)
    db.session.flush()
    log_event("cohort_created", target=f"cohort:{cohort.id}", detail=cohort.cohort_code)
    db.session.commit()
    return cohort


def update_cohort(cohort_id: int, data: Mapping[str, Any]) -> Cohort:
    cohort = get_cohort(cohort_id)
    _apply_cohort_fields(cohort, data)
    clash = Cohort.query.filter(Cohort.cohort_code == cohort.cohort_code, Cohort.id != cohort.id).first()
    if clash:
        raise ValidationError({"cohort_code": "Cohort code already exists"})
    log_event("cohort_updated", target=f"cohort:{cohort.id}")
    db.session.commit()
    return cohort


def delete_cohort(cohort_id: int) -> None:
    cohort = get_cohort(cohort_id)
    if cohort.students:
        raise PermissionError("Cohort has students and cannot be deleted")
    db.session.delete(cohort)
    log_event("cohort_deleted", target=f"cohort:{cohort_id}", detail=cohort.cohort_code)
    db.session.commit()


def cohort_overview(cohort: Cohort) -> Dict[str, Any]:
    data = cohort.to_dict()
    active = sum(1 for s in cohort.students if s.is_active)
    data["student_count"] = len(cohort.students)
    data["active_student_count"] = active
    data["dropped_out_count"] = len(cohort.students) - active
    data["epics"] = [e.to_dict() for e in cohort.epics]
    return data


def list_cohorts() -> List[Dict[str, Any]]:
    return [cohort_overview(c) for c in Cohort.query.order_by(Cohort.start_date.desc()).all()]


# --------------------------
# Epics
# --------------------------

def add_epic(cohort_id: int, data: Mapping[str, Any]) -> CohortEpic:
    cohort = get_cohort(cohort_id)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError({"name": "Epic name is required"})
    position = data.get("position")
    if position in (None, ""):
        position = len(cohort.epics)
    epic = CohortEpic(
        cohort_id=cohort.id,
        name=name,
        description=data.get("description"),
        position=int(position),
        duration_months=data.get("duration_months"),
        is_active=not cohort.epics,
    )
    db.session.add(epic)
    log_event("epic_added", target=f"cohort:{cohort.id}", detail=name)
    db.session.commit()
    return epic


def set_active_epic(cohort_id: int, epic_id: int) -> CohortEpic:
    """Exactly one epic per cohort is active at a time."""
    cohort = get_cohort(cohort_id)
    target = None
    for epic in cohort.epics:
        epic.is_active = epic.id == epic_id
        if epic.is_active:
            target = epic
    if target is None:
        raise LookupError("Epic not found in this cohort")
    db.session.commit()
    return target


# --------------------------
# Students
# --------------------------

def _student_errors(data: Mapping[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not (data.get("first_name") or "").strip():
        errors["first_name"] = "First name is required"
    if not is_valid_email(data.get("email")):
        errors["email"] = "Enter a valid email address"
    if data.get("phone") and not is_valid_phone(data.get("phone")):
        errors["phone"] = "Enter a valid 10-digit mobile number"
    if data.get("postal_code") and not is_valid_postal_code(data.get("postal_code")):
        errors["postal_code"] = "Enter a valid 6-digit postal code"
    return errors


def add_student(cohort_id: int, data: Mapping[str, Any], commit: bool = True) -> CohortStudent:
    cohort = get_cohort(cohort_id)
    errors = _student_errors(data)
    if errors:
        raise ValidationError(errors)
    email = data["email"].strip().lower()
    if CohortStudent.query.filter_by(cohort_id=cohort.id, email=email).first():
        raise ValidationError({"email": "A student with this email already exists in the cohort"})
    if cohort.max_students and CohortStudent.query.filter_by(cohort_id=cohort.id).count() >= cohort.max_students:
        raise PermissionError("Cohort is full")
    student = CohortStudent(
        cohort_id=cohort.id,
        first_name=data["first_name"].strip(),
        last_name=(data.get("last_name") or "").strip() or None,
        email=email,
        phone=normalize_phone(data.get("phone")) or None,
        postal_code=(data.get("postal_code") or "").strip() or None,
    )
    db.session.add(student)
    db.session.flush()
    log_event("student_added", target=f"student:{student.id}", detail=email)
    if commit:
        db.session.commit()
    return student


def update_student(student_id: int, data: Mapping[str, Any]) -> CohortStudent:
    student = db.session.get(CohortStudent, student_id)
    if student is None:
        raise LookupError("Student not found")
    merged = {
        "first_name": data.get("first_name", student.first_name),
        "email": data.get("email", student.email),
        "phone": data.get("phone", student.phone),
        "postal_code": data.get("postal_code", student.postal_code),
    }
    errors = _student_errors(merged)
    if errors:
        raise ValidationError(errors)
    student.first_name = merged["first_name"].strip()
    if "last_name" in data:
        student.last_name = (data.get("last_name") or "").strip() or None
    student.email = merged["email"].strip().lower()
    student.phone = normalize_phone(merged["phone"]) or None
    student.postal_code = (merged["postal_code"] or "").strip() or None
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError({"email": "A student with this email already exists in the cohort"})
    return student


def list_students(cohort_id: int, status: Optional[str] = None, search: Optional[str] = None) -> List[CohortStudent]:
    get_cohort(cohort_id)
    query = CohortStudent.query.filter_by(cohort_id=cohort_id)
    if status in ("active", "dropped_out"):
        query = query.filter(CohortStudent.dropped_out_status == status)
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.filter(db.or_(
            db.func.lower(CohortStudent.first_name).like(like),
            db.func.lower(CohortStudent.last_name).like(like),
            db.func.lower(CohortStudent.email).like(like),
        ))
    return query.order_by(CohortStudent.first_name, CohortStudent.last_name).all()


def mark_dropped_out(student_id: int, reason: str, user_id: Optional[int] = None) -> CohortStudent:
    student = db.session.get(CohortStudent, student_id)
    if student is None:
        raise LookupError("Student not found")
    if not (reason or "").strip():
        raise ValidationError({"reason": "A reason is required to mark a student as dropped out"})
    if not student.is_active:
        raise ValueError("Student is already marked as dropped out")
    student.dropped_out_status = "dropped_out"
    student.dropped_out_reason = reason.strip()
    student.dropped_out_at = datetime.utcnow()
    student.dropped_out_by = user_id
    log_event("student_dropped_out", target=f"student:{student.id}", detail=reason.strip())
    db.session.commit()
    return student


def reactivate_student(student_id: int) -> CohortStudent:
    student = db.session.get(CohortStudent, student_id)
    if student is None:
        raise LookupError("Student not found")
    student.dropped_out_status = "active"
    student.dropped_out_reason = None
    student.dropped_out_at = None
    student.dropped_out_by = None
    log_event("student_reactivated", target=f"student:{student.id}")
    db.session.commit()
    return student


def student_profile(student: CohortStudent) -> Dict[str, Any]:
    data = student.to_dict()
    payment = StudentPayment.query.filter_by(student_id=student.id).first()
    data["payment"] = payment.to_dict() if payment else None
    return data


def bulk_upload_students(cohort_id: int, csv_text: str) -> Dict[str, Any]:
    """CSV columns: ``first_name,last_name,email,phone[,postal_code]``.

    Valid rows are inserted; invalid rows are reported with their errors.
    """
    get_cohort(cohort_id)
    results = []
    seen = set()
    for line_no, row in enumerate(csv.DictReader(StringIO(csv_text)), start=2):
        row = {k.strip(): (v or "").strip() for k, v in row.items() if k}
        email = row.get("email", "").lower()
        if email in seen:
            results.append({"row": line_no, "email": email, "ok": False, "error": "Duplicate email in file"})
            continue
        seen.add(email)
        try:
            student = add_student(cohort_id, row, commit=False)
            results.append({"row": line_no, "email": email, "ok": True, "student_id": student.id})
        except (ValidationError, PermissionError) as exc:
            results.append({"row": line_no, "email": email, "ok": False, "error": str(exc)})
    db.session.commit()
    return {
        "processed": len(results),
        "succeeded": sum(1 for r in results if r["ok"]),
        "failed": sum(1 for r in results if not r["ok"]),
        "rows": results,
    }
