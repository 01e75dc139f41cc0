"""Equipment inventory and lending.

Lifecycle: ``available`` -> (issue) ``borrowed`` -> (return) ``available``, or
``maintenance`` when returned damaged. Items can also be marked lost, retired or
decommissioned; those are excluded from overdue tracking.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from extensions import db
from models import (
    CohortStudent,
    DamageReport,
    Equipment,
    EquipmentBorrowing,
    EquipmentCategory,
    EquipmentLocation,
    EquipmentReturn,
    StudentBlacklist,
)
from utils.audit import log_event
from utils.fee_math import money
from utils.payment_dates import parse_date
from utils.validation import ValidationError

logger = logging.getLogger(__name__)

CONDITIONS = ("excellent", "good", "poor", "damaged", "under_repair", "decommissioned")
RETURN_CONDITIONS = ("excellent", "good", "poor", "damaged")
AVAILABILITY = ("available", "borrowed", "maintenance", "retired", "lost", "decommissioned")
BORROWING_STATUSES = ("active", "returned", "overdue", "cancelled")
DAMAGE_STATUSES = (
    "reported",
    "under_review",
    "repair_approved",
    "repair_completed",
    "replacement_approved",
    "resolved",
)
DAMAGE_TRANSITIONS = {
    "reported": ("under_review", "resolved"),
    "under_review": ("repair_approved", "replacement_approved", "resolved"),
    "repair_approved": ("repair_completed",),
    "replacement_approved": ("resolved",),
    "repair_completed": ("resolved",),
    "resolved": (),
}
MAX_NOTES_LENGTH = 1000
INACTIVE_AVAILABILITY = ("retired", "decommissioned")


def _get(model, object_id: int, label: str):
    obj = db.session.get(model, object_id)
    if obj is None:
        raise LookupError(f"{label} not found")
    return obj


def active_borrowing(equipment_id: int) -> Optional[EquipmentBorrowing]:
    return EquipmentBorrowing.query.filter(
        EquipmentBorrowing.equipment_id == equipment_id,
        EquipmentBorrowing.status.in_(("active", "overdue")),
    ).first()


# --------------------------
# Catalogue
# --------------------------

def create_category(name: str, description: Optional[str] = None) -> EquipmentCategory:
    name = (name or "").strip()
    if not name:
        raise ValidationError({"name": "Category name is required"})
    if EquipmentCategory.query.filter_by(name=name).first():
        raise ValidationError({"name": "Category already exists"})
    category = EquipmentCategory(name=name, description=description)
    db.session.add(category)
    db.session.commit()
    return category


def create_location(name: str, description: Optional[str] = None) -> EquipmentLocation:
    name = (name or "").strip()
    if not name:
        raise ValidationError({"name": "Location name is required"})
    if EquipmentLocation.query.filter_by(name=name).first():
        raise ValidationError({"name": "Location already exists"})
    location = EquipmentLocation(name=name, description=description)
    db.session.add(location)
    db.session.commit()
    return location


def _apply_equipment_fields(item: Equipment, data: Mapping[str, Any]) -> None:
    errors: Dict[str, str] = {}
    if "name" in data:
        item.name = (data.get("name") or "").strip()
    if not item.name:
        errors["name"] = "Equipment name is required"
    if "serial_number" in data:
        item.serial_number = (data.get("serial_number") or "").strip() or None
        if item.serial_number:
            clash = Equipment.query.filter(Equipment.serial_number == item.serial_number)
            if item.id is not None:
                clash = clash.filter(Equipment.id != item.id)
            if clash.first():
                errors["serial_number"] = "Serial number already exists"
    for key, model, label in (("category_id", EquipmentCategory, "Category"),
                              ("location_id", EquipmentLocation, "Location")):
        if data.get(key) not in (None, ""):
            if db.session.get(model, int(data[key])) is None:
                errors[key] = f"{label} not found"
            else:
                setattr(item, key, int(data[key]))
    if "condition_status" in data:
        if data["condition_status"] not in CONDITIONS:
            errors["condition_status"] = "Unknown condition"
        else:
            item.condition_status = data["condition_status"]
    if "purchase_date" in data:
        item.purchase_date = parse_date(data.get("purchase_date"))
    if "purchase_cost" in data:
        cost = money(data.get("purchase_cost"))
        if cost < 0:
            errors["purchase_cost"] = "Purchase cost cannot be negative"
        item.purchase_cost = cost
    for key in ("description", "condition_notes"):
        if key in data:
            setattr(item, key, data.get(key))
    if errors:
        raise ValidationError(errors)


def create_equipment(data: Mapping[str, Any]) -> Equipment:
    item = Equipment(availability_status="available", condition_status="good")
    _apply_equipment_fields(item, data)
    db.session.add(item)
    db.session.flush()
    log_event("equipment_created", target=f"equipment:{item.id}", detail=item.name)
    db.session.commit()
    return item


def update_equipment(equipment_id: int, data: Mapping[str, Any]) -> Equipment:
    item = _get(Equipment, equipment_id, "Equipment")
    _apply_equipment_fields(item, data)
    db.session.commit()
    return item


def list_equipment(availability: Optional[str] = None, category_id: Optional[int] = None,
                   search: Optional[str] = None) -> List[Equipment]:
    query = Equipment.query
    if availability:
        query = query.filter(Equipment.availability_status == availability)
    if category_id:
        query = query.filter(Equipment.category_id == category_id)
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.filter(db.or_(
            db.func.lower(Equipment.name).like(like),
            db.func.lower(Equipment.serial_number).like(like),
        ))
    return query.order_by(Equipment.name).all()


def set_availability(equipment_id: int, availability: str, notes: Optional[str] = None) -> Equipment:
    """Mark an item lost, in maintenance, retired, decommissioned or back to available."""
    if availability not in AVAILABILITY or availability == "borrowed":
        raise ValidationError({"availability_status": "Use issue/return to change borrowed state"})
    item = _get(Equipment, equipment_id, "Equipment")
    if active_borrowing(item.id) is not None and availability != "lost":
        raise PermissionError("Equipment is currently borrowed")
    item.availability_status = availability
    if availability == "decommissioned":
        item.condition_status = "decommissioned"
    if notes:
        item.condition_notes = notes
    log_event(f"equipment_marked_{availability}", target=f"equipment:{item.id}", detail=notes)
    db.session.commit()
    return item


def inventory_stats() -> Dict[str, Any]:
    counts = {status: 0 for status in AVAILABILITY}
    rows = db.session.query(Equipment.availability_status, db.func.count(Equipment.id)).group_by(
        Equipment.availability_status
    ).all()
    for status, count in rows:
        counts[status] = count
    counts["total"] = sum(count for _, count in rows)
    counts["overdue_borrowings"] = len(overdue_borrowings())
    return counts


# --------------------------
# Blacklist
# --------------------------

def active_blacklist_entry(student_id: int, now: Optional[datetime] = None) -> Optional[StudentBlacklist]:
    now = now or datetime.utcnow()
    entries = StudentBlacklist.query.filter_by(student_id=student_id, is_active=True).all()
    for entry in entries:
        if entry.expires_at is None or entry.expires_at > now:
            return entry
    return None


def blacklist_student(student_id: int, reason: str, expires_at=None, user_id: Optional[int] = None) -> StudentBlacklist:
    _get(CohortStudent, student_id, "Student")
    if not (reason or "").strip():
        raise ValidationError({"reason": "A reason is required"})
    if active_blacklist_entry(student_id):
        raise ValueError("Student is already blacklisted")
    expiry = None
    if expires_at:
        expiry_day = parse_date(expires_at)
        expiry = datetime.combine(expiry_day, datetime.min.time())
    entry = StudentBlacklist(student_id=student_id, reason=reason.strip(), expires_at=expiry,
                             blacklisted_by=user_id)
    db.session.add(entry)
    log_event("student_blacklisted", target=f"student:{student_id}", detail=reason.strip())
    db.session.commit()
    return entry


def remove_from_blacklist(student_id: int) -> int:
    entries = StudentBlacklist.query.filter_by(student_id=student_id, is_active=True).all()
    if not entries:
        raise LookupError("Student is not blacklisted")
    for entry in entries:
        entry.is_active = False
    log_event("student_unblacklisted", target=f"student:{student_id}")
    db.session.commit()
    return len(entries)


def list_blacklist() -> List[StudentBlacklist]:
    now = datetime.utcnow()
    return [
        entry for entry in StudentBlacklist.query.filter_by(is_active=True).order_by(StudentBlacklist.blacklisted_at.desc())
        if entry.expires_at is None or entry.expires_at > now
    ]


# --------------------------
# Borrowing
# --------------------------

def issue_equipment(student_id: int, equipment_ids: Sequence[int], expected_return_date, reason: Optional[str] = None,
                    notes: Optional[str] = None, user_id: Optional[int] = None,
                    today: Optional[date] = None) -> List[EquipmentBorrowing]:
    """Lend one or more available items to a student; one borrowing row per item."""
    today = today or date.today()
    student = _get(CohortStudent, student_id, "Student")
    if not student.is_active:
        raise PermissionError("Cannot issue equipment to a dropped-out student")
    entry = active_blacklist_entry(student.id)
    if entry is not None:
        raise PermissionError(f"Student is blacklisted: {entry.reason}")
    if not equipment_ids:
        raise ValidationError({"equipment_ids": "Select at least one item"})
    expected = parse_date(expected_return_date)
    if expected is None or expected <= today:
        raise ValidationError({"expected_return_date": "Expected return date must be in the future"})
    if notes and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError({"notes": f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"})

    items = []
    for equipment_id in dict.fromkeys(int(i) for i in equipment_ids):
        item = _get(Equipment, equipment_id, "Equipment")
        if item.availability_status != "available":
            raise ValueError(f"{item.name} is not available ({item.availability_status})")
        if active_borrowing(item.id) is not None:
            raise ValueError(f"{item.name} is already on loan")
        items.append(item)

    borrowings = []
    for item in items:
        borrowing = EquipmentBorrowing(
            equipment_id=item.id,
            student_id=student.id,
            expected_return_date=expected,
            status="active",
            reason=reason,
            notes=notes,
            issue_condition=item.condition_status,
            issued_by=user_id,
        )
        item.availability_status = "borrowed"
        db.session.add(borrowing)
        borrowings.append(borrowing)
    log_event("equipment_issued", target=f"student:{student.id}",
              detail=f"items={','.join(str(i.id) for i in items)} due={expected}")
    db.session.commit()
    return borrowings


def overdue_days(expected: date, returned: datetime) -> int:
    """Whole days late, rounding any part-day up; never negative."""
    expected_start = datetime.combine(expected, datetime.min.time())
    return max(0, math.ceil((returned - expected_start).total_seconds() / 86400))


def return_equipment(borrowing_id: int, condition: str, notes: Optional[str] = None,
                     location_id: Optional[int] = None, user_id: Optional[int] = None,
                     returned_at: Optional[datetime] = None) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    if condition not in RETURN_CONDITIONS:
        errors["condition"] = f"Condition must be one of {', '.join(RETURN_CONDITIONS)}"
    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors["notes"] = f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"
    if errors:
        raise ValidationError(errors)
    borrowing = _get(EquipmentBorrowing, borrowing_id, "Borrowing")
    if borrowing.status == "returned":
        raise ValueError("Equipment has already been returned")
    if borrowing.status not in ("active", "overdue"):
        raise ValueError(f"Borrowing is {borrowing.status}")
    if location_id is not None:
        _get(EquipmentLocation, location_id, "Location")

    returned_at = returned_at or datetime.utcnow()
    late_days = overdue_days(borrowing.expected_return_date, returned_at)
    record = EquipmentReturn(
        borrowing_id=borrowing.id,
        return_date=returned_at,
        condition=condition,
        notes=notes,
        overdue_days=late_days,
        processed_by=user_id,
    )
    db.session.add(record)
    borrowing.status = "returned"
    borrowing.actual_return_date = returned_at

    item = borrowing.equipment
    # Retired and decommissioned items stay out of circulation
    if item.availability_status not in INACTIVE_AVAILABILITY:
        item.condition_status = condition
        item.availability_status = "maintenance" if condition == "damaged" else "available"
    if location_id is not None:
        item.location_id = location_id

    warnings = []
    if late_days > 0:
        warnings.append(f"Equipment was returned {late_days} day(s) late")
    damage = None
    if condition == "damaged":
        damage = DamageReport(
            equipment_id=item.id,
            borrowing_id=borrowing.id,
            student_id=borrowing.student_id,
            description=notes or "Returned damaged",
            reported_by=user_id,
        )
        db.session.add(damage)
        warnings.append("Equipment was returned damaged; a damage report was opened")

    log_event("equipment_returned", target=f"equipment:{item.id}",
              detail=f"borrowing={borrowing.id} condition={condition} overdue_days={late_days}")
    db.session.commit()
    return {
        "return": record.to_dict(),
        "borrowing": borrowing.to_dict(),
        "equipment": item.to_dict(),
        "damage_report": damage.to_dict() if damage is not None else None,
        "warnings": warnings,
    }


def extend_borrowing(borrowing_id: int, new_return_date, reason: Optional[str] = None,
                     user_id: Optional[int] = None) -> EquipmentBorrowing:
    borrowing = _get(EquipmentBorrowing, borrowing_id, "Borrowing")
    if borrowing.status not in ("active", "overdue"):
        raise ValueError("Only active borrowings can be extended")
    new_date = parse_date(new_return_date)
    if new_date is None or new_date <= borrowing.expected_return_date or new_date <= date.today():
        raise ValidationError({"expected_return_date": "New return date must be later than the current one"})
    previous = borrowing.expected_return_date
    borrowing.expected_return_date = new_date
    borrowing.status = "active"
    if reason:
        borrowing.notes = f"{borrowing.notes or ''}\nExtended: {reason}".strip()
    log_event("borrowing_extended", target=f"borrowing:{borrowing.id}", detail=f"{previous} -> {new_date}")
    db.session.commit()
    return borrowing


def cancel_borrowing(borrowing_id: int, user_id: Optional[int] = None) -> EquipmentBorrowing:
    borrowing = _get(EquipmentBorrowing, borrowing_id, "Borrowing")
    if borrowing.status != "active":
        raise ValueError("Only active borrowings can be cancelled")
    borrowing.status = "cancelled"
    borrowing.equipment.availability_status = "available"
    log_event("borrowing_cancelled", target=f"borrowing:{borrowing.id}")
    db.session.commit()
    return borrowing


def overdue_borrowings(today: Optional[date] = None) -> List[EquipmentBorrowing]:
    today = today or date.today()
    return (
        EquipmentBorrowing.query.join(Equipment)
        .filter(
            EquipmentBorrowing.status.in_(("active", "overdue")),
            EquipmentBorrowing.expected_return_date < today,
            Equipment.availability_status.notin_(INACTIVE_AVAILABILITY),
        )
        .order_by(EquipmentBorrowing.expected_return_date)
        .all()
    )


def flag_overdue_borrowings(today: Optional[date] = None) -> int:
    flagged = 0
    for borrowing in overdue_borrowings(today):
        if borrowing.status == "active":
            borrowing.status = "overdue"
            flagged += 1
    db.session.commit()
    return flagged


def student_history(student_id: int) -> List[Dict[str, Any]]:
    _get(CohortStudent, student_id, "Student")
    rows = []
    borrowings = EquipmentBorrowing.query.filter_by(student_id=student_id).order_by(
        EquipmentBorrowing.borrowed_at.desc()
    ).all()
    for borrowing in borrowings:
        data = borrowing.to_dict()
        data["equipment_name"] = borrowing.equipment.name if borrowing.equipment else None
        ret = EquipmentReturn.query.filter_by(borrowing_id=borrowing.id).first()
        data["return"] = ret.to_dict() if ret else None
        rows.append(data)
    return rows


def return_statistics() -> Dict[str, Any]:
    returns = EquipmentReturn.query.all()
    late = [r for r in returns if r.overdue_days > 0]
    by_condition = {c: 0 for c in RETURN_CONDITIONS}
    for r in returns:
        by_condition[r.condition] = by_condition.get(r.condition, 0) + 1
    return {
        "total_returns": len(returns),
        "overdue_returns": len(late),
        "on_time_returns": len(returns) - len(late),
        "average_overdue_days": round(sum(r.overdue_days for r in late) / len(late), 2) if late else 0.0,
        "by_condition": by_condition,
    }


# --------------------------
# Damage reports
# --------------------------

def report_damage(equipment_id: int, description: str, damage_type: str = "physical", estimated_cost=None,
                  borrowing_id: Optional[int] = None, user_id: Optional[int] = None) -> DamageReport:
    item = _get(Equipment, equipment_id, "Equipment")
    if not (description or "").strip():
        raise ValidationError({"description": "Describe the damage"})
    student_id = None
    if borrowing_id is not None:
        borrowing = _get(EquipmentBorrowing, borrowing_id, "Borrowing")
        student_id = borrowing.student_id
    report = DamageReport(
        equipment_id=item.id,
        borrowing_id=borrowing_id,
        student_id=student_id,
        damage_type=damage_type or "physical",
        description=description.strip(),
        estimated_cost=money(estimated_cost) if estimated_cost not in (None, "") else None,
        reported_by=user_id,
    )
    item.condition_status = "damaged"
    if item.availability_status == "available":
        item.availability_status = "maintenance"
    db.session.add(report)
    log_event("damage_reported", target=f"equipment:{item.id}", detail=report.description)
    db.session.commit()
    return report


def update_damage_status(report_id: int, status: str, notes: Optional[str] = None) -> DamageReport:
    report = _get(DamageReport, report_id, "Damage report")
    if status not in DAMAGE_STATUSES:
        raise ValidationError({"status": "Unknown damage report status"})
    if status not in DAMAGE_TRANSITIONS.get(report.status, ()):
        raise ValueError(f"Cannot move a damage report from {report.status} to {status}")
    item = db.session.get(Equipment, report.equipment_id)
    on_loan = active_borrowing(item.id) is not None
    if status == "replacement_approved" and on_loan:
        raise PermissionError("Equipment is still on loan; return it before approving a replacement")
    report.status = status
    if notes:
        report.resolution_notes = notes
    if status == "repair_approved":
        item.condition_status = "under_repair"
    elif status == "repair_completed":
        item.condition_status = "good"
        if not on_loan and item.availability_status == "maintenance":
            item.availability_status = "available"
    elif status == "replacement_approved":
        item.availability_status = "decommissioned"
        item.condition_status = "decommissioned"
    log_event("damage_report_updated", target=f"damage:{report.id}", detail=status)
    db.session.commit()
    return report


def list_damage_reports(status: Optional[str] = None) -> List[DamageReport]:
    query = DamageReport.query
    if status:
        query = query.filter_by(status=status)
    return query.order_by(DamageReport.created_at.desc(), DamageReport.id.desc()).all()
