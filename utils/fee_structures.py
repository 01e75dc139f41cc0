from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from extensions import db
from models import CohortScholarship, CohortStudent, FeeStructure, StudentScholarship
from utils.audit import log_event
from utils.cohorts import get_cohort
from utils.fee_math import money, percent
from utils.validation import ValidationError, validate_fee_structure, validate_scholarships

logger = logging.getLogger(__name__)

STRUCTURE_FIELDS = (
    "total_program_fee",
    "admission_fee",
    "number_of_semesters",
    "instalments_per_semester",
    "one_shot_discount_percentage",
    "program_fee_includes_gst",
    "equal_scholarship_distribution",
    "instalment_split",
    "one_shot_dates",
    "sem_wise_dates",
    "instalment_wise_dates",
)


def get_fee_structure(cohort_id: int, student_id: Optional[int] = None, required: bool = True) -> Optional[FeeStructure]:
    """A student's custom structure when one exists, otherwise the cohort structure."""
    structure = None
    if student_id is not None:
        structure = FeeStructure.query.filter_by(
            cohort_id=cohort_id, student_id=student_id, structure_type="custom"
        ).first()
    if structure is None:
        structure = FeeStructure.query.filter_by(
            cohort_id=cohort_id, student_id=None, structure_type="cohort"
        ).first()
    if structure is None and required:
        raise LookupError("Fee structure is not configured for this cohort")
    return structure


def _merged(structure: Optional[FeeStructure], data: Mapping[str, Any]) -> Dict[str, Any]:
    current = structure.to_dict() if structure is not None else {}
    merged = {key: current.get(key) for key in STRUCTURE_FIELDS}
    merged.update({key: data[key] for key in STRUCTURE_FIELDS if key in data})
    return merged


def save_fee_structure(cohort_id: int, data: Mapping[str, Any], student_id: Optional[int] = None,
                       user_id: Optional[int] = None) -> FeeStructure:
    """Create or update the cohort structure, or a student's custom structure."""
    get_cohort(cohort_id)
    if student_id is not None:
        student = db.session.get(CohortStudent, student_id)
        if student is None or student.cohort_id != cohort_id:
            raise LookupError("Student not found in this cohort")
        structure = FeeStructure.query.filter_by(cohort_id=cohort_id, student_id=student_id).first()
    else:
        structure = FeeStructure.query.filter_by(cohort_id=cohort_id, student_id=None).first()

    values = _merged(structure, data)
    errors = validate_fee_structure(values)
    if errors:
        raise ValidationError(errors)

    if structure is None:
        structure = FeeStructure(
            cohort_id=cohort_id,
            student_id=student_id,
            structure_type="custom" if student_id is not None else "cohort",
            created_by=user_id,
        )
        db.session.add(structure)

    structure.total_program_fee = money(values["total_program_fee"])
    structure.admission_fee = money(values["admission_fee"])
    structure.number_of_semesters = int(values["number_of_semesters"])
    structure.instalments_per_semester = int(values["instalments_per_semester"])
    structure.one_shot_discount_percentage = percent(values.get("one_shot_discount_percentage"))
    if values.get("program_fee_includes_gst") is not None:
        structure.program_fee_includes_gst = bool(values["program_fee_includes_gst"])
    if values.get("equal_scholarship_distribution") is not None:
        structure.equal_scholarship_distribution = bool(values["equal_scholarship_distribution"])
    structure.instalment_split = values.get("instalment_split") or "equal"
    for key in ("one_shot_dates", "sem_wise_dates", "instalment_wise_dates"):
        if key in data:
            setattr(structure, key, data[key] or None)
    structure.is_setup_complete = True

    log_event("fee_structure_saved", target=f"cohort:{cohort_id}",
              detail=f"student={student_id}" if student_id else "cohort structure")
    db.session.commit()
    return structure


def delete_custom_structure(cohort_id: int, student_id: int) -> None:
    structure = FeeStructure.query.filter_by(
        cohort_id=cohort_id, student_id=student_id, structure_type="custom"
    ).first()
    if structure is None:
        raise LookupError("Custom fee structure not found")
    db.session.delete(structure)
    log_event("fee_structure_custom_removed", target=f"student:{student_id}")
    db.session.commit()


def list_scholarships(cohort_id: int) -> List[CohortScholarship]:
    return (
        CohortScholarship.query.filter_by(cohort_id=cohort_id)
        .order_by(CohortScholarship.start_percentage)
        .all()
    )


def _check_bands(cohort_id: int, candidate: Dict[str, Any], exclude_id: Optional[int] = None) -> None:
    bands = [
        {
            "name": s.name,
            "amount_percentage": s.amount_percentage,
            "start_percentage": s.start_percentage,
            "end_percentage": s.end_percentage,
        }
        for s in list_scholarships(cohort_id)
        if s.id != exclude_id
    ]
    bands.append(candidate)
    errors = validate_scholarships(bands)
    if errors:
        raise ValidationError(errors)


def create_scholarship(cohort_id: int, data: Mapping[str, Any]) -> CohortScholarship:
    get_cohort(cohort_id)
    candidate = {
        "name": (data.get("name") or "").strip(),
        "amount_percentage": data.get("amount_percentage"),
        "start_percentage": data.get("start_percentage", 0),
        "end_percentage": data.get("end_percentage", 100),
    }
    _check_bands(cohort_id, candidate)
    scholarship = CohortScholarship(
        cohort_id=cohort_id,
        name=candidate["name"],
        description=data.get("description"),
        amount_percentage=percent(candidate["amount_percentage"]),
        start_percentage=percent(candidate["start_percentage"]),
        end_percentage=percent(candidate["end_percentage"]),
    )
    db.session.add(scholarship)
    log_event("scholarship_created", target=f"cohort:{cohort_id}", detail=scholarship.name)
    db.session.commit()
    return scholarship


def update_scholarship(scholarship_id: int, data: Mapping[str, Any]) -> CohortScholarship:
    scholarship = db.session.get(CohortScholarship, scholarship_id)
    if scholarship is None:
        raise LookupError("Scholarship not found")
    candidate = {
        "name": (data.get("name", scholarship.name) or "").strip(),
        "amount_percentage": data.get("amount_percentage", scholarship.amount_percentage),
        "start_percentage": data.get("start_percentage", scholarship.start_percentage),
        "end_percentage": data.get("end_percentage", scholarship.end_percentage),
    }
    _check_bands(scholarship.cohort_id, candidate, exclude_id=scholarship.id)
    scholarship.name = candidate["name"]
    scholarship.amount_percentage = percent(candidate["amount_percentage"])
    scholarship.start_percentage = percent(candidate["start_percentage"])
    scholarship.end_percentage = percent(candidate["end_percentage"])
    if "description" in data:
        scholarship.description = data.get("description")
    log_event("scholarship_updated", target=f"scholarship:{scholarship.id}", detail=scholarship.name)
    db.session.commit()
    return scholarship


def delete_scholarship(scholarship_id: int) -> None:
    scholarship = db.session.get(CohortScholarship, scholarship_id)
    if scholarship is None:
        raise LookupError("Scholarship not found")
    if StudentScholarship.query.filter_by(scholarship_id=scholarship_id).first():
        raise PermissionError("Scholarship is assigned to students and cannot be deleted")
    db.session.delete(scholarship)
    log_event("scholarship_deleted", target=f"scholarship:{scholarship_id}", detail=scholarship.name)
    db.session.commit()


def find_scholarship_by_name(cohort_id: int, name: str) -> Optional[CohortScholarship]:
    name = (name or "").strip().lower()
    if not name:
        return None
    for scholarship in list_scholarships(cohort_id):
        if scholarship.name.strip().lower() == name:
            return scholarship
    return None
