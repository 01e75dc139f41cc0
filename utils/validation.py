from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^(\+91)?[6-9]\d{9}$")
POSTAL_CODE_RE = re.compile(r"^[1-9][0-9]{5}$")


class ValidationError(ValueError):
    """Invalid input carrying per-field messages."""

    def __init__(self, errors):
        self.errors = errors
        if isinstance(errors, dict):
            message = "; ".join(errors.values())
        else:
            message = "; ".join(errors)
        super().__init__(message or "Invalid input")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))


def normalize_phone(value: Optional[str]) -> str:
    """Strip spaces, dashes and brackets; keep a leading +."""
    return re.sub(r"[\s\-()]", "", value or "")


def is_valid_phone(value: Optional[str]) -> bool:
    return bool(PHONE_RE.match(normalize_phone(value)))


def is_valid_postal_code(value: Optional[str]) -> bool:
    return bool(POSTAL_CODE_RE.match((value or "").strip()))


def _number(data: Mapping[str, Any], key: str) -> Optional[Decimal]:
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


def validate_fee_structure(data: Mapping[str, Any]) -> Dict[str, str]:
    """Return ``{field: message}``; empty when the structure is valid."""
    errors: Dict[str, str] = {}

    admission = _number(data, "admission_fee")
    if admission is None or admission < 0:
        errors["admission_fee"] = "Admission fee must be 0 or more"

    program = _number(data, "total_program_fee")
    if program is None or program <= 0:
        errors["total_program_fee"] = "Total program fee must be greater than 0"

    for key, label in (("number_of_semesters", "Number of semesters"),
                       ("instalments_per_semester", "Instalments per semester")):
        value = _number(data, key)
        if value is None or value != value.to_integral_value() or not 1 <= value <= 12:
            errors[key] = f"{label} must be a whole number between 1 and 12"

    discount = _number(data, "one_shot_discount_percentage")
    if data.get("one_shot_discount_percentage") not in (None, "") and (discount is None or not 0 <= discount <= 100):
        errors["one_shot_discount_percentage"] = "One-shot discount must be between 0 and 100"

    split = data.get("instalment_split")
    if split not in (None, "", "equal", "weighted"):
        errors["instalment_split"] = "Instalment split must be 'equal' or 'weighted'"
    return errors


def validate_scholarships(scholarships: Sequence[Mapping[str, Any]]) -> List[str]:
    """Validate a cohort's scholarship bands; returns human-readable errors."""
    errors: List[str] = []
    bands = []
    for idx, item in enumerate(scholarships, start=1):
        label = (item.get("name") or "").strip() or f"Scholarship {idx}"
        if not (item.get("name") or "").strip():
            errors.append(f"Scholarship {idx}: name is required")
        amount = _number(item, "amount_percentage")
        if amount is None or not 0 < amount <= 100:
            errors.append(f"{label}: amount percentage must be greater than 0 and at most 100")
        start = _number(item, "start_percentage")
        end = _number(item, "end_percentage")
        if start is None or end is None:
            errors.append(f"{label}: start and end percentage are required")
            continue
        if start < 0 or end > 100:
            errors.append(f"{label}: eligibility range must stay within 0-100")
        if start >= end:
            errors.append(f"{label}: start percentage must be less than end percentage")
            continue
        bands.append((start, end, label))

    bands.sort()
    for (_s1, e1, n1), (s2, _e2, n2) in zip(bands, bands[1:]):
        if s2 < e1:
            errors.append(f"{n1} and {n2} have overlapping eligibility ranges")
    return errors
