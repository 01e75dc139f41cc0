from __future__ import annotations

import calendar
import re
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

PLANS = ("one_shot", "sem_wise", "instalment_wise")
MONTHS_PER_SEMESTER = 6
ONE_SHOT_KEY = "one-shot"

_KEY_RE = re.compile(r"^semester-(\d+)-instalment-(\d+)$")


def parse_date(value: Any) -> Optional[date]:
    """Accept a date, datetime, ISO string or DD/MM/YYYY; return None for blanks."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}")


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of short months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def date_key(semester: int, instalment: int) -> str:
    return f"semester-{semester}-instalment-{instalment}"


def parse_date_key(key: str):
    """Return ``(semester, instalment)`` for a flat key, or None."""
    match = _KEY_RE.match(key or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def default_date_keys(plan: str, start: date, semesters: int, per_semester: int) -> Dict[str, date]:
    """Generated due dates: semesters start six months apart, instalments monthly."""
    if plan not in PLANS:
        raise ValueError(f"Unknown payment plan: {plan}")
    if plan == "one_shot":
        return {ONE_SHOT_KEY: start}
    out: Dict[str, date] = {}
    for sem in range(1, semesters + 1):
        offset = (sem - 1) * MONTHS_PER_SEMESTER
        if plan == "sem_wise":
            out[date_key(sem, 0)] = add_months(start, offset)
            continue
        for i in range(per_semester):
            out[date_key(sem, i)] = add_months(start, offset + i)
    return out


def normalize_plan_dates(plan_json: Optional[Mapping[str, Any]], plan: str) -> Dict[str, date]:
    """Flatten the saved/custom date JSON of a plan into ``{date_key: date}``.

    Accepts the flat key format as well as the nested forms::

        {"program_fee_due_date": "2025-08-20"}
        {"semesters": {"semester_1": {"due_date": "..."}}}
        {"semesters": {"semester_1": {"installments": {"installment_1": "..."}}}}

    Nested instalment numbers are 1-based; flat keys are 0-based.
    """
    out: Dict[str, date] = {}
    if not plan_json or not isinstance(plan_json, Mapping):
        return out

    if plan == "one_shot":
        raw = plan_json.get("program_fee_due_date") or plan_json.get(ONE_SHOT_KEY)
        parsed = parse_date(raw)
        if parsed:
            out[ONE_SHOT_KEY] = parsed
        return out

    semesters = plan_json.get("semesters")
    if isinstance(semesters, Mapping):
        for sem_key, sem_data in semesters.items():
            if not isinstance(sem_data, Mapping):
                continue
            sem_num = int(str(sem_key).replace("semester_", ""))
            if plan == "sem_wise":
                parsed = parse_date(sem_data.get("due_date"))
                if parsed:
                    out[date_key(sem_num, 0)] = parsed
                continue
            for inst_key, raw in (sem_data.get("installments") or {}).items():
                inst_num = int(str(inst_key).replace("installment_", ""))
                parsed = parse_date(raw)
                if parsed:
                    out[date_key(sem_num, max(inst_num - 1, 0))] = parsed
        return out

    for key, raw in plan_json.items():
        parts = parse_date_key(key)
        if not parts:
            continue
        if plan == "sem_wise" and parts[1] != 0:
            continue
        parsed = parse_date(raw)
        if parsed:
            out[key] = parsed
    return out


def resolve_due_dates(
    plan: str,
    start: date,
    semesters: int,
    per_semester: int,
    saved: Optional[Mapping[str, Any]] = None,
    custom: Optional[Mapping[str, Any]] = None,
) -> Dict[str, date]:
    """Due dates for a plan: custom dates win, then saved plan dates, then generated.

    Keys missing from the chosen source are always filled from the generated set,
    and keys that the plan does not produce are dropped.
    """
    generated = default_date_keys(plan, start, semesters, per_semester)
    resolved = dict(generated)
    for source in (saved, custom):
        for key, value in normalize_plan_dates(source, plan).items():
            if key in resolved:
                resolved[key] = value
    return resolved
