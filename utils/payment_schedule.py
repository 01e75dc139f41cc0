"""Payment schedule generation.

A schedule is a JSON-serialisable dict stored on ``StudentPayment.payment_schedule``.
It carries the fee breakdown for one plan (one-shot, semester-wise or
instalment-wise) plus one entry per instalment with its due date and amount.

Amounts are computed as::

    gross   = program fee (+ GST when the fee is quoted without it)
    net     = gross * (1 - (scholarship% + additional% [+ one-shot%]) / 100)
    total   = admission fee + net

The net program fee is split across instalments so the shares sum exactly to
``net``; the admission fee is a separate line that is collected on enrolment.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from utils.fee_math import (
    HUNDRED,
    ZERO,
    distribute_backwards,
    distribute_equally,
    extract_base_from_total,
    extract_gst_from_total,
    instalment_weights,
    money,
    percent,
    percentage_of,
    split_amount,
    to_float,
)
from utils.payment_dates import ONE_SHOT_KEY, PLANS, date_key, parse_date, resolve_due_dates
from utils.payment_status import apply_payments

DEFAULT_GST_RATE = 18


def _field(fee: Any, name: str, default: Any = None) -> Any:
    if isinstance(fee, Mapping):
        value = fee.get(name, default)
    else:
        value = getattr(fee, name, default)
    return default if value is None else value


def validate_schedule_inputs(fee: Any, plan: str, scholarship_percentage=0, additional_discount_percentage=0) -> None:
    if plan not in PLANS:
        raise ValueError(f"Unknown payment plan: {plan}")
    if money(_field(fee, "total_program_fee", 0)) <= 0:
        raise ValueError("Total program fee must be greater than 0")
    if money(_field(fee, "admission_fee", 0)) < 0:
        raise ValueError("Admission fee cannot be negative")
    semesters = int(_field(fee, "number_of_semesters", 1))
    per_semester = int(_field(fee, "instalments_per_semester", 1))
    if not 1 <= semesters <= 12:
        raise ValueError("Number of semesters must be between 1 and 12")
    if not 1 <= per_semester <= 12:
        raise ValueError("Instalments per semester must be between 1 and 12")
    for label, value in (
        ("Scholarship percentage", scholarship_percentage),
        ("Additional discount percentage", additional_discount_percentage),
        ("One-shot discount percentage", _field(fee, "one_shot_discount_percentage", 0)),
    ):
        pct = Decimal(str(value or 0))
        if pct < 0 or pct > 100:
            raise ValueError(f"{label} must be between 0 and 100")


def _slots(plan: str, semesters: int, per_semester: int, split: str):
    """Yield ``(semester, instalment_index, date_key, weight)`` in schedule order."""
    if plan == "one_shot":
        yield 1, 0, ONE_SHOT_KEY, Decimal(1)
        return
    for sem in range(1, semesters + 1):
        if plan == "sem_wise":
            yield sem, 0, date_key(sem, 0), Decimal(1)
            continue
        weights = instalment_weights(per_semester, split)
        weight_sum = sum(weights)
        for idx, weight in enumerate(weights):
            yield sem, idx, date_key(sem, idx), weight / weight_sum


def build_payment_schedule(
    fee: Any,
    plan: str,
    start_date,
    scholarship_percentage=0,
    additional_discount_percentage=0,
    custom_dates: Optional[Mapping[str, Any]] = None,
    gst_rate=DEFAULT_GST_RATE,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Compute the full schedule for ``plan`` from a fee structure (model or mapping)."""
    validate_schedule_inputs(fee, plan, scholarship_percentage, additional_discount_percentage)
    start = parse_date(start_date)
    if start is None:
        raise ValueError("A start date is required to build a payment schedule")

    semesters = int(_field(fee, "number_of_semesters", 1))
    per_semester = int(_field(fee, "instalments_per_semester", 1))
    split = _field(fee, "instalment_split", "equal")
    includes_gst = bool(_field(fee, "program_fee_includes_gst", True))
    equal_distribution = bool(_field(fee, "equal_scholarship_distribution", True))
    rate = Decimal(str(gst_rate))

    program_fee = money(_field(fee, "total_program_fee", 0))
    admission_fee = money(_field(fee, "admission_fee", 0))
    scholarship_pct = percent(scholarship_percentage)
    additional_pct = percent(additional_discount_percentage)
    one_shot_pct = percent(_field(fee, "one_shot_discount_percentage", 0)) if plan == "one_shot" else ZERO
    deduction_pct = min(HUNDRED, scholarship_pct + additional_pct + one_shot_pct)

    gross = program_fee if includes_gst else program_fee + percentage_of(program_fee, rate)
    net = money(gross * (HUNDRED - deduction_pct) / HUNDRED)
    deduction = gross - net
    one_shot_discount = min(deduction, percentage_of(gross, one_shot_pct))

    saved_dates = _field(fee, "dates_for_plan", None)
    saved = saved_dates(plan) if callable(saved_dates) else _field(fee, f"{plan}_dates", None)
    due_dates = resolve_due_dates(plan, start, semesters, per_semester, saved=saved, custom=custom_dates)

    slots = list(_slots(plan, semesters, per_semester, split))
    gross_shares = split_amount(gross, [slot[3] for slot in slots])
    if equal_distribution:
        taken = distribute_equally(gross_shares, deduction)
        leftover = deduction - sum(taken, ZERO)
        if leftover > 0:
            remaining = [share - t for share, t in zip(gross_shares, taken)]
            taken = [t + extra for t, extra in zip(taken, distribute_backwards(remaining, leftover))]
    else:
        taken = distribute_backwards(gross_shares, deduction)

    installments: List[Dict[str, Any]] = []
    for number, ((sem, idx, key, _w), share, cut) in enumerate(zip(slots, gross_shares, taken), start=1):
        amount = share - cut
        gst = extract_gst_from_total(amount, rate)
        installments.append({
            "installment_number": number,
            "semester_number": sem,
            "instalment_index": idx,
            "date_key": key,
            "due_date": due_dates[key].isoformat(),
            "gross_amount": to_float(share),
            "scholarship_amount": to_float(cut),
            "base_amount": to_float(amount - gst),
            "gst_amount": to_float(gst),
            "amount": to_float(amount),
            "amount_paid": 0.0,
            "amount_pending": to_float(amount),
            "status": "pending",
        })
    installments.sort(key=lambda inst: (inst["due_date"], inst["installment_number"]))

    schedule: Dict[str, Any] = {
        "plan": plan,
        "start_date": start.isoformat(),
        "gst_rate": float(rate),
        "program_fee_includes_gst": includes_gst,
        "equal_scholarship_distribution": equal_distribution,
        "program_fee": to_float(program_fee),
        "gross_program_fee": to_float(gross),
        "net_program_fee": to_float(net),
        "admission_fee": to_float(admission_fee),
        "admission_fee_base": to_float(extract_base_from_total(admission_fee, rate)),
        "admission_fee_gst": to_float(extract_gst_from_total(admission_fee, rate)),
        "scholarship_percentage": float(scholarship_pct),
        "additional_discount_percentage": float(additional_pct),
        "one_shot_discount_percentage": float(one_shot_pct),
        "discount_percentage": float(deduction_pct),
        "one_shot_discount_amount": to_float(one_shot_discount),
        "scholarship_amount": to_float(deduction - one_shot_discount),
        "gst_amount": to_float(sum((money(i["gst_amount"]) for i in installments), ZERO)),
        "total_amount": to_float(admission_fee + net),
        "installments": installments,
    }
    return apply_payments(schedule, [], today=today)
