from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from utils.fee_math import HUNDRED, ZERO, money, to_float
from utils.payment_dates import parse_date

APPROVED_STATUSES = ("approved", "partially_approved")
UNVERIFIED_STATUSES = ("verification_pending", "pending")
PENDING_WINDOW_DAYS = 10

OVERDUE_STATES = ("overdue", "partially_paid_overdue")
VERIFICATION_STATES = ("verification_pending", "partially_paid_verification_pending")


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def approved_amount(tx: Any) -> Decimal:
    status = _get(tx, "verification_status")
    if status == "approved":
        return money(_get(tx, "amount"))
    if status == "partially_approved":
        partial = _get(tx, "approved_amount")
        return money(partial if partial is not None else _get(tx, "amount"))
    return ZERO


def unverified_amount(tx: Any) -> Decimal:
    if _get(tx, "verification_status") in UNVERIFIED_STATUSES:
        return money(_get(tx, "amount"))
    return ZERO


def calculate_payment_status(amount_paid, amount_payable) -> str:
    paid = money(amount_paid)
    if paid >= money(amount_payable):
        return "paid"
    if paid > 0:
        return "partially_paid"
    return "pending"


def calculate_next_due_date(schedule: Mapping[str, Any], amount_paid) -> Optional[date]:
    """Due date of the first instalment not covered by ``amount_paid`` (in due order)."""
    remaining = money(amount_paid)
    cumulative = ZERO
    for inst in _ordered(schedule):
        cumulative += money(inst.get("amount"))
        if cumulative > remaining:
            return parse_date(inst.get("due_date"))
    return None


def installment_status(amount, paid, unverified, due_date: Optional[date], today: date) -> str:
    amount, paid, unverified = money(amount), money(paid), money(unverified)
    if amount <= 0:
        return "waived"
    if paid >= amount:
        return "paid"
    if unverified > 0:
        if paid + unverified >= amount:
            return "verification_pending"
        return "partially_paid_verification_pending"
    days_left = (due_date - today).days if due_date else None
    if paid > 0:
        if days_left is not None and days_left < 0:
            return "partially_paid_overdue"
        return "partially_paid_days_left"
    if days_left is not None and days_left < 0:
        return "overdue"
    if days_left is not None and days_left >= PENDING_WINDOW_DAYS:
        return "pending_10_plus_days"
    return "pending"


def _ordered(schedule: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return sorted(
        schedule.get("installments") or [],
        key=lambda inst: (inst.get("due_date") or "", inst.get("installment_number") or 0),
    )


def _allocate(ordered: List[Dict[str, Any]], capacity: Dict[int, Decimal], targeted, untargeted: Decimal):
    """Waterfall allocation; returns ``({number: allocated}, excess)``."""
    allocated = {inst["installment_number"]: ZERO for inst in ordered}
    pool = untargeted
    for number, amount in targeted:
        if number in capacity:
            take = min(amount, capacity[number] - allocated[number])
            allocated[number] += take
            pool += amount - take
        else:
            pool += amount
    for inst in ordered:
        if pool <= 0:
            break
        number = inst["installment_number"]
        take = min(pool, capacity[number] - allocated[number])
        allocated[number] += take
        pool -= take
    return allocated, pool


def apply_payments(schedule: Dict[str, Any], transactions: Iterable[Any], today: Optional[date] = None) -> Dict[str, Any]:
    """Recompute per-instalment allocations and statuses from transactions.

    Idempotent: allocations are rebuilt from scratch on every call. Approved money
    aimed at a specific instalment fills it first; the rest fills instalments in
    due order. Unverified submissions are allocated on top, only to flag status.
    """
    today = today or date.today()
    ordered = _ordered(schedule)
    capacity = {inst["installment_number"]: money(inst.get("amount")) for inst in ordered}

    approved_targeted, approved_pool = [], ZERO
    pending_targeted, pending_pool = [], ZERO
    for tx in transactions or []:
        number = _get(tx, "installment_number")
        for amount, targeted, bucket in (
            (approved_amount(tx), approved_targeted, "approved"),
            (unverified_amount(tx), pending_targeted, "pending"),
        ):
            if amount <= 0:
                continue
            if number:
                targeted.append((int(number), amount))
            elif bucket == "approved":
                approved_pool += amount
            else:
                pending_pool += amount

    paid, excess = _allocate(ordered, capacity, approved_targeted, approved_pool)
    remaining = {n: capacity[n] - paid[n] for n in capacity}
    unverified, _ = _allocate(ordered, remaining, pending_targeted, pending_pool)

    for inst in ordered:
        number = inst["installment_number"]
        inst["amount_paid"] = to_float(paid[number])
        inst["amount_pending"] = to_float(capacity[number] - paid[number])
        inst["amount_under_verification"] = to_float(unverified[number])
        due = parse_date(inst.get("due_date"))
        inst["days_until_due"] = (due - today).days if due else None
        inst["status"] = installment_status(capacity[number], paid[number], unverified[number], due, today)

    schedule["installments"] = ordered
    schedule["excess_amount"] = to_float(excess)
    schedule["summary"] = summarize(schedule, today=today)
    return schedule


def aggregate_status(schedule: Mapping[str, Any], today: Optional[date] = None) -> str:
    """Single dashboard status for a schedule, highest-priority condition first."""
    today = today or date.today()
    installments = schedule.get("installments") or []
    states = {inst.get("status") for inst in installments}
    pending_total = sum((money(inst.get("amount_pending")) for inst in installments), ZERO)

    if states & set(VERIFICATION_STATES):
        return "verification_pending"
    if states & set(OVERDUE_STATES):
        return "overdue"
    if "partially_paid_days_left" in states:
        return "partially_paid_days_left"
    if pending_total <= 0 and "paid" in states:
        return "paid"
    if "pending" in states:
        return "pending"
    next_due = next(
        (parse_date(inst.get("due_date")) for inst in _ordered(schedule) if money(inst.get("amount_pending")) > 0),
        None,
    )
    if next_due is None:
        return "complete" if pending_total <= 0 else "pending"
    return "pending_10_plus_days" if (next_due - today).days >= PENDING_WINDOW_DAYS else "pending"


def summarize(schedule: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    ordered = _ordered(schedule)
    net = sum((money(inst.get("amount")) for inst in ordered), ZERO)
    paid = sum((money(inst.get("amount_paid")) for inst in ordered), ZERO)
    upcoming = next((inst for inst in ordered if money(inst.get("amount_pending")) > 0), None)
    completion = HUNDRED if net <= 0 else money(paid / net * HUNDRED)
    return {
        "total_installments": len(ordered),
        "paid_installments": sum(1 for inst in ordered if inst.get("status") in ("paid", "waived")),
        "overdue_installments": sum(1 for inst in ordered if inst.get("status") in OVERDUE_STATES),
        "program_fee_paid": to_float(paid),
        "program_fee_pending": to_float(net - paid),
        "next_due_date": upcoming.get("due_date") if upcoming else None,
        "next_due_amount": to_float(upcoming.get("amount_pending")) if upcoming else 0.0,
        "completion_percentage": float(completion),
        "status": aggregate_status(schedule, today),
    }


def has_overdue_installment(schedule: Mapping[str, Any], today: Optional[date] = None) -> bool:
    today = today or date.today()
    for inst in schedule.get("installments") or []:
        due = parse_date(inst.get("due_date"))
        if due and due < today and money(inst.get("amount_pending")) > 0:
            return True
    return False


def derive_record_status(schedule: Mapping[str, Any], total_paid, total_payable, today: Optional[date] = None) -> str:
    """Stored status of a payment record: paid, overdue, partially_paid or pending."""
    status = calculate_payment_status(total_paid, total_payable)
    if status != "paid" and has_overdue_installment(schedule, today):
        return "overdue"
    return status
