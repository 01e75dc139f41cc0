"""Single-record payment service.

Each student has one ``StudentPayment`` row holding the generated schedule and
running totals. Every mutation goes through :func:`refresh_student_payment`,
which rebuilds allocations and totals from the transactions, so recomputing a
record any number of times gives the same result.
"""
from __future__ import annotations

import copy
import csv
import logging
from datetime import date, datetime
from io import StringIO
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app

from extensions import db
from models import CohortStudent, PaymentTransaction, StudentPayment, StudentScholarship, CohortScholarship
from utils.audit import log_event
from utils.fee_math import ZERO, money, percent, to_float
from utils.cohorts import get_cohort
from utils.fee_structures import find_scholarship_by_name, get_fee_structure
from utils.notify import notify_transaction_review
from utils.payment_dates import PLANS, parse_date
from utils.payment_schedule import build_payment_schedule
from utils.payment_status import (
    apply_payments,
    approved_amount,
    calculate_next_due_date,
    derive_record_status,
    unverified_amount,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "bank_transfer", "upi", "cheque", "card", "scholarship_adjustment", "razorpay")
REVIEW_DECISIONS = ("full", "partial", "reject")


def _gst_rate():
    return current_app.config.get("GST_RATE", 18)


def get_student(student_id: int) -> CohortStudent:
    student = db.session.get(CohortStudent, student_id)
    if student is None:
        raise LookupError("Student not found")
    return student


def get_student_payment(student_id: int) -> Optional[StudentPayment]:
    return StudentPayment.query.filter_by(student_id=student_id).first()


def _require_payment(student_id: int) -> StudentPayment:
    record = get_student_payment(student_id)
    if record is None:
        raise LookupError("No payment plan has been set up for this student")
    return record


def _scholarship_terms(student: CohortStudent):
    """Return ``(scholarship, scholarship%, additional%)`` for the student."""
    link = StudentScholarship.query.filter_by(student_id=student.id).first()
    if link is None:
        return None, ZERO, ZERO
    scholarship = link.scholarship
    pct = percent(scholarship.amount_percentage) if scholarship else ZERO
    return scholarship, pct, percent(link.additional_discount_percentage)


def _set_scholarship(student: CohortStudent, scholarship_id: Optional[int], additional, user_id: Optional[int]):
    link = StudentScholarship.query.filter_by(student_id=student.id).first()
    if scholarship_id is None:
        if link is not None:
            db.session.delete(link)
        return
    scholarship = db.session.get(CohortScholarship, scholarship_id)
    if scholarship is None or scholarship.cohort_id != student.cohort_id:
        raise LookupError("Scholarship not found for this cohort")
    if link is None:
        link = StudentScholarship(student_id=student.id)
        db.session.add(link)
    link.scholarship_id = scholarship.id
    link.additional_discount_percentage = percent(additional)
    link.assigned_by = user_id
    link.assigned_at = datetime.utcnow()
    # Make the new link visible to queries issued before commit
    db.session.flush()


def build_student_schedule(student: CohortStudent, plan: str, custom_dates: Optional[Mapping] = None,
                           today: Optional[date] = None) -> Dict[str, Any]:
    if plan not in PLANS:
        raise ValueError(f"Unknown payment plan: {plan}")
    cohort = student.cohort
    structure = get_fee_structure(cohort.id, student.id)
    _scholarship, pct, additional = _scholarship_terms(student)
    schedule = build_payment_schedule(
        structure,
        plan,
        cohort.start_date,
        scholarship_percentage=pct,
        additional_discount_percentage=additional,
        custom_dates=custom_dates,
        gst_rate=_gst_rate(),
        today=today,
    )
    if custom_dates:
        schedule["custom_dates"] = dict(custom_dates)
    return schedule


def _has_payments_beyond_admission(record: StudentPayment) -> bool:
    return any(
        approved_amount(tx) > 0 or unverified_amount(tx) > 0
        for tx in record.transactions
    )


def refresh_student_payment(record: StudentPayment, today: Optional[date] = None) -> StudentPayment:
    """Recompute allocations, totals, status and due dates from the transactions."""
    today = today or date.today()
    schedule = apply_payments(copy.deepcopy(record.payment_schedule or {}), record.transactions, today)
    approved = sum((approved_amount(tx) for tx in record.transactions), ZERO)
    admission = money(schedule.get("admission_fee")) if record.admission_fee_paid else ZERO
    payable = money(schedule.get("total_amount"))
    paid = admission + approved

    # Reassign so SQLAlchemy notices the JSON change
    record.payment_schedule = schedule
    record.total_amount_payable = payable
    record.total_amount_paid = paid
    record.total_amount_pending = max(ZERO, payable - paid)
    record.payment_status = derive_record_status(schedule, paid, payable, today)
    record.next_due_date = calculate_next_due_date(schedule, approved)
    approved_dates = [tx.payment_date for tx in record.transactions if approved_amount(tx) > 0 and tx.payment_date]
    record.last_payment_date = max(approved_dates) if approved_dates else None
    return record


def setup_student_payment(student_id: int, plan: str, scholarship_id: Optional[int] = None,
                          additional_discount_percentage=None, custom_dates: Optional[Mapping] = None,
                          enforce_lock: bool = False, user_id: Optional[int] = None,
                          today: Optional[date] = None) -> StudentPayment:
    """Create or update the student's payment record for ``plan``.

    A new record counts the admission fee as paid. ``scholarship_id`` (when given)
    replaces the student's scholarship before the schedule is built.
    """
    student = get_student(student_id)
    if not student.is_active:
        raise PermissionError("Cannot set up payments for a dropped-out student")
    record = get_student_payment(student_id)
    if enforce_lock and record is not None and record.payment_plan != plan and _has_payments_beyond_admission(record):
        raise PermissionError("Payment plan cannot be changed after payments have been made")

    if scholarship_id is not None:
        _set_scholarship(student, scholarship_id, additional_discount_percentage, user_id)

    if custom_dates is None and record is not None and record.payment_plan == plan:
        custom_dates = (record.payment_schedule or {}).get("custom_dates")
    schedule = build_student_schedule(student, plan, custom_dates, today)
    scholarship, _pct, _additional = _scholarship_terms(student)

    created = record is None
    if created:
        record = StudentPayment(
            student_id=student.id,
            cohort_id=student.cohort_id,
            admission_fee_paid=True,
        )
        db.session.add(record)
    record.payment_plan = plan
    record.scholarship_id = scholarship.id if scholarship else None
    record.payment_schedule = schedule
    refresh_student_payment(record, today)

    log_event(
        "payment_plan_created" if created else "payment_plan_updated",
        target=f"student:{student.id}",
        detail=f"plan={plan} payable={record.total_amount_payable}",
    )
    db.session.commit()
    logger.info("Payment plan %s set for student %s", plan, student.id)
    return record


def calculate_payment_plan(student_id: int, plan: str, scholarship_id: Optional[int] = None,
                           additional_discount_percentage=None, custom_dates: Optional[Mapping] = None,
                           force: bool = False, user_id: Optional[int] = None,
                           today: Optional[date] = None) -> StudentPayment:
    """Like :func:`setup_student_payment`, but refuses to switch plans once money has come in."""
    return setup_student_payment(
        student_id,
        plan,
        scholarship_id=scholarship_id,
        additional_discount_percentage=additional_discount_percentage,
        custom_dates=custom_dates,
        enforce_lock=not force,
        user_id=user_id,
        today=today,
    )


def assign_scholarship(student_id: int, scholarship_id: Optional[int], additional_discount_percentage=0,
                       user_id: Optional[int] = None, today: Optional[date] = None) -> Optional[StudentPayment]:
    """Set (or clear, with ``None``) a student's scholarship and rebuild their schedule."""
    student = get_student(student_id)
    pct = percent(additional_discount_percentage)
    if pct != money(additional_discount_percentage or 0):
        raise ValueError("Additional discount must be between 0 and 100")
    _set_scholarship(student, scholarship_id, pct, user_id)
    db.session.flush()
    record = get_student_payment(student_id)
    if record is not None:
        custom = (record.payment_schedule or {}).get("custom_dates")
        record.payment_schedule = build_student_schedule(student, record.payment_plan, custom, today)
        scholarship, _pct, _additional = _scholarship_terms(student)
        record.scholarship_id = scholarship.id if scholarship else None
        refresh_student_payment(record, today)
    log_event("scholarship_assigned", target=f"student:{student.id}",
              detail=f"scholarship={scholarship_id} additional={pct}")
    db.session.commit()
    return record


def preview_payment_schedule(cohort_id: int, plan: str, scholarship_id: Optional[int] = None,
                             additional_discount_percentage=0, student_id: Optional[int] = None,
                             custom_dates: Optional[Mapping] = None) -> Dict[str, Any]:
    """Fee review: the schedule a plan would produce, without saving anything."""
    cohort = get_cohort(cohort_id)
    structure = get_fee_structure(cohort.id, student_id)
    pct = ZERO
    if scholarship_id is not None:
        scholarship = db.session.get(CohortScholarship, scholarship_id)
        if scholarship is None or scholarship.cohort_id != cohort.id:
            raise LookupError("Scholarship not found for this cohort")
        pct = percent(scholarship.amount_percentage)
    return build_payment_schedule(
        structure,
        plan,
        cohort.start_date,
        scholarship_percentage=pct,
        additional_discount_percentage=additional_discount_percentage,
        custom_dates=custom_dates,
        gst_rate=_gst_rate(),
    )


def _validate_payment_input(record: StudentPayment, amount, method: str, installment_number,
                            count_unverified: bool = False) -> None:
    if money(amount) <= 0:
        raise ValueError("Payment amount must be greater than 0")
    if method not in PAYMENT_METHODS:
        raise ValueError(f"Unsupported payment method: {method}")
    if installment_number is not None:
        numbers = {inst.get("installment_number") for inst in (record.payment_schedule or {}).get("installments") or []}
        if int(installment_number) not in numbers:
            raise ValueError(f"Instalment {installment_number} does not exist in this schedule")
    outstanding = money(record.total_amount_pending)
    if count_unverified:
        outstanding -= sum((unverified_amount(tx) for tx in record.transactions), ZERO)
    if money(amount) > outstanding:
        raise ValueError("Payment amount exceeds the outstanding balance")


def _new_transaction(record: StudentPayment, amount, method: str, reference: Optional[str], notes: Optional[str],
                     installment_number, payment_date, user_id: Optional[int], status: str) -> PaymentTransaction:
    semester_number = None
    if installment_number is not None:
        for inst in (record.payment_schedule or {}).get("installments") or []:
            if inst.get("installment_number") == int(installment_number):
                semester_number = inst.get("semester_number")
    tx = PaymentTransaction(
        amount=money(amount),
        payment_method=method,
        reference_number=reference,
        payment_date=parse_date(payment_date) or date.today(),
        installment_number=int(installment_number) if installment_number is not None else None,
        semester_number=semester_number,
        verification_status=status,
        notes=notes,
        recorded_by=user_id,
    )
    record.transactions.append(tx)
    return tx


def record_payment(student_id: int, amount, method: str, reference: Optional[str] = None,
                   notes: Optional[str] = None, installment_number=None, payment_date=None,
                   user_id: Optional[int] = None, today: Optional[date] = None) -> PaymentTransaction:
    """Admin-recorded payment; approved immediately."""
    record = _require_payment(student_id)
    _validate_payment_input(record, amount, method, installment_number)
    tx = _new_transaction(record, amount, method, reference, notes, installment_number, payment_date,
                          user_id, "approved")
    tx.verified_by = user_id
    tx.verified_at = datetime.utcnow()
    refresh_student_payment(record, today)
    log_event("payment_recorded", target=f"student:{student_id}",
              detail=f"amount={tx.amount} method={method} ref={reference or '-'}")
    db.session.commit()
    return tx


def submit_payment(student_id: int, amount, method: str, reference: Optional[str] = None,
                   notes: Optional[str] = None, installment_number=None, payment_date=None,
                   user_id: Optional[int] = None, today: Optional[date] = None) -> PaymentTransaction:
    """Student-submitted payment proof; waits for verification."""
    record = _require_payment(student_id)
    _validate_payment_input(record, amount, method, installment_number, count_unverified=True)
    tx = _new_transaction(record, amount, method, reference, notes, installment_number, payment_date,
                          user_id, "verification_pending")
    refresh_student_payment(record, today)
    log_event("payment_submitted", target=f"student:{student_id}", detail=f"amount={tx.amount}")
    db.session.commit()
    return tx


def review_transaction(transaction_id: int, decision: str, approved_amount_value=None,
                       notes: Optional[str] = None, rejection_reason: Optional[str] = None,
                       user_id: Optional[int] = None, today: Optional[date] = None) -> Dict[str, Any]:
    """Approve (fully or partially) or reject a pending transaction."""
    if decision not in REVIEW_DECISIONS:
        raise ValueError("Decision must be one of: full, partial, reject")
    tx = db.session.get(PaymentTransaction, transaction_id)
    if tx is None:
        raise LookupError("Transaction not found")
    if tx.verification_status not in ("verification_pending", "pending"):
        raise ValueError("Only transactions awaiting verification can be reviewed")

    record = tx.payment
    remainder_tx = None
    tx.verified_by = user_id
    tx.verified_at = datetime.utcnow()
    tx.verification_notes = notes

    if decision == "full":
        tx.verification_status = "approved"
    elif decision == "partial":
        partial = money(approved_amount_value)
        if partial <= 0 or partial >= money(tx.amount):
            raise ValueError("Approved amount must be greater than 0 and less than the submitted amount")
        tx.verification_status = "partially_approved"
        tx.approved_amount = partial
        remainder_tx = PaymentTransaction(
            amount=money(tx.amount) - partial,
            payment_method=tx.payment_method,
            reference_number=tx.reference_number,
            payment_date=tx.payment_date,
            installment_number=tx.installment_number,
            semester_number=tx.semester_number,
            verification_status="verification_pending",
            parent_transaction_id=tx.parent_transaction_id or tx.id,
            partial_payment_sequence=(tx.partial_payment_sequence or 1) + 1,
            notes=tx.notes,
            recorded_by=tx.recorded_by,
        )
        record.transactions.append(remainder_tx)
    else:
        if not (rejection_reason or "").strip():
            raise ValueError("A rejection reason is required")
        tx.verification_status = "rejected"
        tx.rejection_reason = rejection_reason.strip()

    refresh_student_payment(record, today)
    log_event(f"payment_{decision}_review", target=f"transaction:{tx.id}",
              detail=f"student={record.student_id} amount={tx.amount}")
    db.session.commit()

    notify_transaction_review(record.student, tx, decision,
                              remainder=remainder_tx.amount if remainder_tx is not None else None)
    return {
        "transaction": tx.to_dict(),
        "remainder_transaction": remainder_tx.to_dict() if remainder_tx is not None else None,
        "payment": record.to_dict(),
    }


def pending_verifications(cohort_id: Optional[int] = None) -> List[PaymentTransaction]:
    query = PaymentTransaction.query.filter(
        PaymentTransaction.verification_status.in_(("verification_pending", "pending"))
    )
    if cohort_id is not None:
        query = query.join(StudentPayment).filter(StudentPayment.cohort_id == cohort_id)
    return query.order_by(PaymentTransaction.created_at).all()


def recalculate_cohort_schedules(cohort_id: int, today: Optional[date] = None) -> Dict[str, Any]:
    """Rebuild every schedule in a cohort from its current fee structure, keeping payments."""
    get_cohort(cohort_id)
    updated, errors, failures = 0, 0, []
    for record in StudentPayment.query.filter_by(cohort_id=cohort_id).all():
        try:
            student = record.student
            custom = (record.payment_schedule or {}).get("custom_dates")
            record.payment_schedule = build_student_schedule(student, record.payment_plan, custom, today)
            refresh_student_payment(record, today)
            updated += 1
        except (ValueError, LookupError) as exc:
            errors += 1
            failures.append({"student_id": record.student_id, "error": str(exc)})
            logger.warning("Could not recalculate schedule for student %s: %s", record.student_id, exc)
    log_event("cohort_schedules_recalculated", target=f"cohort:{cohort_id}",
              detail=f"updated={updated} errors={errors}")
    db.session.commit()
    return {"updated": updated, "errors": errors, "failures": failures}


def refresh_all_payments(today: Optional[date] = None) -> int:
    """Recompute every record so overdue transitions land without a write from the user."""
    records = StudentPayment.query.all()
    for record in records:
        refresh_student_payment(record, today)
    db.session.commit()
    return len(records)


def cohort_payment_summary(cohort_id: int) -> Dict[str, Any]:
    get_cohort(cohort_id)
    records = StudentPayment.query.filter_by(cohort_id=cohort_id).all()
    by_status: Dict[str, int] = {}
    payable = paid = pending = ZERO
    overdue_students = []
    for record in records:
        by_status[record.payment_status] = by_status.get(record.payment_status, 0) + 1
        payable += money(record.total_amount_payable)
        paid += money(record.total_amount_paid)
        pending += money(record.total_amount_pending)
        if record.payment_status == "overdue":
            overdue_students.append({
                "student_id": record.student_id,
                "name": record.student.full_name if record.student else None,
                "amount_pending": to_float(record.total_amount_pending),
                "next_due_date": record.next_due_date.isoformat() if record.next_due_date else None,
            })
    collection_rate = float(money(paid / payable * 100)) if payable > 0 else 0.0
    return {
        "total_records": len(records),
        "by_status": by_status,
        "total_payable": to_float(payable),
        "total_collected": to_float(paid),
        "total_pending": to_float(pending),
        "collection_rate": collection_rate,
        "overdue_students": overdue_students,
        "pending_verifications": len(pending_verifications(cohort_id)),
    }


def export_payments_csv(cohort_id: int) -> str:
    get_cohort(cohort_id)
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow([
        "student_id", "name", "email", "payment_plan", "total_amount_payable",
        "total_amount_paid", "total_amount_pending", "payment_status", "next_due_date", "last_payment_date",
    ])
    records = StudentPayment.query.filter_by(cohort_id=cohort_id).order_by(StudentPayment.id).all()
    for record in records:
        student = record.student
        writer.writerow([
            record.student_id,
            student.full_name if student else "",
            student.email if student else "",
            record.payment_plan,
            f"{money(record.total_amount_payable):.2f}",
            f"{money(record.total_amount_paid):.2f}",
            f"{money(record.total_amount_pending):.2f}",
            record.payment_status,
            record.next_due_date.isoformat() if record.next_due_date else "",
            record.last_payment_date.isoformat() if record.last_payment_date else "",
        ])
    return buf.getvalue()


def _student_by_email(cohort_id: int, email: str) -> Optional[CohortStudent]:
    email = (email or "").strip().lower()
    return CohortStudent.query.filter(
        CohortStudent.cohort_id == cohort_id, db.func.lower(CohortStudent.email) == email
    ).first()


def bulk_assign_plans(cohort_id: int, csv_text: str, user_id: Optional[int] = None) -> Dict[str, Any]:
    """CSV columns: ``email,payment_plan[,scholarship_name]``. One result row per input row."""
    get_cohort(cohort_id)
    results = []
    for line_no, row in enumerate(csv.DictReader(StringIO(csv_text)), start=2):
        email = (row.get("email") or "").strip()
        plan = (row.get("payment_plan") or "").strip()
        try:
            student = _student_by_email(cohort_id, email)
            if student is None:
                raise LookupError(f"No student with email {email!r} in this cohort")
            scholarship_id = None
            if (row.get("scholarship_name") or "").strip():
                scholarship = find_scholarship_by_name(cohort_id, row["scholarship_name"])
                if scholarship is None:
                    raise LookupError(f"Unknown scholarship {row['scholarship_name']!r}")
                scholarship_id = scholarship.id
            calculate_payment_plan(student.id, plan, scholarship_id=scholarship_id,
                                   additional_discount_percentage=row.get("additional_discount_percentage") or 0,
                                   user_id=user_id)
            results.append({"row": line_no, "email": email, "ok": True})
        except (ValueError, LookupError, PermissionError) as exc:
            db.session.rollback()
            results.append({"row": line_no, "email": email, "ok": False, "error": str(exc)})
    return _bulk_report(results)


def bulk_assign_scholarships(cohort_id: int, csv_text: str, user_id: Optional[int] = None) -> Dict[str, Any]:
    """CSV columns: ``email,scholarship_name[,additional_discount_percentage]``."""
    get_cohort(cohort_id)
    results = []
    for line_no, row in enumerate(csv.DictReader(StringIO(csv_text)), start=2):
        email = (row.get("email") or "").strip()
        try:
            student = _student_by_email(cohort_id, email)
            if student is None:
                raise LookupError(f"No student with email {email!r} in this cohort")
            scholarship = find_scholarship_by_name(cohort_id, row.get("scholarship_name") or "")
            if scholarship is None:
                raise LookupError(f"Unknown scholarship {row.get('scholarship_name')!r}")
            assign_scholarship(student.id, scholarship.id, row.get("additional_discount_percentage") or 0,
                               user_id=user_id)
            results.append({"row": line_no, "email": email, "ok": True})
        except (ValueError, LookupError, PermissionError) as exc:
            db.session.rollback()
            results.append({"row": line_no, "email": email, "ok": False, "error": str(exc)})
    return _bulk_report(results)


def _bulk_report(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "processed": len(results),
        "succeeded": sum(1 for r in results if r["ok"]),
        "failed": sum(1 for r in results if not r["ok"]),
        "rows": results,
    }
