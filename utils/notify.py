"""Email notifications (Flask-Mail) with a communication log row per attempt."""
from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Dict, Optional

from flask import current_app
from flask_mail import Message

from extensions import db, mail
from models import CommunicationLog, StudentPayment
from utils.fee_math import money
from utils.payment_dates import parse_date

logger = logging.getLogger(__name__)


def _smtp_configured() -> bool:
    """True when Flask-Mail can deliver (or is suppressing delivery for tests)."""
    cfg = current_app.config
    if cfg.get("MAIL_SUPPRESS_SEND") or cfg.get("TESTING"):
        return True
    server = (cfg.get("MAIL_SERVER") or "").strip()
    username = (cfg.get("MAIL_USERNAME") or "").strip()
    password = (cfg.get("MAIL_PASSWORD") or "").strip()
    return bool(server and username and password)


def _sender() -> Optional[str]:
    cfg = current_app.config
    return cfg.get("MAIL_DEFAULT_SENDER") or cfg.get("MAIL_USERNAME") or None


def format_amount(value) -> str:
    symbol = current_app.config.get("CURRENCY_SYMBOL", "")
    return f"{symbol}{money(value):,.2f}"


def send_email(
    to: Optional[str],
    subject: str,
    body: str,
    message_type: str = "general",
    student_id: Optional[int] = None,
    reference_key: Optional[str] = None,
) -> bool:
    """Send one email; never raises. Every attempt is written to ``communication_logs``."""
    status, error = "sent", None
    if not to:
        status, error = "skipped", "No recipient email"
    elif not _smtp_configured():
        status, error = "skipped", "SMTP is not configured"
    else:
        try:
            mail.send(Message(subject=subject, sender=_sender(), recipients=[to], body=body))
        except Exception as exc:  # recorded as failed, not raised
            logger.exception("Failed to send %s email to %s", message_type, to)
            status, error = "failed", str(exc)

    db.session.add(CommunicationLog(
        student_id=student_id,
        channel="email",
        message_type=message_type,
        recipient=to,
        subject=subject,
        body=body,
        status=status,
        error=error,
        reference_key=reference_key,
    ))
    db.session.commit()
    if status != "sent":
        logger.info("Email %s not sent (%s): %s", message_type, status, error)
    return status == "sent"


def payment_reminder_body(student, installment: Dict, overdue: bool) -> str:
    app_name = current_app.config.get("APP_NAME", "")
    due = installment.get("due_date")
    amount = format_amount(installment.get("amount_pending"))
    if overdue:
        line = f"Your instalment {installment.get('installment_number')} of {amount} was due on {due} and is now overdue."
    else:
        line = f"Your instalment {installment.get('installment_number')} of {amount} is due on {due}."
    return (
        f"Dear {student.full_name},\n\n{line}\n"
        "Please make the payment or submit your payment proof on the portal.\n\n"
        f"Regards,\n{app_name}"
    )


def send_payment_reminders(today: Optional[date] = None, days_ahead: Optional[int] = None) -> Dict[str, int]:
    """Email every student with an instalment due soon or overdue.

    At most one reminder per instalment per day, keyed on ``reference_key``.
    """
    today = today or date.today()
    if days_ahead is None:
        days_ahead = int(current_app.config.get("REMINDER_DAYS_AHEAD", 3))
    horizon = today + timedelta(days=days_ahead)
    counts = {"sent": 0, "failed": 0, "skipped": 0, "already_sent": 0}

    records = StudentPayment.query.filter(StudentPayment.payment_status != "paid").all()
    for record in records:
        student = record.student
        if student is None or not student.is_active:
            continue
        for inst in (record.payment_schedule or {}).get("installments") or []:
            due = parse_date(inst.get("due_date"))
            if due is None or money(inst.get("amount_pending")) <= 0 or due > horizon:
                continue
            key = f"reminder:{record.id}:{inst.get('installment_number')}:{today.isoformat()}"
            if CommunicationLog.query.filter_by(reference_key=key).first():
                counts["already_sent"] += 1
                continue
            overdue = due < today
            subject = "Payment overdue" if overdue else "Payment reminder"
            ok = send_email(
                student.email,
                subject,
                payment_reminder_body(student, inst, overdue),
                message_type="payment_overdue" if overdue else "payment_reminder",
                student_id=student.id,
                reference_key=key,
            )
            if ok:
                counts["sent"] += 1
            elif student.email and _smtp_configured():
                counts["failed"] += 1
            else:
                counts["skipped"] += 1
    logger.info("Payment reminders for %s: %s", today.isoformat(), counts)
    return counts


def notify_transaction_review(student, transaction, decision: str, remainder=None) -> bool:
    amount = format_amount(transaction.approved_amount if decision == "partial" else transaction.amount)
    if decision == "full":
        subject = "Payment approved"
        body = f"Your payment of {amount} has been verified and approved."
    elif decision == "partial":
        subject = "Payment partially approved"
        body = (
            f"{amount} of your payment has been approved. "
            f"The remaining {format_amount(remainder)} is awaiting verification."
        )
    else:
        subject = "Payment rejected"
        body = f"Your payment of {amount} was rejected. Reason: {transaction.rejection_reason or 'not specified'}."
    return send_email(
        student.email,
        subject,
        f"Dear {student.full_name},\n\n{body}\n",
        message_type=f"payment_{decision}",
        student_id=student.id,
    )
