import logging

from apscheduler.schedulers.background import BackgroundScheduler

from extensions import db
from utils.equipment import flag_overdue_borrowings
from utils.notify import send_payment_reminders
from utils.student_payments import refresh_all_payments

logger = logging.getLogger(__name__)


def refresh_payment_statuses(app):
    """Recompute every payment record so overdue transitions land on their own."""
    with app.app_context():
        try:
            count = refresh_all_payments()
            logger.info("Refreshed %d payment records", count)
        except Exception:
            db.session.rollback()
            logger.exception("Payment status refresh failed")


def reminder_job(app):
    with app.app_context():
        try:
            send_payment_reminders()
        except Exception:
            db.session.rollback()
            logger.exception("Payment reminder run failed")


def overdue_equipment_job(app):
    with app.app_context():
        try:
            flagged = flag_overdue_borrowings()
            if flagged:
                logger.info("Flagged %d overdue borrowings", flagged)
        except Exception:
            db.session.rollback()
            logger.exception("Overdue borrowing check failed")


def start_scheduler(app):
    scheduler = BackgroundScheduler()
    hours = int(app.config.get("PAYMENT_STATUS_REFRESH_HOURS", 6))
    scheduler.add_job(lambda: refresh_payment_statuses(app), "interval", hours=hours,
                      id="payment_status_refresh", replace_existing=True)
    scheduler.add_job(lambda: reminder_job(app), "interval", hours=24, id="daily_reminder", replace_existing=True)
    scheduler.add_job(lambda: overdue_equipment_job(app), "interval", hours=24,
                      id="overdue_borrowings", replace_existing=True)
    scheduler.start()
    logger.info("Background scheduler started (status refresh every %dh)", hours)
    return scheduler
