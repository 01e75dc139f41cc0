"""
Maintenance utilities for the cohort desk.

Usage examples:

  python scripts/maintenance.py create-user --email ops@example.com --role fee_collector
  python scripts/maintenance.py recalculate --cohort 3
  python scripts/maintenance.py refresh-statuses
  python scripts/maintenance.py send-reminders --days-ahead 5

The database comes from SQLALCHEMY_DATABASE_URI, like the web app.
"""

from __future__ import annotations

import argparse
import getpass
import os
import sys

# Ensure project root is importable when running from scripts/
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from app import app
from extensions import db
from models import User
from utils import ROLES
from utils.equipment import flag_overdue_borrowings
from utils.notify import send_payment_reminders
from utils.security import hash_password
from utils.student_payments import recalculate_cohort_schedules, refresh_all_payments


def create_user(email: str, role: str, name: str | None, password: str, student_id: int | None) -> User:
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise ValueError(f"User {email} already exists")
    if role == "student" and student_id is None:
        raise ValueError("Student accounts need --student-id")
    user = User(email=email, name=name, role=role, student_id=student_id,
                password_hash=hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Maintenance tools")
    sub = ap.add_subparsers(dest="cmd", required=True)

    cu = sub.add_parser("create-user", help="Create a login for staff or a student")
    cu.add_argument("--email", required=True)
    cu.add_argument("--role", choices=ROLES, required=True)
    cu.add_argument("--name", default=None)
    cu.add_argument("--student-id", type=int, default=None)

    rc = sub.add_parser("recalculate", help="Rebuild every payment schedule in a cohort")
    rc.add_argument("--cohort", type=int, required=True)

    sub.add_parser("refresh-statuses", help="Recompute every payment record")
    sub.add_parser("flag-overdue", help="Mark borrowings past their return date as overdue")

    sr = sub.add_parser("send-reminders", help="Email payment reminders now")
    sr.add_argument("--days-ahead", type=int, default=None)

    args = ap.parse_args(argv)
    with app.app_context():
        try:
            if args.cmd == "create-user":
                password = getpass.getpass("Password: ")
                user = create_user(args.email, args.role, args.name, password, args.student_id)
                print(f"OK: created {user.email} ({user.role})")
            elif args.cmd == "recalculate":
                result = recalculate_cohort_schedules(args.cohort)
                print(f"OK: updated {result['updated']} record(s), {result['errors']} error(s)")
                for failure in result["failures"]:
                    print(f"  student {failure['student_id']}: {failure['error']}")
            elif args.cmd == "refresh-statuses":
                print(f"OK: refreshed {refresh_all_payments()} record(s)")
            elif args.cmd == "flag-overdue":
                print(f"OK: flagged {flag_overdue_borrowings()} borrowing(s)")
            elif args.cmd == "send-reminders":
                counts = send_payment_reminders(days_ahead=args.days_ahead)
                print("OK: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        except (ValueError, LookupError) as exc:
            db.session.rollback()
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
