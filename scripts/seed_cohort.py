"""Seed a demo cohort with students, a fee structure and scholarships.

Usage:

  python scripts/seed_cohort.py --code DEMO-01 --students 25 --plan sem_wise
"""
import argparse
import os
import random
import string
import sys
from datetime import date

# Ensure project root is importable when running from scripts/
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from app import app
from models import Cohort
from utils.cohorts import add_epic, add_student, create_cohort
from utils.fee_structures import create_scholarship, save_fee_structure
from utils.payment_dates import PLANS
from utils.student_payments import setup_student_payment


FIRST_NAMES = [
    "Aarav", "Vivaan", "Aditya", "Diya", "Ananya", "Ishaan", "Kavya", "Rohan",
    "Meera", "Arjun", "Saanvi", "Kabir", "Nisha", "Vikram", "Priya", "Tara",
]

LAST_NAMES = [
    "Sharma", "Verma", "Iyer", "Reddy", "Nair", "Gupta", "Mehta", "Kapoor",
    "Rao", "Singh", "Das", "Joshi", "Menon", "Bose", "Pillai", "Chopra",
]

SCHOLARSHIPS = [
    {"name": "Merit Gold", "amount_percentage": 30, "start_percentage": 90, "end_percentage": 100},
    {"name": "Merit Silver", "amount_percentage": 20, "start_percentage": 80, "end_percentage": 89.99},
    {"name": "Merit Bronze", "amount_percentage": 10, "start_percentage": 70, "end_percentage": 79.99},
]


def random_phone() -> str:
    return random.choice("6789") + "".join(random.choice(string.digits) for _ in range(9))


def seed(code: str, students: int, plan: str) -> None:
    if Cohort.query.filter_by(cohort_code=code).first():
        print(f"Cohort {code} already exists; nothing to do")
        return
    today = date.today()
    cohort = create_cohort({
        "cohort_code": code,
        "name": f"Demo cohort {code}",
        "start_date": today.isoformat(),
        "duration_months": 12,
        "sessions_per_day": 2,
        "max_students": max(students, 1) + 10,
    })
    add_epic(cohort.id, {"name": "Foundations"})
    save_fee_structure(cohort.id, {
        "total_program_fee": 300000,
        "admission_fee": 25000,
        "number_of_semesters": 2,
        "instalments_per_semester": 3,
        "one_shot_discount_percentage": 5,
    })
    for band in SCHOLARSHIPS:
        create_scholarship(cohort.id, band)

    for n in range(students):
        first, last = random.choice(FIRST_NAMES), random.choice(LAST_NAMES)
        student = add_student(cohort.id, {
            "first_name": first,
            "last_name": last,
            "email": f"{first}.{last}.{n}@example.com".lower(),
            "phone": random_phone(),
        })
        setup_student_payment(student.id, plan)
    print(f"Seeded cohort {code} with {students} students on the {plan} plan")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo cohort")
    parser.add_argument("--code", default="DEMO-01", help="Cohort code")
    parser.add_argument("--students", type=int, default=20, help="How many students to create")
    parser.add_argument("--plan", default="instalment_wise", choices=PLANS, help="Payment plan for every student")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for repeatable data")
    args = parser.parse_args()
    if args.seed is not None:
        random.seed(args.seed)
    with app.app_context():
        seed(args.code, args.students, args.plan)


if __name__ == "__main__":
    main()
