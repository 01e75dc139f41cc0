import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Point the module-level app at SQLite before anything imports it
os.environ.setdefault('SQLALCHEMY_DATABASE_URI', 'sqlite://')
os.environ['AUTO_CREATE_TABLES'] = '0'
os.environ['RATELIMIT_ENABLED'] = '0'
os.environ['ENABLE_SCHEDULER'] = '0'
os.environ['MAIL_SUPPRESS_SEND'] = '1'

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from models import User  # noqa: E402
from utils.cohorts import add_epic, add_student, create_cohort  # noqa: E402
from utils.fee_structures import save_fee_structure  # noqa: E402
from utils.security import hash_password  # noqa: E402

PASSWORD = 'correct-horse-1'


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'AUTO_CREATE_TABLES': True,
        'SESSION_COOKIE_SECURE': False,
        'RATELIMIT_ENABLED': False,
        'MAIL_SUPPRESS_SEND': True,
        'MAIL_DEFAULT_SENDER': 'desk@example.com',
        'SECRET_KEY': 'test',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def cohort(app):
    cohort = create_cohort({
        'cohort_code': 'C-2025-01',
        'name': 'Full stack 2025',
        'start_date': '2025-01-15',
        'duration_months': 12,
        'sessions_per_day': 2,
        'max_students': 30,
    })
    add_epic(cohort.id, {'name': 'Foundations'})
    return cohort


@pytest.fixture
def fee_structure(cohort):
    return save_fee_structure(cohort.id, {
        'total_program_fee': 120000,
        'admission_fee': 10000,
        'number_of_semesters': 2,
        'instalments_per_semester': 3,
        'one_shot_discount_percentage': 10,
    })


@pytest.fixture
def student(cohort):
    return add_student(cohort.id, {
        'first_name': 'Asha',
        'last_name': 'Nair',
        'email': 'asha@example.com',
        'phone': '98765 43210',
    })


@pytest.fixture
def today():
    return date(2025, 1, 10)


def make_user(role, email=None, student_id=None):
    user = User(
        email=email or f'{role}@example.com',
        name=role.replace('_', ' ').title(),
        role=role,
        student_id=student_id,
        password_hash=hash_password(PASSWORD),
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def login(client):
    """Log the test client in with a fresh user of ``role``."""

    def _login(role, student_id=None):
        user = make_user(role, student_id=student_id)
        resp = client.post('/auth/login', json={'email': user.email, 'password': PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return user

    return _login
