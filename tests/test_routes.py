from unittest.mock import patch

from conftest import PASSWORD, make_user
from models import AuditLog


def test_healthz_and_security_headers(client):
    resp = client.get('/healthz')
    assert resp.status_code == 200
    assert resp.get_json()['ok'] is True
    assert resp.headers['X-Content-Type-Options'] == 'nosniff'
    assert "default-src 'none'" in resp.headers['Content-Security-Policy']
    assert 'Strict-Transport-Security' not in resp.headers


def test_unknown_route_uses_json_envelope(client):
    resp = client.get('/api/nothing-here')
    assert resp.status_code == 404
    assert resp.get_json() == {'ok': False, 'error': 'Not found'}


def test_login_success_and_me(client, app):
    make_user('program_manager', email='pm@example.com')
    resp = client.post('/auth/login', json={'email': 'PM@example.com ', 'password': PASSWORD})
    assert resp.status_code == 200
    user = resp.get_json()['user']
    assert user['role'] == 'program_manager'
    assert 'password_hash' not in user

    me = client.get('/auth/me').get_json()
    assert me['user']['email'] == 'pm@example.com'

    client.post('/auth/logout')
    assert client.get('/auth/me').status_code == 401


def test_login_failures(client, app):
    make_user('fee_collector')
    assert client.post('/auth/login', json={'email': 'fee_collector@example.com'}).status_code == 400
    resp = client.post('/auth/login', json={'email': 'fee_collector@example.com', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'Invalid email or password'


def test_role_gates(client, login):
    assert client.get('/api/cohorts').status_code == 401
    login('equipment_manager')
    assert client.get('/api/cohorts').status_code == 200
    resp = client.post('/api/cohorts', json={'cohort_code': 'X'})
    assert resp.status_code == 403
    assert client.get('/api/audit/logs').status_code == 403


def test_super_admin_passes_every_gate(client, login, cohort):
    login('super_admin')
    assert client.get(f'/api/cohorts/{cohort.id}').status_code == 200
    assert client.get('/api/audit/logs').status_code == 200


def test_service_errors_map_to_status_codes(client, login, cohort):
    login('program_manager')
    missing = client.get('/api/cohorts/9999')
    assert missing.status_code == 404
    assert missing.get_json()['error'] == 'Cohort not found'

    duplicate = client.post('/api/cohorts', json={
        'cohort_code': 'C-2025-01', 'name': 'Again', 'start_date': '2025-01-15',
    })
    assert duplicate.status_code == 400
    assert duplicate.get_json()['errors']['cohort_code'] == 'Cohort code already exists'


def test_unexpected_error_returns_500(client, login):
    login('program_manager')
    with patch('routes.cohort_routes.list_cohorts', side_effect=RuntimeError('boom')):
        resp = client.get('/api/cohorts')
    assert resp.status_code == 500
    assert resp.get_json() == {'ok': False, 'error': 'Internal server error'}


def test_fee_flow_through_api(client, login, fee_structure, student):
    login('fee_collector')
    plan = client.post(f'/api/fees/students/{student.id}/plan', json={'payment_plan': 'sem_wise'})
    assert plan.status_code == 200
    assert plan.get_json()['payment']['total_amount_payable'] == 130000.0

    too_much = client.post(f'/api/fees/students/{student.id}/payments',
                           json={'amount': 500000, 'payment_method': 'cash'})
    assert too_much.status_code == 400
    assert too_much.get_json()['error'] == 'Payment amount exceeds the outstanding balance'

    paid = client.post(f'/api/fees/students/{student.id}/payments',
                       json={'amount': 60000, 'payment_method': 'upi', 'reference_number': 'UTR9'})
    assert paid.status_code == 201
    assert paid.get_json()['payment']['total_amount_paid'] == 70000.0

    locked = client.post(f'/api/fees/students/{student.id}/plan', json={'payment_plan': 'one_shot'})
    assert locked.status_code == 409

    shown = client.get(f'/api/fees/students/{student.id}/payment').get_json()['payment']
    assert [tx['reference_number'] for tx in shown['transactions']] == ['UTR9']
    assert AuditLog.query.filter_by(action='payment_recorded').count() == 1


def test_student_sees_only_own_records(client, login, cohort, fee_structure, student):
    from utils.cohorts import add_student

    other = add_student(cohort.id, {'first_name': 'Ravi', 'last_name': 'Rao', 'email': 'ravi@example.com'})
    login('student', student_id=student.id)
    assert client.get(f'/api/cohorts/students/{student.id}').status_code == 200
    assert client.get(f'/api/cohorts/students/{other.id}').status_code == 403
    assert client.get(f'/api/fees/students/{other.id}/payment').status_code == 403
    assert client.get(f'/api/fees/students/{student.id}/payment').status_code == 404


def test_student_leave_is_tied_to_session(client, login, cohort, student):
    login('student', student_id=student.id)
    resp = client.post('/api/leave', json={
        'student_id': 9999, 'session_date': '2025-02-03', 'reason': 'Family function',
    })
    assert resp.status_code == 201
    assert resp.get_json()['application']['student_id'] == student.id
    assert client.get('/api/leave/pending').status_code == 403
