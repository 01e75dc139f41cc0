import copy
from datetime import date

from utils.payment_schedule import build_payment_schedule
from utils.payment_status import (
    aggregate_status,
    apply_payments,
    calculate_next_due_date,
    calculate_payment_status,
    derive_record_status,
    installment_status,
)

FEE = {
    'total_program_fee': 120000,
    'admission_fee': 10000,
    'number_of_semesters': 2,
    'instalments_per_semester': 3,
}


def _schedule():
    return build_payment_schedule(FEE, 'instalment_wise', '2025-01-15', today=date(2025, 1, 1))


def _tx(amount, status='approved', installment_number=None, approved_amount=None):
    return {
        'amount': amount,
        'verification_status': status,
        'installment_number': installment_number,
        'approved_amount': approved_amount,
    }


def _statuses(schedule):
    return [inst['status'] for inst in schedule['installments']]


def test_untargeted_payment_fills_in_due_order():
    today = date(2025, 2, 20)
    schedule = apply_payments(_schedule(), [_tx(25000)], today=today)
    first, second, third = schedule['installments'][:3]
    assert first['amount_paid'] == 20000.0 and first['status'] == 'paid'
    assert second['amount_paid'] == 5000.0 and second['amount_pending'] == 15000.0
    assert second['status'] == 'partially_paid_overdue'
    assert third['status'] == 'pending_10_plus_days'
    assert schedule['summary']['status'] == 'overdue'
    assert schedule['summary']['program_fee_paid'] == 25000.0
    assert schedule['summary']['next_due_date'] == '2025-02-15'


def test_targeted_payment_fills_its_instalment_first():
    today = date(2025, 2, 20)
    schedule = apply_payments(_schedule(), [_tx(5000, installment_number=3)], today=today)
    assert schedule['installments'][2]['amount_paid'] == 5000.0
    assert schedule['installments'][2]['status'] == 'partially_paid_days_left'
    assert schedule['installments'][0]['status'] == 'overdue'


def test_unverified_money_flags_verification():
    schedule = apply_payments(_schedule(), [_tx(20000, status='verification_pending')], today=date(2025, 1, 10))
    first = schedule['installments'][0]
    assert first['amount_paid'] == 0.0
    assert first['amount_under_verification'] == 20000.0
    assert first['status'] == 'verification_pending'
    assert aggregate_status(schedule, date(2025, 1, 10)) == 'verification_pending'


def test_partially_approved_counts_only_approved_part():
    txs = [_tx(20000, status='partially_approved', approved_amount=12000), _tx(8000, status='verification_pending')]
    schedule = apply_payments(_schedule(), txs, today=date(2025, 1, 10))
    first = schedule['installments'][0]
    assert first['amount_paid'] == 12000.0
    assert first['status'] == 'verification_pending'


def test_rejected_transactions_are_ignored():
    schedule = apply_payments(_schedule(), [_tx(20000, status='rejected')], today=date(2025, 1, 10))
    assert schedule['summary']['program_fee_paid'] == 0.0


def test_overpayment_reported_as_excess():
    schedule = apply_payments(_schedule(), [_tx(130000)], today=date(2025, 1, 10))
    assert schedule['excess_amount'] == 10000.0
    assert set(_statuses(schedule)) == {'paid'}
    assert schedule['summary']['status'] == 'paid'
    assert schedule['summary']['completion_percentage'] == 100.0


def test_apply_payments_is_idempotent():
    txs = [_tx(25000), _tx(3000, status='verification_pending')]
    once = apply_payments(_schedule(), txs, today=date(2025, 2, 20))
    twice = apply_payments(copy.deepcopy(once), txs, today=date(2025, 2, 20))
    assert once == twice


def test_next_due_date_is_cumulative():
    schedule = _schedule()
    assert calculate_next_due_date(schedule, 0) == date(2025, 1, 15)
    assert calculate_next_due_date(schedule, 25000) == date(2025, 2, 15)
    assert calculate_next_due_date(schedule, 120000) is None


def test_installment_status_windows():
    today = date(2025, 1, 10)
    assert installment_status(100, 0, 0, date(2025, 1, 25), today) == 'pending_10_plus_days'
    assert installment_status(100, 0, 0, date(2025, 1, 15), today) == 'pending'
    assert installment_status(100, 0, 0, date(2025, 1, 9), today) == 'overdue'
    assert installment_status(100, 40, 0, date(2025, 1, 15), today) == 'partially_paid_days_left'
    assert installment_status(100, 40, 20, date(2025, 1, 9), today) == 'partially_paid_verification_pending'
    assert installment_status(0, 0, 0, None, today) == 'waived'


def test_record_status():
    assert calculate_payment_status(0, 100) == 'pending'
    assert calculate_payment_status(50, 100) == 'partially_paid'
    assert calculate_payment_status(100, 100) == 'paid'
    schedule = _schedule()
    assert derive_record_status(schedule, 10000, 130000, date(2025, 2, 1)) == 'overdue'
    assert derive_record_status(schedule, 10000, 130000, date(2025, 1, 10)) == 'partially_paid'
