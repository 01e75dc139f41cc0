from decimal import Decimal

import pytest

from extensions import mail
from models import CommunicationLog, PaymentTransaction
from utils.cohorts import add_student, mark_dropped_out
from utils.fee_structures import create_scholarship, save_fee_structure
from utils.student_payments import (
    assign_scholarship,
    bulk_assign_plans,
    bulk_assign_scholarships,
    calculate_payment_plan,
    cohort_payment_summary,
    export_payments_csv,
    record_payment,
    recalculate_cohort_schedules,
    refresh_student_payment,
    review_transaction,
    setup_student_payment,
    submit_payment,
)


@pytest.fixture
def plan(fee_structure, student, today):
    return setup_student_payment(student.id, 'instalment_wise', today=today)


def test_setup_counts_admission_fee_as_paid(plan):
    assert plan.total_amount_payable == Decimal('130000.00')
    assert plan.total_amount_paid == Decimal('10000.00')
    assert plan.total_amount_pending == Decimal('120000.00')
    assert plan.payment_status == 'partially_paid'
    assert plan.next_due_date.isoformat() == '2025-01-15'
    assert len(plan.payment_schedule['installments']) == 6


def test_record_payment_updates_totals(plan, student, today):
    tx = record_payment(student.id, 20000, 'upi', reference='UTR123', today=today)
    assert tx.verification_status == 'approved'
    assert plan.total_amount_paid == Decimal('30000.00')
    assert plan.next_due_date.isoformat() == '2025-02-15'
    assert plan.last_payment_date is not None
    assert plan.payment_schedule['installments'][0]['status'] == 'paid'


def test_record_payment_validation(plan, student, today):
    with pytest.raises(ValueError):
        record_payment(student.id, 0, 'upi', today=today)
    with pytest.raises(ValueError):
        record_payment(student.id, 100, 'bitcoin', today=today)
    with pytest.raises(ValueError):
        record_payment(student.id, 500000, 'cash', today=today)
    with pytest.raises(ValueError):
        record_payment(student.id, 100, 'cash', installment_number=42, today=today)


def test_plan_is_locked_after_payment(plan, student, today):
    record_payment(student.id, 20000, 'cash', today=today)
    with pytest.raises(PermissionError):
        calculate_payment_plan(student.id, 'one_shot', today=today)
    record = calculate_payment_plan(student.id, 'one_shot', force=True, today=today)
    assert record.payment_plan == 'one_shot'
    # Money already received carries over to the new plan
    assert record.total_amount_paid == Decimal('30000.00')


def test_dropped_out_student_cannot_get_a_plan(fee_structure, student, today):
    mark_dropped_out(student.id, 'Moved cities')
    with pytest.raises(PermissionError):
        setup_student_payment(student.id, 'one_shot', today=today)


def test_partial_review_splits_transaction(plan, student, today):
    tx = submit_payment(student.id, 20000, 'bank_transfer', reference='NEFT-1', today=today)
    assert tx.verification_status == 'verification_pending'
    assert plan.payment_status == 'partially_paid'
    assert plan.payment_schedule['summary']['status'] == 'verification_pending'

    with mail.record_messages() as outbox:
        result = review_transaction(tx.id, 'partial', approved_amount_value=15000, today=today)
    assert result['transaction']['verification_status'] == 'partially_approved'
    remainder = result['remainder_transaction']
    assert remainder['amount'] == 5000.0
    assert remainder['verification_status'] == 'verification_pending'
    assert remainder['partial_payment_sequence'] == 2
    assert remainder['parent_transaction_id'] == tx.id
    assert plan.total_amount_paid == Decimal('25000.00')
    assert len(outbox) == 1
    assert outbox[0].subject == 'Payment partially approved'


def test_review_rules(plan, student, today):
    tx = submit_payment(student.id, 20000, 'upi', today=today)
    with pytest.raises(ValueError):
        review_transaction(tx.id, 'partial', approved_amount_value=20000, today=today)
    with pytest.raises(ValueError):
        review_transaction(tx.id, 'reject', today=today)
    result = review_transaction(tx.id, 'reject', rejection_reason='Reference not found', today=today)
    assert result['transaction']['verification_status'] == 'rejected'
    assert plan.total_amount_paid == Decimal('10000.00')
    with pytest.raises(ValueError):
        review_transaction(tx.id, 'full', today=today)
    with pytest.raises(LookupError):
        review_transaction(99999, 'full', today=today)
    log = CommunicationLog.query.filter_by(message_type='payment_reject').one()
    assert log.status == 'sent'


def test_refresh_is_idempotent(plan, student, today):
    record_payment(student.id, 25000, 'cash', today=today)
    first = dict(plan.payment_schedule)
    refresh_student_payment(plan, today)
    refresh_student_payment(plan, today)
    assert plan.payment_schedule == first
    assert plan.total_amount_paid == Decimal('35000.00')


def test_scholarship_assignment_rebuilds_schedule(plan, cohort, student, today):
    scholarship = create_scholarship(cohort.id, {'name': 'Merit', 'amount_percentage': 10})
    record = assign_scholarship(student.id, scholarship.id, 5, today=today)
    assert record.scholarship_id == scholarship.id
    assert record.payment_schedule['net_program_fee'] == 102000.0
    assert record.total_amount_payable == Decimal('112000.00')
    with pytest.raises(ValueError):
        assign_scholarship(student.id, scholarship.id, 120, today=today)


def test_recalculate_keeps_payments(plan, cohort, student, today):
    record_payment(student.id, 20000, 'cash', today=today)
    save_fee_structure(cohort.id, {'total_program_fee': 150000})
    result = recalculate_cohort_schedules(cohort.id, today=today)
    assert result == {'updated': 1, 'errors': 0, 'failures': []}
    assert plan.total_amount_payable == Decimal('160000.00')
    assert plan.total_amount_paid == Decimal('30000.00')
    assert PaymentTransaction.query.count() == 1


def test_summary_and_export(plan, cohort, student, today):
    record_payment(student.id, 20000, 'cash', today=today)
    summary = cohort_payment_summary(cohort.id)
    assert summary['total_records'] == 1
    assert summary['total_collected'] == 30000.0
    assert summary['total_pending'] == 100000.0
    csv_text = export_payments_csv(cohort.id)
    assert csv_text.splitlines()[0].startswith('student_id,name,email,payment_plan')
    assert 'asha@example.com' in csv_text


def test_bulk_plan_assignment_reports_rows(fee_structure, cohort, student):
    add_student(cohort.id, {'first_name': 'Ravi', 'email': 'ravi@example.com'})
    csv_text = (
        'email,payment_plan,scholarship_name\n'
        'asha@example.com,sem_wise,\n'
        'ravi@example.com,monthly,\n'
        'ghost@example.com,one_shot,\n'
    )
    report = bulk_assign_plans(cohort.id, csv_text)
    assert report['processed'] == 3
    assert report['succeeded'] == 1
    assert [row['ok'] for row in report['rows']] == [True, False, False]


def test_submissions_cannot_exceed_balance_with_pending_proofs(plan, student, today):
    submit_payment(student.id, 100000, 'upi', reference='UTR-A', today=today)
    with pytest.raises(ValueError, match='outstanding balance'):
        submit_payment(student.id, 30000, 'upi', reference='UTR-B', today=today)
    submit_payment(student.id, 20000, 'upi', reference='UTR-C', today=today)
    assert PaymentTransaction.query.filter_by(verification_status='verification_pending').count() == 2


def test_non_numeric_amount_is_a_value_error(plan, student, today):
    with pytest.raises(ValueError, match='Invalid number'):
        record_payment(student.id, 'abc', 'cash', today=today)


def test_bulk_scholarship_assignment_reports_bad_rows(plan, cohort, student):
    create_scholarship(cohort.id, {'name': 'Merit', 'amount_percentage': 10})
    add_student(cohort.id, {'first_name': 'Ravi', 'email': 'ravi@example.com'})
    csv_text = (
        'email,scholarship_name,additional_discount_percentage\n'
        'asha@example.com,Merit,5\n'
        'ravi@example.com,Merit,ten\n'
        'ghost@example.com,Merit,\n'
        'asha@example.com,Platinum,\n'
    )
    report = bulk_assign_scholarships(cohort.id, csv_text)
    assert report['processed'] == 4
    assert report['succeeded'] == 1
    rows = report['rows']
    assert [row['row'] for row in rows] == [2, 3, 4, 5]
    assert rows[1]['error'] == "Invalid number: 'ten'"
    assert rows[3]['error'] == "Unknown scholarship 'Platinum'"
    assert plan.payment_schedule['net_program_fee'] == 102000.0
