from datetime import date

import pytest

from utils.payment_schedule import build_payment_schedule

TODAY = date(2025, 1, 10)

FEE = {
    'total_program_fee': 120000,
    'admission_fee': 10000,
    'number_of_semesters': 2,
    'instalments_per_semester': 3,
    'one_shot_discount_percentage': 10,
    'program_fee_includes_gst': True,
    'equal_scholarship_distribution': True,
}


def _amounts(schedule):
    return [inst['amount'] for inst in schedule['installments']]


def test_one_shot_applies_one_shot_discount():
    schedule = build_payment_schedule(FEE, 'one_shot', '2025-01-15', today=TODAY)
    assert schedule['net_program_fee'] == 108000.0
    assert schedule['one_shot_discount_amount'] == 12000.0
    assert schedule['scholarship_amount'] == 0.0
    assert schedule['total_amount'] == 118000.0
    assert len(schedule['installments']) == 1
    assert schedule['installments'][0]['due_date'] == '2025-01-15'


def test_one_shot_discount_ignored_for_other_plans():
    schedule = build_payment_schedule(FEE, 'sem_wise', '2025-01-15', today=TODAY)
    assert _amounts(schedule) == [60000.0, 60000.0]
    assert [i['due_date'] for i in schedule['installments']] == ['2025-01-15', '2025-07-15']
    assert schedule['total_amount'] == 130000.0


def test_instalment_wise_scholarship_spread_equally():
    schedule = build_payment_schedule(FEE, 'instalment_wise', '2025-01-15', scholarship_percentage=10, today=TODAY)
    assert _amounts(schedule) == [18000.0] * 6
    assert schedule['net_program_fee'] == 108000.0
    assert schedule['scholarship_amount'] == 12000.0
    assert [i['due_date'] for i in schedule['installments']] == [
        '2025-01-15', '2025-02-15', '2025-03-15', '2025-07-15', '2025-08-15', '2025-09-15',
    ]
    first = schedule['installments'][0]
    assert first['gst_amount'] == 2745.76
    assert first['base_amount'] + first['gst_amount'] == pytest.approx(18000.0)


def test_backwards_distribution_hits_last_instalments():
    fee = dict(FEE, equal_scholarship_distribution=False)
    schedule = build_payment_schedule(fee, 'instalment_wise', '2025-01-15', scholarship_percentage=30, today=TODAY)
    assert _amounts(schedule) == [20000.0, 20000.0, 20000.0, 20000.0, 4000.0, 0.0]
    assert schedule['installments'][-1]['status'] == 'waived'
    assert sum(_amounts(schedule)) == schedule['net_program_fee'] == 84000.0


def test_additional_discount_stacks_with_scholarship():
    schedule = build_payment_schedule(
        FEE, 'sem_wise', '2025-01-15', scholarship_percentage=20, additional_discount_percentage=5, today=TODAY,
    )
    assert schedule['discount_percentage'] == 25.0
    assert schedule['net_program_fee'] == 90000.0


def test_fee_quoted_without_gst_adds_it():
    fee = dict(FEE, program_fee_includes_gst=False)
    schedule = build_payment_schedule(fee, 'one_shot', '2025-01-15', gst_rate=18, today=TODAY)
    assert schedule['gross_program_fee'] == 141600.0
    assert schedule['net_program_fee'] == 127440.0


def test_custom_dates_override_generated():
    schedule = build_payment_schedule(
        FEE, 'sem_wise', '2025-01-15', custom_dates={'semester-2-instalment-0': '2025-06-01'}, today=TODAY,
    )
    assert [i['due_date'] for i in schedule['installments']] == ['2025-01-15', '2025-06-01']


def test_weighted_split():
    fee = dict(FEE, instalment_split='weighted', number_of_semesters=1)
    schedule = build_payment_schedule(fee, 'instalment_wise', '2025-01-15', today=TODAY)
    assert _amounts(schedule) == [48000.0, 48000.0, 24000.0]


def test_new_schedule_statuses():
    schedule = build_payment_schedule(FEE, 'instalment_wise', '2025-01-15', today=TODAY)
    statuses = [i['status'] for i in schedule['installments']]
    assert statuses[0] == 'pending'
    assert statuses[1:] == ['pending_10_plus_days'] * 5
    assert schedule['summary']['status'] == 'pending'
    assert schedule['summary']['next_due_date'] == '2025-01-15'


@pytest.mark.parametrize('bad', [
    {'total_program_fee': 0},
    {'number_of_semesters': 0},
    {'instalments_per_semester': 13},
])
def test_invalid_structure_rejected(bad):
    with pytest.raises(ValueError):
        build_payment_schedule(dict(FEE, **bad), 'instalment_wise', '2025-01-15', today=TODAY)


def test_unknown_plan_and_bad_percentages_rejected():
    with pytest.raises(ValueError):
        build_payment_schedule(FEE, 'monthly', '2025-01-15', today=TODAY)
    with pytest.raises(ValueError):
        build_payment_schedule(FEE, 'one_shot', '2025-01-15', scholarship_percentage=120, today=TODAY)
    with pytest.raises(ValueError):
        build_payment_schedule(FEE, 'one_shot', None, today=TODAY)


def test_small_scholarship_over_many_instalments_stays_non_negative():
    fee = dict(FEE, total_program_fee=100, admission_fee=0, number_of_semesters=12, instalments_per_semester=3)
    schedule = build_payment_schedule(fee, 'instalment_wise', '2025-01-15', scholarship_percentage=1, today=TODAY)
    installments = schedule['installments']
    assert len(installments) == 36
    assert min(inst['scholarship_amount'] for inst in installments) >= 0
    assert all(inst['amount'] <= inst['gross_amount'] for inst in installments)
    assert sum(_amounts(schedule)) == pytest.approx(99.0)
