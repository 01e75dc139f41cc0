from datetime import date, datetime

import pytest

from utils.payment_dates import (
    ONE_SHOT_KEY,
    add_months,
    default_date_keys,
    normalize_plan_dates,
    parse_date,
    resolve_due_dates,
)


def test_parse_date_formats():
    assert parse_date('2025-03-04') == date(2025, 3, 4)
    assert parse_date('04/03/2025') == date(2025, 3, 4)
    assert parse_date(datetime(2025, 3, 4, 10, 30)) == date(2025, 3, 4)
    assert parse_date('') is None
    with pytest.raises(ValueError):
        parse_date('not a date')


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)


def test_default_dates_per_plan():
    start = date(2025, 1, 15)
    assert default_date_keys('one_shot', start, 2, 3) == {ONE_SHOT_KEY: start}
    sem = default_date_keys('sem_wise', start, 2, 3)
    assert sem == {'semester-1-instalment-0': start, 'semester-2-instalment-0': date(2025, 7, 15)}
    inst = default_date_keys('instalment_wise', start, 2, 3)
    assert len(inst) == 6
    assert inst['semester-1-instalment-2'] == date(2025, 3, 15)
    assert inst['semester-2-instalment-0'] == date(2025, 7, 15)
    with pytest.raises(ValueError):
        default_date_keys('monthly', start, 1, 1)


def test_nested_instalment_numbers_are_one_based():
    saved = {'semesters': {'semester_1': {'installments': {'installment_1': '2025-02-01'}}}}
    assert normalize_plan_dates(saved, 'instalment_wise') == {'semester-1-instalment-0': date(2025, 2, 1)}


def test_one_shot_program_fee_due_date():
    assert normalize_plan_dates({'program_fee_due_date': '2025-02-20'}, 'one_shot') == {
        ONE_SHOT_KEY: date(2025, 2, 20)
    }


def test_custom_dates_win_over_saved_and_generated():
    start = date(2025, 1, 15)
    saved = {'semester-1-instalment-0': '2025-01-20', 'semester-1-instalment-1': '2025-02-20'}
    custom = {'semester-1-instalment-1': '2025-02-25', 'semester-9-instalment-0': '2030-01-01'}
    resolved = resolve_due_dates('instalment_wise', start, 1, 3, saved=saved, custom=custom)
    assert resolved == {
        'semester-1-instalment-0': date(2025, 1, 20),
        'semester-1-instalment-1': date(2025, 2, 25),
        'semester-1-instalment-2': date(2025, 3, 15),
    }
