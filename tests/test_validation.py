import pytest

from utils.validation import (
    is_valid_email,
    is_valid_phone,
    is_valid_postal_code,
    validate_fee_structure,
    validate_scholarships,
)


@pytest.mark.parametrize('phone, ok', [
    ('9876543210', True),
    ('+91 98765-43210', True),
    ('(987) 654 3210', True),
    ('5876543210', False),
    ('98765', False),
    ('+44 9876543210', False),
])
def test_phone_numbers(phone, ok):
    assert is_valid_phone(phone) is ok


def test_postal_codes_and_email():
    assert is_valid_postal_code('560001')
    assert not is_valid_postal_code('060001')
    assert not is_valid_postal_code('56001')
    assert is_valid_email('a.b@example.co.in')
    assert not is_valid_email('a@b')
    assert not is_valid_email('')


def test_fee_structure_errors():
    errors = validate_fee_structure({
        'total_program_fee': 0,
        'admission_fee': -1,
        'number_of_semesters': 2.5,
        'instalments_per_semester': 3,
        'one_shot_discount_percentage': 101,
        'instalment_split': 'random',
    })
    assert set(errors) == {
        'total_program_fee', 'admission_fee', 'number_of_semesters',
        'one_shot_discount_percentage', 'instalment_split',
    }
    assert validate_fee_structure({
        'total_program_fee': 100000, 'admission_fee': 0,
        'number_of_semesters': 2, 'instalments_per_semester': 3,
    }) == {}


def test_scholarship_bands_must_not_overlap():
    bands = [
        {'name': 'Gold', 'amount_percentage': 30, 'start_percentage': 90, 'end_percentage': 100},
        {'name': 'Silver', 'amount_percentage': 20, 'start_percentage': 80, 'end_percentage': 95},
    ]
    errors = validate_scholarships(bands)
    assert errors == ['Silver and Gold have overlapping eligibility ranges']
    assert validate_scholarships([{'name': '', 'amount_percentage': 0, 'start_percentage': 10, 'end_percentage': 5}]) == [
        'Scholarship 1: name is required',
        'Scholarship 1: amount percentage must be greater than 0 and at most 100',
        'Scholarship 1: start percentage must be less than end percentage',
    ]
