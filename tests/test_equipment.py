from datetime import date, datetime, timedelta

import pytest

from models import DamageReport, EquipmentBorrowing
from utils.cohorts import add_student, mark_dropped_out
from utils.equipment import (
    blacklist_student,
    create_category,
    create_equipment,
    extend_borrowing,
    flag_overdue_borrowings,
    inventory_stats,
    issue_equipment,
    list_blacklist,
    overdue_borrowings,
    overdue_days,
    remove_from_blacklist,
    report_damage,
    return_equipment,
    return_statistics,
    set_availability,
    student_history,
    update_damage_status,
)
from utils.validation import ValidationError

TODAY = date.today()


@pytest.fixture
def laptop(app):
    category = create_category('Laptops')
    return create_equipment({'name': 'ThinkPad T14', 'serial_number': 'TP-001', 'category_id': category.id})


def _issue(student, item, days=7):
    return issue_equipment(student.id, [item.id], (TODAY + timedelta(days=days)).isoformat())[0]


def test_overdue_days_rounds_up():
    expected = date(2025, 3, 1)
    assert overdue_days(expected, datetime(2025, 2, 28, 18, 0)) == 0
    assert overdue_days(expected, datetime(2025, 3, 1, 0, 0)) == 0
    assert overdue_days(expected, datetime(2025, 3, 1, 9, 0)) == 1
    assert overdue_days(expected, datetime(2025, 3, 4, 0, 0)) == 3


def test_issue_marks_equipment_borrowed(student, laptop):
    borrowing = _issue(student, laptop)
    assert borrowing.status == 'active'
    assert borrowing.issue_condition == 'good'
    assert laptop.availability_status == 'borrowed'
    with pytest.raises(ValueError):
        _issue(student, laptop)


def test_issue_rules(cohort, student, laptop):
    with pytest.raises(ValidationError):
        issue_equipment(student.id, [laptop.id], TODAY.isoformat())
    blacklist_student(student.id, 'Lost a projector')
    with pytest.raises(PermissionError):
        _issue(student, laptop)
    remove_from_blacklist(student.id)
    assert list_blacklist() == []
    mark_dropped_out(student.id, 'Left')
    with pytest.raises(PermissionError):
        _issue(student, laptop)


def test_expired_blacklist_does_not_block(student, laptop):
    entry = blacklist_student(student.id, 'Late returns', expires_at=(TODAY - timedelta(days=1)).isoformat())
    assert entry.expires_at < datetime.utcnow()
    assert _issue(student, laptop).status == 'active'


def test_late_damaged_return(student, laptop):
    borrowing = _issue(student, laptop)
    returned_at = datetime.combine(borrowing.expected_return_date, datetime.min.time()) + timedelta(days=2, hours=3)
    result = return_equipment(borrowing.id, 'damaged', notes='Cracked hinge', returned_at=returned_at)
    assert result['return']['overdue_days'] == 3
    assert result['warnings'][0] == 'Equipment was returned 3 day(s) late'
    assert result['equipment']['availability_status'] == 'maintenance'
    assert result['equipment']['condition_status'] == 'damaged'
    assert result['damage_report']['status'] == 'reported'
    with pytest.raises(ValueError):
        return_equipment(borrowing.id, 'good')

    report = DamageReport.query.one()
    with pytest.raises(ValueError):
        update_damage_status(report.id, 'repair_completed')
    update_damage_status(report.id, 'under_review')
    update_damage_status(report.id, 'repair_approved')
    update_damage_status(report.id, 'repair_completed', notes='Hinge replaced')
    assert laptop.availability_status == 'available'
    assert laptop.condition_status == 'good'


def test_return_validation(student, laptop):
    borrowing = _issue(student, laptop)
    with pytest.raises(ValidationError):
        return_equipment(borrowing.id, 'shiny')
    with pytest.raises(ValidationError):
        return_equipment(borrowing.id, 'good', notes='x' * 1001)
    result = return_equipment(borrowing.id, 'excellent')
    assert result['warnings'] == []
    assert laptop.availability_status == 'available'
    stats = return_statistics()
    assert stats['total_returns'] == 1
    assert stats['on_time_returns'] == 1
    assert stats['by_condition']['excellent'] == 1


def test_overdue_tracking_and_extension(student, laptop):
    borrowing = _issue(student, laptop)
    later = TODAY + timedelta(days=10)
    assert overdue_borrowings(later) == [borrowing]
    assert flag_overdue_borrowings(later) == 1
    assert borrowing.status == 'overdue'
    with pytest.raises(ValidationError):
        extend_borrowing(borrowing.id, borrowing.expected_return_date.isoformat())
    extend_borrowing(borrowing.id, (TODAY + timedelta(days=30)).isoformat(), 'Project work')
    assert borrowing.status == 'active'
    assert overdue_borrowings(later) == []


def test_status_changes_and_stats(student, laptop):
    spare = create_equipment({'name': 'Projector', 'serial_number': 'PJ-1'})
    _issue(student, laptop)
    with pytest.raises(PermissionError):
        set_availability(laptop.id, 'retired')
    set_availability(spare.id, 'retired', notes='End of life')
    stats = inventory_stats()
    assert stats['borrowed'] == 1
    assert stats['retired'] == 1
    assert stats['total'] == 2
    with pytest.raises(ValidationError):
        create_equipment({'name': 'Dup', 'serial_number': 'PJ-1'})
    history = student_history(student.id)
    assert history[0]['equipment_name'] == 'ThinkPad T14'
    assert EquipmentBorrowing.query.count() == 1


def test_repair_while_on_loan_keeps_item_borrowed(cohort, student, laptop):
    borrowing = _issue(student, laptop)
    report = report_damage(laptop.id, 'Sticky keys', borrowing_id=borrowing.id)
    assert laptop.availability_status == 'borrowed'
    update_damage_status(report.id, 'under_review')
    update_damage_status(report.id, 'repair_approved')
    update_damage_status(report.id, 'repair_completed')
    assert laptop.availability_status == 'borrowed'
    assert laptop.condition_status == 'good'

    other = add_student(cohort.id, {'first_name': 'Ravi', 'last_name': 'Rao', 'email': 'ravi@example.com'})
    with pytest.raises(ValueError):
        _issue(other, laptop)
    assert EquipmentBorrowing.query.count() == 1


def test_replacement_needs_item_back_first(student, laptop):
    borrowing = _issue(student, laptop)
    report = report_damage(laptop.id, 'Screen cracked', borrowing_id=borrowing.id)
    update_damage_status(report.id, 'under_review')
    with pytest.raises(PermissionError):
        update_damage_status(report.id, 'replacement_approved')
    assert report.status == 'under_review'

    return_equipment(borrowing.id, 'damaged')
    update_damage_status(report.id, 'replacement_approved')
    assert laptop.availability_status == 'decommissioned'


def test_return_keeps_decommissioned_item_out_of_circulation(student, laptop):
    borrowing = _issue(student, laptop)
    laptop.availability_status = 'decommissioned'
    laptop.condition_status = 'decommissioned'
    result = return_equipment(borrowing.id, 'good')
    assert result['equipment']['availability_status'] == 'decommissioned'
    assert result['equipment']['condition_status'] == 'decommissioned'
    assert result['borrowing']['status'] == 'returned'
