from datetime import date

import pytest

from models import AttendanceRecord
from utils.attendance import (
    attendance_breakdown,
    bulk_mark_attendance,
    calendar_month,
    create_holiday,
    current_streak,
    epic_stats,
    epic_status,
    export_attendance_csv,
    leaderboard,
    longest_streak,
    mark_attendance,
    publish_holiday,
    rank_entries,
    session_stats,
    student_stats,
)
from utils.cohorts import add_student
from utils.validation import ValidationError


def _rec(day, status, absence_type=None, session_number=1):
    return {'session_date': date(2025, 1, day), 'session_number': session_number,
            'status': status, 'absence_type': absence_type}


def test_breakdown_counts_exempted_as_attended():
    records = [_rec(1, 'present'), _rec(2, 'late'), _rec(3, 'absent', 'exempted'), _rec(4, 'absent', 'informed')]
    breakdown = attendance_breakdown(records)
    assert breakdown['attended'] == 3
    assert breakdown['absent'] == 1
    assert breakdown['percentage'] == 75.0
    assert attendance_breakdown([])['percentage'] == 0.0


def test_streaks_use_chronological_order():
    records = [_rec(5, 'present'), _rec(1, 'present'), _rec(2, 'present'), _rec(3, 'absent'), _rec(4, 'late')]
    assert current_streak(records) == 2
    assert longest_streak(records) == 2
    assert current_streak([_rec(1, 'present'), _rec(2, 'absent', 'uninformed')]) == 0


def test_epic_status_bands():
    assert epic_status(92)['text'] == 'Excellent'
    assert epic_status(75)['text'] == 'Good'
    assert epic_status(60)['text'] == 'Fair'
    assert epic_status(59.99)['text'] == 'Needs Attention'


def test_rank_entries_dense_ranks_and_medals():
    entries = [
        {'attendance_percentage': 80.0, 'current_streak': 1},
        {'attendance_percentage': 100.0, 'current_streak': 3},
        {'attendance_percentage': 100.0, 'current_streak': 3},
        {'attendance_percentage': 90.0, 'current_streak': 2},
        {'attendance_percentage': 50.0, 'current_streak': 0},
    ]
    ranked = rank_entries(entries)
    assert [e['rank'] for e in ranked] == [1, 1, 2, 3, 4]
    assert ranked[0]['badge'] == ranked[1]['badge'] == '🥇'
    assert ranked[3]['badge'] == '🥉'
    assert ranked[4]['badge'] is None


@pytest.fixture
def epic(cohort):
    return cohort.epics[0]


def test_mark_attendance_upserts(cohort, epic, student):
    first = mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'absent')
    assert first.absence_type == 'uninformed'
    again = mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'present')
    assert again.id == first.id
    assert again.absence_type is None
    assert AttendanceRecord.query.count() == 1


def test_mark_attendance_validation(cohort, epic, student):
    with pytest.raises(ValidationError):
        mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'sleeping')
    with pytest.raises(ValidationError):
        mark_attendance(cohort.id, epic.id, '2025-01-20', 3, student.id, 'present')
    with pytest.raises(ValidationError):
        mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'absent', absence_type='sick')
    with pytest.raises(LookupError):
        mark_attendance(cohort.id, epic.id, '2025-01-20', 1, 9999, 'present')


def test_session_and_epic_stats(cohort, epic, student):
    other = add_student(cohort.id, {'first_name': 'Ravi', 'last_name': 'Rao', 'email': 'ravi@example.com'})
    assert session_stats(cohort.id, epic.id, '2025-01-20', 1)['is_cancelled'] is True

    bulk_mark_attendance(cohort.id, epic.id, '2025-01-20', 1, [
        {'student_id': student.id, 'status': 'present'},
        {'student_id': other.id, 'status': 'absent', 'absence_type': 'uninformed'},
    ])
    bulk_mark_attendance(cohort.id, epic.id, '2025-01-21', 1, [
        {'student_id': student.id, 'status': 'late'},
        {'student_id': other.id, 'status': 'present'},
    ])
    stats = session_stats(cohort.id, epic.id, '2025-01-20', 1)
    assert stats['is_cancelled'] is False
    assert stats['attendance_percentage'] == 50.0

    summary = epic_stats(cohort.id, epic.id)
    assert summary['total_sessions'] == 2
    assert summary['attendance_breakdown']['percentage'] == 75.0
    assert summary['absence_breakdown']['uninformed'] == 1
    assert summary['students_with_perfect_attendance'] == 1
    assert summary['top_streak']['value'] == 2
    assert summary['top_streak']['student_names'] == ['Asha Nair']
    assert summary['epic_status']['text'] == 'Good'

    board = leaderboard(cohort.id, epic.id, limit=1)
    assert board['total_students'] == 2
    assert board['entries'][0]['student']['id'] == student.id
    assert student_stats(cohort.id, epic.id, other.id)['rank'] == 2


def test_calendar_month_includes_published_holidays(cohort, epic, student):
    mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'present')
    mark_attendance(cohort.id, epic.id, '2025-01-20', 2, student.id, 'absent')
    mark_attendance(cohort.id, epic.id, '2025-01-22', 1, student.id, 'present')
    holiday = create_holiday({'title': 'Republic Day', 'date': '2025-01-26'})
    create_holiday({'title': 'Draft day off', 'date': '2025-01-27'})
    publish_holiday(holiday.id)

    month = calendar_month(cohort.id, epic.id, '2025-01')
    days = {d['date']: d for d in month['days']}
    assert days['2025-01-20']['overall_attendance'] == 50.0
    assert days['2025-01-26']['is_holiday'] is True
    assert days['2025-01-27']['is_holiday'] is False
    assert month['monthly_stats']['days_with_attendance'] == 2
    assert month['monthly_stats']['average_attendance'] == 75.0
    with pytest.raises(ValidationError):
        calendar_month(cohort.id, epic.id, 'January')


def test_export_csv(cohort, epic, student):
    mark_attendance(cohort.id, epic.id, '2025-01-20', 1, student.id, 'absent', absence_type='informed', reason='Fever')
    lines = export_attendance_csv(cohort.id, epic.id).splitlines()
    assert lines[0] == 'session_date,session_number,student_name,email,status,absence_type,reason'
    assert lines[1] == '2025-01-20,1,Asha Nair,asha@example.com,absent,informed,Fever'
