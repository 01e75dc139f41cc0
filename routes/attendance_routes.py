from __future__ import annotations

from flask import Blueprint, Response, request, session

from routes import arg_int, current_user_id, fail, json_endpoint, ok, payload, to_int
from utils import role_required
from utils.attendance import (
    bulk_mark_attendance,
    calendar_month,
    create_holiday,
    epic_stats,
    export_attendance_csv,
    leaderboard,
    list_holidays,
    mark_attendance,
    publish_holiday,
    session_stats,
    student_stats,
    student_streaks,
)

attendance_bp = Blueprint("attendance", __name__, url_prefix="/api/attendance")

PREFIX = "/cohorts/<int:cohort_id>/epics/<int:epic_id>"


@attendance_bp.route(PREFIX + "/mark", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def attendance_mark(cohort_id: int, epic_id: int):
    data = payload()
    record = mark_attendance(
        cohort_id,
        epic_id,
        data.get("session_date"),
        to_int(data.get("session_number", 1), "session_number"),
        to_int(data.get("student_id"), "student_id"),
        data.get("status"),
        absence_type=data.get("absence_type"),
        reason=data.get("reason"),
        user_id=current_user_id(),
    )
    return ok(record=record.to_dict())


@attendance_bp.route(PREFIX + "/bulk", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def attendance_bulk(cohort_id: int, epic_id: int):
    data = payload()
    entries = data.get("entries") or []
    if not entries:
        return fail("No attendance entries supplied", 400)
    result = bulk_mark_attendance(
        cohort_id,
        epic_id,
        data.get("session_date"),
        to_int(data.get("session_number", 1), "session_number"),
        entries,
        user_id=current_user_id(),
    )
    return ok(**result)


@attendance_bp.route(PREFIX + "/session", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def attendance_session(cohort_id: int, epic_id: int):
    stats = session_stats(cohort_id, epic_id, request.args.get("date"), arg_int("session_number", 1))
    return ok(stats=stats)


@attendance_bp.route(PREFIX + "/stats", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def attendance_epic_stats(cohort_id: int, epic_id: int):
    stats = epic_stats(cohort_id, epic_id, request.args.get("from"), request.args.get("to"))
    return ok(stats=stats)


@attendance_bp.route(PREFIX + "/students/<int:student_id>", methods=["GET"])
@role_required()
@json_endpoint
def attendance_student(cohort_id: int, epic_id: int, student_id: int):
    if session.get("role") == "student" and session.get("student_id") != student_id:
        return fail("Forbidden", 403)
    stats = student_stats(cohort_id, epic_id, student_id, request.args.get("from"), request.args.get("to"))
    return ok(stats=stats)


@attendance_bp.route(PREFIX + "/streaks", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def attendance_streaks(cohort_id: int, epic_id: int):
    return ok(**student_streaks(cohort_id, epic_id))


@attendance_bp.route(PREFIX + "/leaderboard", methods=["GET"])
@role_required()
@json_endpoint
def attendance_leaderboard(cohort_id: int, epic_id: int):
    limit = min(max(arg_int("limit", 50), 1), 200)
    offset = max(arg_int("offset", 0), 0)
    return ok(**leaderboard(cohort_id, epic_id, limit=limit, offset=offset))


@attendance_bp.route(PREFIX + "/calendar", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def attendance_calendar(cohort_id: int, epic_id: int):
    month = request.args.get("month") or ""
    return ok(calendar=calendar_month(cohort_id, epic_id, month))


@attendance_bp.route(PREFIX + "/export.csv", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def attendance_export(cohort_id: int, epic_id: int):
    return Response(
        export_attendance_csv(cohort_id, epic_id, request.args.get("from"), request.args.get("to")),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=attendance_{cohort_id}_{epic_id}.csv"},
    )


@attendance_bp.route("/holidays", methods=["GET"])
@role_required()
@json_endpoint
def holidays_index():
    status = request.args.get("status")
    if session.get("role") == "student":
        status = "published"
    rows = list_holidays(arg_int("cohort_id"), status)
    return ok(holidays=[h.to_dict() for h in rows])


@attendance_bp.route("/holidays", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def holidays_create():
    return ok(201, holiday=create_holiday(payload()).to_dict())


@attendance_bp.route("/holidays/<int:holiday_id>/publish", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def holidays_publish(holiday_id: int):
    return ok(holiday=publish_holiday(holiday_id).to_dict())
