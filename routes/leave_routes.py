from __future__ import annotations

from flask import Blueprint, request, session

from routes import arg_int, current_user_id, fail, json_endpoint, ok, payload, to_int
from utils import role_required
from utils.leave import (
    apply_for_leave,
    approve_leave,
    delete_leave,
    leave_stats,
    list_leave,
    reject_leave,
)

leave_bp = Blueprint("leave", __name__, url_prefix="/api/leave")


def _is_student() -> bool:
    return session.get("role") == "student"


@leave_bp.route("", methods=["POST"])
@role_required("student", "program_manager")
@json_endpoint
def leave_apply():
    data = payload()
    if _is_student():
        student_id = session.get("student_id")
        if not student_id:
            return fail("This account is not linked to a student", 403)
    else:
        student_id = to_int(data.get("student_id"), "student_id")
    application = apply_for_leave(student_id, data)
    return ok(201, application=application.to_dict())


@leave_bp.route("", methods=["GET"])
@role_required("student", "program_manager")
@json_endpoint
def leave_index():
    student_id = session.get("student_id") if _is_student() else arg_int("student_id")
    rows = list_leave(cohort_id=arg_int("cohort_id"), student_id=student_id, status=request.args.get("status"))
    return ok(applications=[a.to_dict() for a in rows])


@leave_bp.route("/pending", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def leave_pending():
    rows = list_leave(cohort_id=arg_int("cohort_id"), status="pending")
    return ok(applications=[a.to_dict() for a in rows])


@leave_bp.route("/stats", methods=["GET"])
@role_required("program_manager")
@json_endpoint
def leave_statistics():
    return ok(stats=leave_stats(arg_int("cohort_id")))


@leave_bp.route("/<int:application_id>/approve", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def leave_approve(application_id: int):
    result = approve_leave(application_id, user_id=current_user_id(), notes=payload().get("notes"))
    return ok(**result)


@leave_bp.route("/<int:application_id>/reject", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def leave_reject(application_id: int):
    application = reject_leave(application_id, payload().get("rejection_reason") or "", user_id=current_user_id())
    return ok(application=application.to_dict())


@leave_bp.route("/<int:application_id>", methods=["DELETE"])
@role_required("student", "program_manager")
@json_endpoint
def leave_delete(application_id: int):
    delete_leave(application_id, student_id=session.get("student_id") if _is_student() else None)
    return ok()
