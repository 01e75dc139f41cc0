from __future__ import annotations

from flask import Blueprint, request, session

from routes import current_user_id, fail, json_endpoint, ok, payload
from utils import role_required
from utils.cohorts import (
    add_epic,
    add_student,
    bulk_upload_students,
    cohort_overview,
    create_cohort,
    delete_cohort,
    get_cohort,
    list_cohorts,
    list_students,
    mark_dropped_out,
    reactivate_student,
    set_active_epic,
    student_profile,
    update_cohort,
    update_student,
)
from utils.student_payments import get_student

cohort_bp = Blueprint("cohort", __name__, url_prefix="/api/cohorts")

MANAGERS = ("program_manager",)


@cohort_bp.route("", methods=["GET"])
@role_required("program_manager", "fee_collector", "equipment_manager")
@json_endpoint
def cohorts_index():
    return ok(cohorts=list_cohorts())


@cohort_bp.route("", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def cohorts_create():
    cohort = create_cohort(payload())
    return ok(201, cohort=cohort.to_dict())


@cohort_bp.route("/<int:cohort_id>", methods=["GET"])
@role_required("program_manager", "fee_collector", "equipment_manager")
@json_endpoint
def cohorts_show(cohort_id: int):
    cohort = get_cohort(cohort_id)
    data = cohort_overview(cohort)
    data["epics"] = [epic.to_dict() for epic in cohort.epics]
    return ok(cohort=data)


@cohort_bp.route("/<int:cohort_id>", methods=["PUT", "PATCH"])
@role_required(*MANAGERS)
@json_endpoint
def cohorts_update(cohort_id: int):
    return ok(cohort=update_cohort(cohort_id, payload()).to_dict())


@cohort_bp.route("/<int:cohort_id>", methods=["DELETE"])
@role_required(*MANAGERS)
@json_endpoint
def cohorts_delete(cohort_id: int):
    delete_cohort(cohort_id)
    return ok()


@cohort_bp.route("/<int:cohort_id>/epics", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def epics_create(cohort_id: int):
    return ok(201, epic=add_epic(cohort_id, payload()).to_dict())


@cohort_bp.route("/<int:cohort_id>/epics/<int:epic_id>/activate", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def epics_activate(cohort_id: int, epic_id: int):
    return ok(epic=set_active_epic(cohort_id, epic_id).to_dict())


@cohort_bp.route("/<int:cohort_id>/students", methods=["GET"])
@role_required("program_manager", "fee_collector", "equipment_manager")
@json_endpoint
def students_index(cohort_id: int):
    students = list_students(cohort_id, status=request.args.get("status"), search=request.args.get("q"))
    return ok(students=[s.to_dict() for s in students])


@cohort_bp.route("/<int:cohort_id>/students", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def students_create(cohort_id: int):
    return ok(201, student=add_student(cohort_id, payload()).to_dict())


@cohort_bp.route("/<int:cohort_id>/students/upload", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def students_upload(cohort_id: int):
    upload = request.files.get("file")
    if upload is not None:
        csv_text = upload.read().decode("utf-8-sig")
    else:
        csv_text = payload().get("csv") or ""
    if not csv_text.strip():
        return fail("Upload a CSV file", 400)
    return ok(report=bulk_upload_students(cohort_id, csv_text))


@cohort_bp.route("/students/<int:student_id>", methods=["GET"])
@role_required()
@json_endpoint
def students_show(student_id: int):
    if session.get("role") == "student" and session.get("student_id") != student_id:
        return fail("Forbidden", 403)
    return ok(student=student_profile(get_student(student_id)))


@cohort_bp.route("/students/<int:student_id>", methods=["PUT", "PATCH"])
@role_required(*MANAGERS)
@json_endpoint
def students_update(student_id: int):
    return ok(student=update_student(student_id, payload()).to_dict())


@cohort_bp.route("/students/<int:student_id>/dropout", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def students_dropout(student_id: int):
    student = mark_dropped_out(student_id, payload().get("reason"), user_id=current_user_id())
    return ok(student=student.to_dict())


@cohort_bp.route("/students/<int:student_id>/reactivate", methods=["POST"])
@role_required(*MANAGERS)
@json_endpoint
def students_reactivate(student_id: int):
    return ok(student=reactivate_student(student_id).to_dict())
