from __future__ import annotations

from flask import Blueprint, Response, request, session

from routes import arg_int, current_user_id, fail, json_endpoint, ok, payload, to_int
from utils import role_required
from utils.fee_structures import (
    create_scholarship,
    delete_custom_structure,
    delete_scholarship,
    get_fee_structure,
    list_scholarships,
    save_fee_structure,
    update_scholarship,
)
from utils.notify import send_payment_reminders
from utils.student_payments import (
    assign_scholarship,
    bulk_assign_plans,
    bulk_assign_scholarships,
    calculate_payment_plan,
    cohort_payment_summary,
    export_payments_csv,
    get_student_payment,
    pending_verifications,
    preview_payment_schedule,
    record_payment,
    recalculate_cohort_schedules,
    review_transaction,
    submit_payment,
)

fee_bp = Blueprint("fee", __name__, url_prefix="/api/fees")

FEE_STAFF = ("program_manager", "fee_collector")


def _optional_int(data: dict, name: str):
    value = data.get(name)
    if value in (None, ""):
        return None
    return to_int(value, name)


def _csv_body() -> str:
    upload = request.files.get("file")
    if upload is not None:
        return upload.read().decode("utf-8-sig")
    return payload().get("csv") or ""


def _own_student(student_id: int) -> bool:
    return session.get("role") != "student" or session.get("student_id") == student_id


# --------------------------
# Fee structures and scholarships
# --------------------------

@fee_bp.route("/cohorts/<int:cohort_id>/structure", methods=["GET"])
@role_required(*FEE_STAFF)
@json_endpoint
def structure_show(cohort_id: int):
    structure = get_fee_structure(cohort_id, arg_int("student_id"), required=False)
    return ok(structure=structure.to_dict() if structure else None)


@fee_bp.route("/cohorts/<int:cohort_id>/structure", methods=["PUT", "POST"])
@role_required("program_manager")
@json_endpoint
def structure_save(cohort_id: int):
    structure = save_fee_structure(cohort_id, payload(), user_id=current_user_id())
    return ok(structure=structure.to_dict())


@fee_bp.route("/cohorts/<int:cohort_id>/students/<int:student_id>/structure", methods=["PUT", "POST"])
@role_required("program_manager")
@json_endpoint
def custom_structure_save(cohort_id: int, student_id: int):
    structure = save_fee_structure(cohort_id, payload(), student_id=student_id, user_id=current_user_id())
    return ok(structure=structure.to_dict())


@fee_bp.route("/cohorts/<int:cohort_id>/students/<int:student_id>/structure", methods=["DELETE"])
@role_required("program_manager")
@json_endpoint
def custom_structure_delete(cohort_id: int, student_id: int):
    delete_custom_structure(cohort_id, student_id)
    return ok()


@fee_bp.route("/cohorts/<int:cohort_id>/scholarships", methods=["GET"])
@role_required(*FEE_STAFF)
@json_endpoint
def scholarships_index(cohort_id: int):
    return ok(scholarships=[s.to_dict() for s in list_scholarships(cohort_id)])


@fee_bp.route("/cohorts/<int:cohort_id>/scholarships", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def scholarships_create(cohort_id: int):
    return ok(201, scholarship=create_scholarship(cohort_id, payload()).to_dict())


@fee_bp.route("/scholarships/<int:scholarship_id>", methods=["PUT", "PATCH"])
@role_required("program_manager")
@json_endpoint
def scholarships_update(scholarship_id: int):
    return ok(scholarship=update_scholarship(scholarship_id, payload()).to_dict())


@fee_bp.route("/scholarships/<int:scholarship_id>", methods=["DELETE"])
@role_required("program_manager")
@json_endpoint
def scholarships_delete(scholarship_id: int):
    delete_scholarship(scholarship_id)
    return ok()


@fee_bp.route("/students/<int:student_id>/scholarship", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def scholarship_assign(student_id: int):
    data = payload()
    record = assign_scholarship(
        student_id,
        _optional_int(data, "scholarship_id"),
        data.get("additional_discount_percentage") or 0,
        user_id=current_user_id(),
    )
    return ok(payment=record.to_dict() if record else None)


@fee_bp.route("/cohorts/<int:cohort_id>/scholarships/bulk", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def scholarships_bulk(cohort_id: int):
    csv_text = _csv_body()
    if not csv_text.strip():
        return fail("Upload a CSV file", 400)
    return ok(report=bulk_assign_scholarships(cohort_id, csv_text, user_id=current_user_id()))


# --------------------------
# Payment plans
# --------------------------

@fee_bp.route("/cohorts/<int:cohort_id>/preview", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def schedule_preview(cohort_id: int):
    data = payload()
    schedule = preview_payment_schedule(
        cohort_id,
        data.get("payment_plan") or "",
        scholarship_id=_optional_int(data, "scholarship_id"),
        additional_discount_percentage=data.get("additional_discount_percentage") or 0,
        student_id=_optional_int(data, "student_id"),
        custom_dates=data.get("custom_dates"),
    )
    return ok(schedule=schedule)


@fee_bp.route("/students/<int:student_id>/plan", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def plan_setup(student_id: int):
    data = payload()
    record = calculate_payment_plan(
        student_id,
        data.get("payment_plan") or "",
        scholarship_id=_optional_int(data, "scholarship_id"),
        additional_discount_percentage=data.get("additional_discount_percentage"),
        custom_dates=data.get("custom_dates"),
        force=bool(data.get("force")),
        user_id=current_user_id(),
    )
    return ok(payment=record.to_dict())


@fee_bp.route("/students/<int:student_id>/payment", methods=["GET"])
@role_required()
@json_endpoint
def payment_show(student_id: int):
    if not _own_student(student_id):
        return fail("Forbidden", 403)
    record = get_student_payment(student_id)
    if record is None:
        return fail("No payment plan has been set up for this student", 404)
    data = record.to_dict()
    data["transactions"] = [tx.to_dict() for tx in record.transactions]
    return ok(payment=data)


@fee_bp.route("/cohorts/<int:cohort_id>/plans/bulk", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def plans_bulk(cohort_id: int):
    csv_text = _csv_body()
    if not csv_text.strip():
        return fail("Upload a CSV file", 400)
    return ok(report=bulk_assign_plans(cohort_id, csv_text, user_id=current_user_id()))


@fee_bp.route("/cohorts/<int:cohort_id>/recalculate", methods=["POST"])
@role_required("program_manager")
@json_endpoint
def schedules_recalculate(cohort_id: int):
    return ok(result=recalculate_cohort_schedules(cohort_id))


# --------------------------
# Payments and verification
# --------------------------

@fee_bp.route("/students/<int:student_id>/payments", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def payments_record(student_id: int):
    data = payload()
    tx = record_payment(
        student_id,
        data.get("amount"),
        data.get("payment_method") or "",
        reference=data.get("reference_number"),
        notes=data.get("notes"),
        installment_number=_optional_int(data, "installment_number"),
        payment_date=data.get("payment_date"),
        user_id=current_user_id(),
    )
    return ok(201, transaction=tx.to_dict(), payment=tx.payment.to_dict())


@fee_bp.route("/students/<int:student_id>/payments/submit", methods=["POST"])
@role_required("student", *FEE_STAFF)
@json_endpoint
def payments_submit(student_id: int):
    if not _own_student(student_id):
        return fail("Forbidden", 403)
    data = payload()
    tx = submit_payment(
        student_id,
        data.get("amount"),
        data.get("payment_method") or "",
        reference=data.get("reference_number"),
        notes=data.get("notes"),
        installment_number=_optional_int(data, "installment_number"),
        payment_date=data.get("payment_date"),
        user_id=current_user_id(),
    )
    return ok(201, transaction=tx.to_dict())


@fee_bp.route("/transactions/pending", methods=["GET"])
@role_required(*FEE_STAFF)
@json_endpoint
def transactions_pending():
    rows = pending_verifications(arg_int("cohort_id"))
    return ok(transactions=[tx.to_dict() for tx in rows])


@fee_bp.route("/transactions/<int:transaction_id>/review", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def transactions_review(transaction_id: int):
    data = payload()
    result = review_transaction(
        transaction_id,
        data.get("decision") or "",
        approved_amount_value=data.get("approved_amount"),
        notes=data.get("notes"),
        rejection_reason=data.get("rejection_reason"),
        user_id=current_user_id(),
    )
    return ok(**result)


# --------------------------
# Reporting and reminders
# --------------------------

@fee_bp.route("/cohorts/<int:cohort_id>/summary", methods=["GET"])
@role_required(*FEE_STAFF)
@json_endpoint
def payments_summary(cohort_id: int):
    return ok(summary=cohort_payment_summary(cohort_id))


@fee_bp.route("/cohorts/<int:cohort_id>/export.csv", methods=["GET"])
@role_required(*FEE_STAFF)
@json_endpoint
def payments_export(cohort_id: int):
    return Response(
        export_payments_csv(cohort_id),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=cohort_{cohort_id}_payments.csv"},
    )


@fee_bp.route("/reminders/send", methods=["POST"])
@role_required(*FEE_STAFF)
@json_endpoint
def reminders_send():
    data = payload()
    days_ahead = data.get("days_ahead")
    counts = send_payment_reminders(days_ahead=to_int(days_ahead, "days_ahead") if days_ahead is not None else None)
    return ok(result=counts)
