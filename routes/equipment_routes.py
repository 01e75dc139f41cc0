from __future__ import annotations

from flask import Blueprint, request, session

from models import EquipmentCategory, EquipmentLocation
from routes import arg_int, current_user_id, fail, json_endpoint, ok, payload, to_int
from utils import role_required
from utils.equipment import (
    blacklist_student,
    cancel_borrowing,
    create_category,
    create_equipment,
    create_location,
    extend_borrowing,
    inventory_stats,
    issue_equipment,
    list_blacklist,
    list_damage_reports,
    list_equipment,
    overdue_borrowings,
    remove_from_blacklist,
    report_damage,
    return_equipment,
    return_statistics,
    set_availability,
    student_history,
    update_damage_status,
    update_equipment,
)

equipment_bp = Blueprint("equipment", __name__, url_prefix="/api/equipment")

KEEPERS = ("equipment_manager",)


@equipment_bp.route("/categories", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def categories_index():
    rows = EquipmentCategory.query.order_by(EquipmentCategory.name).all()
    return ok(categories=[c.to_dict() for c in rows])


@equipment_bp.route("/categories", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def categories_create():
    data = payload()
    return ok(201, category=create_category(data.get("name"), data.get("description")).to_dict())


@equipment_bp.route("/locations", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def locations_index():
    rows = EquipmentLocation.query.order_by(EquipmentLocation.name).all()
    return ok(locations=[loc.to_dict() for loc in rows])


@equipment_bp.route("/locations", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def locations_create():
    data = payload()
    return ok(201, location=create_location(data.get("name"), data.get("description")).to_dict())


@equipment_bp.route("", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def equipment_index():
    rows = list_equipment(
        availability=request.args.get("availability"),
        category_id=arg_int("category_id"),
        search=request.args.get("q"),
    )
    return ok(equipment=[item.to_dict() for item in rows])


@equipment_bp.route("", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def equipment_create():
    return ok(201, equipment=create_equipment(payload()).to_dict())


@equipment_bp.route("/<int:equipment_id>", methods=["PUT", "PATCH"])
@role_required(*KEEPERS)
@json_endpoint
def equipment_update(equipment_id: int):
    return ok(equipment=update_equipment(equipment_id, payload()).to_dict())


@equipment_bp.route("/<int:equipment_id>/status", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def equipment_status(equipment_id: int):
    data = payload()
    item = set_availability(equipment_id, data.get("availability_status") or "", data.get("notes"))
    return ok(equipment=item.to_dict())


@equipment_bp.route("/stats", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def equipment_stats():
    return ok(stats=inventory_stats())


# --------------------------
# Borrowing
# --------------------------

@equipment_bp.route("/issue", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def borrowing_issue():
    data = payload()
    ids = data.get("equipment_ids") or ([data["equipment_id"]] if data.get("equipment_id") else [])
    borrowings = issue_equipment(
        to_int(data.get("student_id"), "student_id"),
        [to_int(i, "equipment_id") for i in ids],
        data.get("expected_return_date"),
        reason=data.get("reason"),
        notes=data.get("notes"),
        user_id=current_user_id(),
    )
    return ok(201, borrowings=[b.to_dict() for b in borrowings])


@equipment_bp.route("/borrowings/<int:borrowing_id>/return", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def borrowing_return(borrowing_id: int):
    data = payload()
    location_id = data.get("location_id")
    result = return_equipment(
        borrowing_id,
        data.get("condition") or "",
        notes=data.get("notes"),
        location_id=to_int(location_id, "location_id") if location_id not in (None, "") else None,
        user_id=current_user_id(),
    )
    return ok(**result)


@equipment_bp.route("/borrowings/<int:borrowing_id>/extend", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def borrowing_extend(borrowing_id: int):
    data = payload()
    borrowing = extend_borrowing(borrowing_id, data.get("expected_return_date"), data.get("reason"),
                                 user_id=current_user_id())
    return ok(borrowing=borrowing.to_dict())


@equipment_bp.route("/borrowings/<int:borrowing_id>/cancel", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def borrowing_cancel(borrowing_id: int):
    return ok(borrowing=cancel_borrowing(borrowing_id, user_id=current_user_id()).to_dict())


@equipment_bp.route("/borrowings/overdue", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def borrowing_overdue():
    rows = []
    for borrowing in overdue_borrowings():
        data = borrowing.to_dict()
        data["equipment_name"] = borrowing.equipment.name
        data["student_name"] = borrowing.student.full_name if borrowing.student else None
        rows.append(data)
    return ok(borrowings=rows)


@equipment_bp.route("/students/<int:student_id>/history", methods=["GET"])
@role_required()
@json_endpoint
def borrowing_history(student_id: int):
    if session.get("role") == "student" and session.get("student_id") != student_id:
        return fail("Forbidden", 403)
    if session.get("role") not in ("student", "super_admin", *KEEPERS):
        return fail("Forbidden", 403)
    return ok(history=student_history(student_id))


@equipment_bp.route("/returns/stats", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def returns_stats():
    return ok(stats=return_statistics())


# --------------------------
# Blacklist and damage
# --------------------------

@equipment_bp.route("/blacklist", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def blacklist_index():
    return ok(entries=[e.to_dict() for e in list_blacklist()])


@equipment_bp.route("/blacklist", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def blacklist_add():
    data = payload()
    entry = blacklist_student(to_int(data.get("student_id"), "student_id"), data.get("reason") or "",
                              expires_at=data.get("expires_at"), user_id=current_user_id())
    return ok(201, entry=entry.to_dict())


@equipment_bp.route("/blacklist/<int:student_id>", methods=["DELETE"])
@role_required(*KEEPERS)
@json_endpoint
def blacklist_remove(student_id: int):
    return ok(removed=remove_from_blacklist(student_id))


@equipment_bp.route("/damage", methods=["GET"])
@role_required(*KEEPERS)
@json_endpoint
def damage_index():
    return ok(reports=[r.to_dict() for r in list_damage_reports(request.args.get("status"))])


@equipment_bp.route("/damage", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def damage_create():
    data = payload()
    borrowing_id = data.get("borrowing_id")
    report = report_damage(
        to_int(data.get("equipment_id"), "equipment_id"),
        data.get("description") or "",
        damage_type=data.get("damage_type") or "physical",
        estimated_cost=data.get("estimated_cost"),
        borrowing_id=to_int(borrowing_id, "borrowing_id") if borrowing_id not in (None, "") else None,
        user_id=current_user_id(),
    )
    return ok(201, report=report.to_dict())


@equipment_bp.route("/damage/<int:report_id>/status", methods=["POST"])
@role_required(*KEEPERS)
@json_endpoint
def damage_status(report_id: int):
    data = payload()
    return ok(report=update_damage_status(report_id, data.get("status") or "", data.get("notes")).to_dict())
