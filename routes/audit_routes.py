from __future__ import annotations

from flask import Blueprint, request

from routes import arg_int, json_endpoint, ok
from utils import role_required
from utils.audit import fetch_audit_logs


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.route("/logs", methods=["GET"])
@role_required("super_admin")
@json_endpoint
def api_logs():
    limit = min(max(arg_int("limit", 200), 1), 1000)
    return ok(logs=fetch_audit_logs(action=request.args.get("action"), limit=limit))
