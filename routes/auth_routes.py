from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, session

from extensions import db, limiter
from models import User
from routes import fail, json_endpoint, ok, payload
from utils import role_required
from utils.security import verify_password

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.route("/login", methods=["POST"])
# Rate limit login POSTs; repeated failures from one address are throttled
@limiter.limit("10 per minute", methods=["POST"])
@json_endpoint
def login():
    data = payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return fail("Email and password are required", 400)

    user = User.query.filter(db.func.lower(User.email) == email).first()
    if user is None or not verify_password(user.password_hash, password):
        current_app.logger.info("Failed login for %s", email)
        return fail("Invalid email or password", 401)
    if not user.is_active:
        return fail("Account is disabled", 403)

    session.clear()
    session.permanent = True
    session["user_id"] = user.id
    session["username"] = user.email
    session["role"] = user.role
    session["student_id"] = user.student_id
    user.last_login_at = datetime.utcnow()
    db.session.commit()
    current_app.logger.info("User %s logged in as %s", user.email, user.role)
    return ok(user=user.to_dict())


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return ok()


@auth_bp.route("/me", methods=["GET"])
@role_required()
@json_endpoint
def me():
    user = db.session.get(User, session["user_id"])
    if user is None:
        session.clear()
        return fail("Login required", 401)
    return ok(user=user.to_dict())
