from __future__ import annotations

from functools import wraps
from typing import Callable, TypeVar, Any, cast
from flask import session, jsonify

F = TypeVar("F", bound=Callable[..., Any])

ROLES = ("super_admin", "program_manager", "fee_collector", "equipment_manager", "student")
STAFF_ROLES = ("super_admin", "program_manager", "fee_collector", "equipment_manager")


def role_required(*roles: str) -> Callable[[F], F]:
    """Decorator that requires a logged-in session with one of ``roles``.

    - No session user: 401 JSON error.
    - Wrong role: 403 JSON error. ``super_admin`` passes every gate.
    - With no roles given, any logged-in user passes.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            if not session.get("user_id"):
                return jsonify({"ok": False, "error": "Login required"}), 401
            role = session.get("role")
            if roles and role != "super_admin" and role not in roles:
                return jsonify({"ok": False, "error": "Forbidden"}), 403
            return func(*args, **kwargs)

        return cast(F, wrapper)

    return decorator


def staff_required(func: F) -> F:
    return role_required(*STAFF_ROLES)(func)
