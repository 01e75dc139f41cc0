from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, TypeVar, cast

from flask import current_app, jsonify, request, session
from werkzeug.exceptions import HTTPException

from extensions import db
from utils.validation import ValidationError

F = TypeVar("F", bound=Callable[..., Any])


def ok(status: int = 200, **data: Any):
    return jsonify({"ok": True, **data}), status


def fail(error: str, status: int, **extra: Any):
    return jsonify({"ok": False, "error": error, **extra}), status


def payload() -> dict:
    return request.get_json(silent=True) or {}


def current_user_id() -> Optional[int]:
    return session.get("user_id")


def arg_int(name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def to_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer")


def json_endpoint(func: F) -> F:
    """Turn service exceptions into the JSON error envelope.

    ValueError -> 400, LookupError -> 404, PermissionError -> 409, anything
    else is logged and returned as 500. The session is rolled back on failure.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        try:
            return func(*args, **kwargs)
        except HTTPException:
            raise
        except ValidationError as exc:
            db.session.rollback()
            return fail(str(exc), 400, errors=exc.errors)
        except KeyError as exc:
            db.session.rollback()
            return fail(f"Missing field: {exc.args[0]}", 400)
        except ValueError as exc:
            db.session.rollback()
            return fail(str(exc), 400)
        except LookupError as exc:
            db.session.rollback()
            return fail(str(exc), 404)
        except PermissionError as exc:
            db.session.rollback()
            return fail(str(exc), 409)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
            return fail("Internal server error", 500)

    return cast(F, wrapper)
