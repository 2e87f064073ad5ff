from __future__ import annotations

from flask import g, jsonify, request

from marketcore.errors import result_status
from marketcore.extensions import db
from marketcore.models import User
from marketcore.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is None or not bool(user.is_active_account):
        return None
    return user


def role_of(u: User | None) -> str:
    if not u:
        return "guest"
    return (getattr(u, "role", None) or "buyer").strip().lower()


def is_admin(u: User | None) -> bool:
    return role_of(u) == "admin"


def json_result(result: dict, *, success_status: int = 200):
    """Render a service result dict with the API envelope and mapped status."""
    body = dict(result)
    body["success"] = bool(result.get("ok"))
    if not body["success"]:
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            body["trace_id"] = rid
    return jsonify(body), result_status(result, success_status=success_status)


def unauthorized():
    return json_result({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized"})
