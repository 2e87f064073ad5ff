from __future__ import annotations

from flask import Blueprint, request

from marketcore.services.escrow_service import (
    escrow_stats,
    list_escrow_transactions,
    refund_escrow,
    release_escrow,
)
from marketcore.utils.auth import current_user, is_admin, json_result, unauthorized

escrow_admin_bp = Blueprint("escrow_admin_bp", __name__, url_prefix="/api/admin/escrow")


def _admin_or_error():
    u = current_user()
    if not u:
        return None, unauthorized()
    if not is_admin(u):
        return None, json_result({"ok": False, "error": "FORBIDDEN", "message": "Admin access required"})
    return u, None


def _reason(payload: dict, key: str) -> str:
    return str(payload.get(key) or payload.get("reason") or "")


@escrow_admin_bp.get("/transactions")
def transactions():
    u, error = _admin_or_error()
    if error:
        return error
    try:
        page = int(request.args.get("page") or 1)
        limit = int(request.args.get("limit") or 20)
    except ValueError:
        return json_result({"ok": False, "error": "INVALID_INPUT", "message": "page and limit must be integers"})
    return json_result(list_escrow_transactions(status=request.args.get("status"), page=page, limit=limit))


@escrow_admin_bp.get("/stats")
def stats():
    u, error = _admin_or_error()
    if error:
        return error
    return json_result(escrow_stats())


@escrow_admin_bp.post("/<int:escrow_id>/release")
def release(escrow_id: int):
    u, error = _admin_or_error()
    if error:
        return error
    payload = request.get_json(silent=True) or {}
    return json_result(release_escrow(escrow_id, admin_id=int(u.id), reason=_reason(payload, "release_reason")))


@escrow_admin_bp.post("/<int:escrow_id>/refund")
def refund(escrow_id: int):
    u, error = _admin_or_error()
    if error:
        return error
    payload = request.get_json(silent=True) or {}
    return json_result(refund_escrow(escrow_id, admin_id=int(u.id), reason=_reason(payload, "refund_reason")))
