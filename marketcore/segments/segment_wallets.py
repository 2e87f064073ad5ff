from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketcore.utils.auth import current_user, unauthorized
from marketcore.utils.wallets import wallet_summary

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api")


@wallets_bp.get("/wallet")
def my_wallet():
    u = current_user()
    if not u:
        return unauthorized()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    return jsonify({"ok": True, "success": True, "user_id": int(u.id), **wallet_summary(int(u.id), limit=limit)}), 200
