from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketcore.extensions import db
from marketcore.models import Product
from marketcore.services.referral_service import (
    create_referral_link,
    ensure_referral_link,
    referral_stats_for_user,
)
from marketcore.utils.auth import current_user, json_result, unauthorized


referral_bp = Blueprint("referral_bp", __name__, url_prefix="/api/referral")


@referral_bp.get("/code")
def referral_code():
    user = current_user()
    if not user:
        return unauthorized()
    link = ensure_referral_link(user)
    return jsonify({"ok": True, "success": True, "referral_code": link.referral_code}), 200


@referral_bp.post("/links")
def create_product_link():
    user = current_user()
    if not user:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    try:
        product_id = int(payload.get("product_id"))
    except (TypeError, ValueError):
        return json_result({"ok": False, "error": "INVALID_INPUT", "message": "product_id required"})
    if db.session.get(Product, product_id) is None:
        return json_result({"ok": False, "error": "NOT_FOUND", "message": "Product not found"})
    link = create_referral_link(user, product_id=product_id)
    return jsonify({"ok": True, "success": True, "link": link.to_dict()}), 201


@referral_bp.get("/stats")
def referral_stats():
    user = current_user()
    if not user:
        return unauthorized()
    link = ensure_referral_link(user)
    return jsonify({**referral_stats_for_user(int(user.id)), "success": True, "referral_code": link.referral_code}), 200
