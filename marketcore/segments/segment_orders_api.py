from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketcore.extensions import db
from marketcore.models import Order
from marketcore.services import order_service, order_status_service
from marketcore.services.pricing_service import DELIVERY_HOME, quote_delivery
from marketcore.utils.auth import current_user, is_admin, json_result, unauthorized

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _payload() -> dict:
    return request.get_json(silent=True) or {}


@orders_bp.post("/orders")
def create_order():
    u = current_user()
    if not u:
        return unauthorized()
    result = order_service.create_order(u, _payload())
    return json_result(result, success_status=201)


@orders_bp.post("/orders/calculate-delivery")
def calculate_delivery():
    u = current_user()
    if not u:
        return unauthorized()
    payload = _payload()
    manual = order_service.is_pickup_site_manager(u)
    delivery_type = (payload.get("delivery_method") or payload.get("delivery_type") or DELIVERY_HOME) if manual else DELIVERY_HOME
    result = quote_delivery(payload.get("items"), is_manual_order=manual, delivery_type=delivery_type)
    return json_result(result)


@orders_bp.get("/orders")
def list_orders():
    u = current_user()
    if not u:
        return unauthorized()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    rows = order_service.list_orders_for(u, status=request.args.get("status"), limit=limit)
    return jsonify({"ok": True, "success": True, "orders": [o.to_dict(include_items=False) for o in rows]}), 200


def _visible_order(order_id: int, u):
    o = db.session.get(Order, int(order_id))
    if not o:
        return None, json_result({"ok": False, "error": "NOT_FOUND", "message": "Order not found"})
    if not order_service.can_view_order(o, u):
        return None, json_result({"ok": False, "error": "FORBIDDEN", "message": "Forbidden"})
    return o, None


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    o, error = _visible_order(order_id, u)
    if error:
        return error
    return jsonify({"ok": True, "success": True, "order": o.to_dict()}), 200


@orders_bp.get("/orders/<int:order_id>/tracking")
def order_tracking(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    o, error = _visible_order(order_id, u)
    if error:
        return error
    return jsonify(
        {
            "ok": True,
            "success": True,
            "order_id": int(o.id),
            "status": o.status,
            "tracking": order_status_service.tracking_history(o),
        }
    ), 200


@orders_bp.post("/orders/<int:order_id>/payment")
def submit_payment(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    return json_result(order_service.submit_payment(order_id, u, _payload()))


@orders_bp.post("/admin/orders/<int:order_id>/payment/approve")
def approve_payment(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    if not is_admin(u):
        return json_result({"ok": False, "error": "FORBIDDEN", "message": "Admin access required"})
    return json_result(order_service.approve_payment(order_id, u, note=str(_payload().get("note") or "")))


@orders_bp.post("/admin/orders/<int:order_id>/payment/reject")
def reject_payment(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    if not is_admin(u):
        return json_result({"ok": False, "error": "FORBIDDEN", "message": "Admin access required"})
    return json_result(order_service.reject_payment(order_id, u, reason=str(_payload().get("reason") or "")))


@orders_bp.post("/orders/<int:order_id>/assign-agent")
def assign_agent(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    return json_result(order_service.assign_agent(order_id, _payload().get("agent_id"), u))


@orders_bp.put("/orders/<int:order_id>/tracking-status")
def update_tracking_status(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    payload = _payload()
    location = payload.get("location")
    result = order_status_service.update_tracking_status(
        order_id,
        u,
        payload.get("status"),
        notes=str(payload.get("notes") or ""),
        location=location if isinstance(location, dict) else None,
    )
    return json_result(result)


@orders_bp.post("/orders/<int:order_id>/confirm-delivery")
def confirm_delivery(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    payload = _payload()
    result = order_status_service.confirm_delivery(
        order_id,
        u,
        verification_code=payload.get("verification_code") or payload.get("verificationCode"),
        rating=payload.get("rating"),
        feedback=str(payload.get("feedback") or ""),
    )
    return json_result(result)


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    return json_result(order_status_service.cancel_order(order_id, u, reason=str(_payload().get("reason") or "")))


@orders_bp.post("/orders/<int:order_id>/report-issue")
def report_issue(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    payload = _payload()
    result = order_status_service.report_issue(
        order_id,
        u,
        description=payload.get("description"),
        issue_type=str(payload.get("issue_type") or "other"),
    )
    return json_result(result, success_status=201)
