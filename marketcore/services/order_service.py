from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime
from decimal import Decimal

from marketcore.errors import ErrorKind, fail, ok
from marketcore.extensions import db
from marketcore.models import (
    Agent,
    AgentEarning,
    CartItem,
    Order,
    OrderItem,
    OrderTracking,
    PickupSite,
    Product,
    User,
)
from marketcore.services import email_service
from marketcore.services.commission_calculator import calculate_commissions, normalize_order_type
from marketcore.services.escrow_service import hold_escrow, record_admin_action
from marketcore.services.pricing_service import (
    DELIVERY_HOME,
    DELIVERY_PICKUP,
    calculate_buyer_price,
    normalize_delivery_type,
)
from marketcore.services.referral_service import (
    record_referral_purchase,
    resolve_referral,
    settle_referral_for_order,
)
from marketcore.utils.events import log_and_commit
from marketcore.utils.money import round_money

logger = logging.getLogger(__name__)

PAYMENT_UNPAID = "unpaid"
PAYMENT_AWAITING = "awaiting_approval"
PAYMENT_PAID = "paid"
PAYMENT_REJECTED = "rejected"

EARNING_TYPE_BY_AGENT_TYPE = {
    Agent.TYPE_FAST_DELIVERY: "fast_delivery",
    Agent.TYPE_PICKUP_DELIVERY: "pickup_delivery",
    Agent.TYPE_PICKUP_SITE_MANAGER: "pickup_site_manager",
}
SNAPSHOT_KEY_BY_EARNING_TYPE = {
    "fast_delivery": "fast_delivery_agent",
    "pickup_delivery": "pickup_delivery_agent",
    "pickup_site_manager": "site_manager_agent",
    "referral": "referral_buyer",
}
DELIVERY_AGENT_TYPE_BY_MARKETPLACE = {
    "local": Agent.TYPE_FAST_DELIVERY,
    "physical": Agent.TYPE_PICKUP_DELIVERY,
}


def _now() -> datetime:
    return datetime.utcnow()


def _role(u: User | None) -> str:
    if not u:
        return "guest"
    return (getattr(u, "role", None) or "buyer").strip().lower()


def agent_profile(user: User | None) -> Agent | None:
    if user is None or _role(user) != "agent":
        return None
    return Agent.query.filter_by(user_id=int(user.id)).first()


def is_pickup_site_manager(user: User | None) -> bool:
    profile = agent_profile(user)
    return bool(profile and profile.agent_type == Agent.TYPE_PICKUP_SITE_MANAGER)


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def _generate_delivery_code() -> str:
    return f"{secrets.randbelow(1000000):06d}"


def add_tracking(order: Order, status: str, *, actor_id: int | None, notes: str = "", location: dict | None = None) -> OrderTracking:
    row = OrderTracking(
        order_id=int(order.id),
        status=status,
        notes=(notes or "")[:500] or None,
        location_json=json.dumps(location) if location else None,
        actor_user_id=int(actor_id) if actor_id is not None else None,
    )
    db.session.add(row)
    return row


def _verify_order_owner(order_id: int, buyer_id: int) -> bool:
    """Re-read the freshly inserted order and confirm it belongs to the buyer."""
    stored = db.session.query(Order.buyer_id).filter(Order.id == int(order_id)).scalar()
    return stored is not None and int(stored) == int(buyer_id)


def _upsert_earning(order: Order, *, user_id: int, agent_id: int | None, earnings_type: str, amount: float) -> AgentEarning | None:
    row = AgentEarning.query.filter_by(order_id=int(order.id), earnings_type=earnings_type).first()
    if amount <= 0:
        if row is not None and row.status == "pending":
            db.session.delete(row)
        return None
    if row is None:
        row = AgentEarning(order_id=int(order.id), earnings_type=earnings_type, status="pending")
    elif row.status != "pending":
        return row
    row.user_id = int(user_id)
    row.agent_id = int(agent_id) if agent_id is not None else None
    row.amount = float(amount)
    db.session.add(row)
    return row


def _parse_items(raw_items) -> tuple[list[dict] | None, dict | None]:
    if not isinstance(raw_items, list) or not raw_items:
        return None, fail(ErrorKind.INVALID_INPUT, "Order must contain at least one item")
    lines = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            return None, fail(ErrorKind.INVALID_INPUT, "Each item must be an object")
        try:
            product_id = int(raw.get("product_id"))
            quantity = int(raw.get("quantity") if raw.get("quantity") is not None else 1)
        except (TypeError, ValueError):
            return None, fail(ErrorKind.INVALID_INPUT, "product_id and quantity must be integers")
        if quantity < 1:
            return None, fail(ErrorKind.INVALID_INPUT, "Item quantity must be at least 1", product_id=product_id)
        lines.append({"product_id": product_id, "quantity": quantity})
    return lines, None


def create_order(buyer: User | None, payload: dict | None) -> dict:
    """Place an order for a buyer, or a manual order for a pickup-site manager."""
    if buyer is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    payload = payload if isinstance(payload, dict) else {}

    role = _role(buyer)
    manager = agent_profile(buyer)
    is_manual_order = bool(manager and manager.agent_type == Agent.TYPE_PICKUP_SITE_MANAGER)
    if role != "buyer" and not is_manual_order:
        return fail(ErrorKind.FORBIDDEN, "Only buyers and pickup site managers can create orders")
    if not bool(getattr(buyer, "is_active_account", True)):
        return fail(ErrorKind.FORBIDDEN, "User account is not active")

    lines, error = _parse_items(payload.get("items"))
    if error:
        return error
    shipping = payload.get("shipping")
    payment = payload.get("payment")
    if not isinstance(shipping, dict) or not shipping or not isinstance(payment, dict) or not payment:
        return fail(ErrorKind.INVALID_INPUT, "Shipping and payment information required")
    payment_method = str(payment.get("method") or "").strip()
    if not payment_method:
        return fail(ErrorKind.INVALID_INPUT, "Payment method required")

    # Regular buyers always get home delivery; only manual orders may use a pickup site.
    requested = payload.get("delivery_method") or payload.get("delivery_type")
    delivery_type = normalize_delivery_type(requested) if is_manual_order else DELIVERY_HOME
    delivery_address = payload.get("delivery_address")
    if delivery_type == DELIVERY_HOME and not delivery_address:
        return fail(ErrorKind.INVALID_INPUT, "Delivery address is required for home delivery")

    site = None
    if delivery_type == DELIVERY_PICKUP:
        try:
            site_id = int(payload.get("pickup_site_id"))
        except (TypeError, ValueError):
            return fail(ErrorKind.INVALID_INPUT, "Pickup site selection is required for pickup delivery")
        site = PickupSite.query.filter_by(id=site_id).with_for_update().first()
        if site is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Pickup site not found")
        if not site.is_active:
            db.session.rollback()
            return fail(ErrorKind.CAPACITY_EXCEEDED, "Selected pickup site is not available")
        if not site.has_capacity():
            db.session.rollback()
            return fail(ErrorKind.CAPACITY_EXCEEDED, "Selected pickup site is at full capacity")

    products = {}
    for line in lines:
        product = db.session.get(Product, line["product_id"])
        if product is None or not product.is_active:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, f"Product not found: {line['product_id']}")
        products[line["product_id"]] = product
    seller_id = int(products[lines[0]["product_id"]].seller_id)
    if any(int(p.seller_id) != seller_id for p in products.values()):
        db.session.rollback()
        return fail(ErrorKind.INVALID_INPUT, "All items in an order must come from the same seller")

    marketplace_type = normalize_order_type(
        payload.get("marketplace_type") or products[lines[0]["product_id"]].marketplace_type
    )
    base_price = sum(
        (round_money(products[line["product_id"]].price or 0) * line["quantity"] for line in lines),
        Decimal("0"),
    )
    pricing = calculate_buyer_price(
        base_price, delivery_type, marketplace_type, show_delivery_fee=is_manual_order
    )
    if not pricing.get("ok"):
        db.session.rollback()
        return pricing

    referral_link = resolve_referral(payload.get("referral_code"), buyer_id=int(buyer.id))
    psm_agent_id = None
    if is_manual_order:
        psm_agent_id = int(manager.id)
    elif site is not None and site.manager_agent_id:
        psm_agent_id = int(site.manager_agent_id)

    # The delivery share is reserved at checkout; the earning row appears on assignment.
    breakdown = calculate_commissions(
        base_price,
        marketplace_type,
        has_referral=referral_link is not None,
        has_psm=psm_agent_id is not None,
        has_delivery_agent=True,
    )

    now = _now()
    order = Order(
        order_number=generate_order_number(),
        buyer_id=int(buyer.id),
        seller_id=seller_id,
        psm_agent_id=psm_agent_id,
        pickup_site_id=int(site.id) if site is not None else None,
        created_by_user_id=int(buyer.id),
        marketplace_type=marketplace_type,
        delivery_type=delivery_type,
        delivery_address_json=json.dumps(delivery_address) if delivery_address else None,
        shipping_address_json=json.dumps(shipping),
        billing_address_json=json.dumps(payment.get("billing_address") or shipping),
        delivery_code=_generate_delivery_code(),
        payment_method=payment_method[:32],
        payment_status=PAYMENT_UNPAID,
        payment_proof_url=(str(payment.get("payment_proof") or "")[:1024] or None),
        total_amount=pricing["base_price"],
        platform_margin=pricing["platform_margin"],
        delivery_fee=pricing["delivery_fee"],
        final_buyer_price=pricing["final_price"],
        seller_payout=pricing["seller_payout"],
        delivery_fee_hidden=bool(pricing["delivery_fee_hidden"]),
        referral_code=referral_link.referral_code if referral_link is not None else None,
        is_manual_order=is_manual_order,
        commission_snapshot_json=json.dumps(breakdown),
        status="pending",
        notes=(str(payload.get("notes") or "")[:2000] or None),
        created_at=now,
        updated_at=now,
    )
    try:
        db.session.add(order)
        db.session.flush()

        if not _verify_order_owner(int(order.id), int(buyer.id)):
            db.session.rollback()
            logger.critical("order_owner_mismatch buyer_id=%s", buyer.id)
            return fail(
                ErrorKind.SECURITY_VIOLATION,
                "Order creation failed - security validation error",
            )

        for line in lines:
            unit = round_money(products[line["product_id"]].price or 0)
            db.session.add(
                OrderItem(
                    order_id=int(order.id),
                    product_id=line["product_id"],
                    quantity=line["quantity"],
                    unit_price=float(unit),
                    total_price=float(unit * line["quantity"]),
                )
            )

        if psm_agent_id is not None:
            psm = db.session.get(Agent, psm_agent_id)
            if psm is not None:
                _upsert_earning(
                    order,
                    user_id=int(psm.user_id),
                    agent_id=int(psm.id),
                    earnings_type="pickup_site_manager",
                    amount=breakdown["site_manager_agent"],
                )
        if referral_link is not None:
            record_referral_purchase(order, referral_link, commission_amount=breakdown["referral_buyer"])

        if site is not None:
            site.current_load = int(site.current_load or 0) + 1
            db.session.add(site)

        CartItem.query.filter(
            CartItem.user_id == int(buyer.id),
            CartItem.product_id.in_(list(products.keys())),
        ).delete(synchronize_session=False)

        add_tracking(order, "pending", actor_id=int(buyer.id), notes="Order placed")
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("order_create_failed buyer_id=%s", buyer.id)
        return fail(ErrorKind.INTERNAL, "Failed to create order")

    logger.info(
        "order_created order_id=%s buyer_id=%s role=%s manual=%s final=%s",
        order.id, buyer.id, role, is_manual_order, order.final_buyer_price,
    )
    log_and_commit(
        "order_created",
        actor_user_id=int(buyer.id),
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_created:{int(order.id)}",
        metadata={"order_number": order.order_number, "commissions": breakdown},
    )
    try:
        email_service.notify_order_created(order, buyer)
    except Exception:
        logger.exception("order_created_notify_failed order_id=%s", order.id)

    return ok(
        message="Order created successfully",
        order={
            "id": int(order.id),
            "order_number": order.order_number,
            "total_amount": float(order.total_amount),
            "final_buyer_price": float(order.final_buyer_price),
            "status": order.status,
            "buyer_id": int(buyer.id),
            "buyer_email": buyer.email,
        },
        pricing={k: v for k, v in pricing.items() if k != "ok"},
    )


def submit_payment(order_id: int, buyer: User | None, payload: dict | None) -> dict:
    if buyer is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    payload = payload if isinstance(payload, dict) else {}
    order = db.session.get(Order, int(order_id))
    if order is None:
        return fail(ErrorKind.NOT_FOUND, "Order not found")
    if int(order.buyer_id) != int(buyer.id):
        return fail(ErrorKind.FORBIDDEN, "Not your order")
    if order.status != "pending" or order.payment_status not in (PAYMENT_UNPAID, PAYMENT_REJECTED):
        return fail(
            ErrorKind.INVALID_STATE,
            f"Payment cannot be submitted while order is {order.status}/{order.payment_status}",
        )
    reference = str(payload.get("reference") or "").strip()
    if not reference and not payload.get("proof_url"):
        return fail(ErrorKind.INVALID_INPUT, "Payment reference or proof is required")

    order.payment_status = PAYMENT_AWAITING
    order.payment_reference = reference[:120] or order.payment_reference
    if payload.get("method"):
        order.payment_method = str(payload.get("method"))[:32]
    if payload.get("proof_url"):
        order.payment_proof_url = str(payload.get("proof_url"))[:1024]
    order.updated_at = _now()
    db.session.add(order)
    add_tracking(order, "pending", actor_id=int(buyer.id), notes="Payment submitted for approval")
    db.session.commit()
    return ok(message="Payment submitted for approval", order=order.to_dict(include_items=False))


def approve_payment(order_id: int, admin: User | None, *, note: str = "") -> dict:
    """Confirm a manual payment: order is confirmed and the seller payout goes into escrow."""
    if _role(admin) != "admin":
        return fail(ErrorKind.FORBIDDEN, "Admin only")
    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        if order.payment_status == PAYMENT_PAID:
            db.session.rollback()
            return fail(ErrorKind.INVALID_STATE, "Payment already approved")
        if order.status != "pending":
            db.session.rollback()
            return fail(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot confirm order in status {order.status}",
                current_status=order.status,
                requested_status="confirmed",
            )

        now = _now()
        order.payment_status = PAYMENT_PAID
        order.status = "confirmed"
        order.confirmed_at = now
        order.updated_at = now
        db.session.add(order)
        escrow = hold_escrow(order, reason=note or "payment_confirmed")
        referral = settle_referral_for_order(order)
        record_admin_action(
            int(admin.id),
            "payment_approval",
            target_type="order",
            target_id=int(order.id),
            details={"escrow_id": int(escrow.id), "amount": float(escrow.amount), "note": note or ""},
        )
        add_tracking(order, "confirmed", actor_id=int(admin.id), notes="Payment approved")
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("payment_approve_failed order_id=%s", order_id)
        return fail(ErrorKind.INTERNAL, "Failed to approve payment")

    log_and_commit(
        "order_payment_approved",
        actor_user_id=int(admin.id),
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_payment_approved:{int(order.id)}",
        metadata={"escrow_id": int(escrow.id), "referral": referral},
    )
    try:
        email_service.notify_payment_approved(order)
    except Exception:
        logger.exception("payment_approved_notify_failed order_id=%s", order.id)
    return ok(
        message="Payment approved",
        status=order.status,
        order=order.to_dict(include_items=False),
        escrow=escrow.to_dict(),
    )


def reject_payment(order_id: int, admin: User | None, *, reason: str = "") -> dict:
    if _role(admin) != "admin":
        return fail(ErrorKind.FORBIDDEN, "Admin only")
    order = db.session.get(Order, int(order_id))
    if order is None:
        return fail(ErrorKind.NOT_FOUND, "Order not found")
    if order.payment_status != PAYMENT_AWAITING:
        return fail(ErrorKind.INVALID_STATE, f"Payment is {order.payment_status}, nothing to reject")
    order.payment_status = PAYMENT_REJECTED
    order.updated_at = _now()
    db.session.add(order)
    record_admin_action(
        int(admin.id),
        "payment_rejection",
        target_type="order",
        target_id=int(order.id),
        details={"reason": reason or ""},
    )
    add_tracking(order, "pending", actor_id=int(admin.id), notes=f"Payment rejected: {reason}"[:500])
    db.session.commit()
    return ok(message="Payment rejected", order=order.to_dict(include_items=False))


def assign_agent(order_id: int, agent_id, actor: User | None) -> dict:
    """Attach a delivery agent and book its share of the commission snapshot."""
    if actor is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    try:
        agent_id = int(agent_id)
    except (TypeError, ValueError):
        return fail(ErrorKind.INVALID_INPUT, "agent_id required")
    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        if _role(actor) != "admin" and int(order.seller_id) != int(actor.id):
            db.session.rollback()
            return fail(ErrorKind.FORBIDDEN, "Only the seller or an admin can assign agents")
        if order.status not in ("confirmed", "preparing", "ready_for_pickup"):
            db.session.rollback()
            return fail(ErrorKind.INVALID_STATE, f"Cannot assign an agent while order is {order.status}")
        if order.agent_id is not None:
            db.session.rollback()
            return fail(ErrorKind.INVALID_STATE, "Order already has a delivery agent")
        agent = Agent.query.filter_by(id=agent_id).with_for_update().first()
        if agent is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Agent not found")
        wanted_type = DELIVERY_AGENT_TYPE_BY_MARKETPLACE.get(order.marketplace_type, Agent.TYPE_PICKUP_DELIVERY)
        if agent.agent_type != wanted_type:
            db.session.rollback()
            return fail(ErrorKind.INVALID_INPUT, f"A {wanted_type} agent is required for this order")
        if agent.status != "available":
            db.session.rollback()
            return fail(ErrorKind.INVALID_STATE, "Agent is not available")

        snapshot = order.commission_snapshot()
        flags = snapshot.get("flags") or {}
        breakdown = calculate_commissions(
            order.total_amount,
            order.marketplace_type,
            has_referral=bool(flags.get("has_referral")),
            has_psm=bool(flags.get("has_psm")),
            has_delivery_agent=True,
        )
        earnings_type = EARNING_TYPE_BY_AGENT_TYPE[agent.agent_type]
        _upsert_earning(
            order,
            user_id=int(agent.user_id),
            agent_id=int(agent.id),
            earnings_type=earnings_type,
            amount=breakdown[SNAPSHOT_KEY_BY_EARNING_TYPE[earnings_type]],
        )

        now = _now()
        order.agent_id = int(agent.id)
        order.assigned_at = now
        order.updated_at = now
        order.commission_snapshot_json = json.dumps(breakdown)
        agent.status = "busy"
        agent.updated_at = now
        db.session.add_all([order, agent])
        add_tracking(order, order.status, actor_id=int(actor.id), notes=f"Agent #{int(agent.id)} assigned")
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("agent_assign_failed order_id=%s agent_id=%s", order_id, agent_id)
        return fail(ErrorKind.INTERNAL, "Failed to assign agent")

    log_and_commit(
        "order_agent_assigned",
        actor_user_id=int(actor.id),
        order_id=int(order.id),
        subject_type="agent",
        subject_id=int(agent.id),
        metadata={"earnings_type": earnings_type},
    )
    return ok(message="Agent assigned", order=order.to_dict(include_items=False), agent=agent.to_dict())


def can_view_order(order: Order, user: User | None) -> bool:
    if user is None:
        return False
    if _role(user) == "admin":
        return True
    uid = int(user.id)
    if uid in (int(order.buyer_id), int(order.seller_id)):
        return True
    agent_ids = {int(a) for a in (order.agent_id, order.psm_agent_id) if a is not None}
    if not agent_ids:
        return False
    profile = agent_profile(user)
    return bool(profile and int(profile.id) in agent_ids)


def list_orders_for(user: User, *, status: str | None = None, limit: int = 50) -> list[Order]:
    role = _role(user)
    q = Order.query
    if role == "seller":
        q = q.filter(Order.seller_id == int(user.id))
    elif role == "agent":
        profile = agent_profile(user)
        if profile is None:
            return []
        q = q.filter((Order.agent_id == int(profile.id)) | (Order.psm_agent_id == int(profile.id)) | (Order.buyer_id == int(user.id)))
    elif role != "admin":
        q = q.filter(Order.buyer_id == int(user.id))
    if status:
        q = q.filter(Order.status == status.strip().lower())
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(int(limit), 200))).all()
