from __future__ import annotations

import logging
import math
from datetime import datetime

from marketcore.errors import ErrorKind, fail, ok
from marketcore.extensions import db
from marketcore.models import (
    Agent,
    AgentEarning,
    AgentRating,
    DeliveryIssue,
    Order,
    OrderTracking,
    PickupSite,
    User,
)
from marketcore.services import email_service
from marketcore.services.order_service import add_tracking, agent_profile
from marketcore.utils.events import log_and_commit
from marketcore.utils.wallets import post_txn

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DELIVERY_ISSUE = "delivery_issue"

    ALIASES = {
        "processing": PREPARING,
        "shipped": OUT_FOR_DELIVERY,
        "in_transit": OUT_FOR_DELIVERY,
    }

    # Transitions driven through the tracking handler. delivered -> completed
    # and the delivery_issue branch belong to the buyer operations below.
    ALLOWED = {
        PENDING: {CONFIRMED, CANCELLED},
        CONFIRMED: {PREPARING, CANCELLED},
        PREPARING: {READY_FOR_PICKUP, CANCELLED},
        READY_FOR_PICKUP: {OUT_FOR_DELIVERY, CANCELLED},
        OUT_FOR_DELIVERY: {DELIVERED, CANCELLED},
        DELIVERED: set(),
        COMPLETED: set(),
        CANCELLED: set(),
        DELIVERY_ISSUE: set(),
    }
    ISSUE_REPORTABLE = {OUT_FOR_DELIVERY, DELIVERED}
    CANCELLABLE = {PENDING, CONFIRMED, PREPARING, READY_FOR_PICKUP, OUT_FOR_DELIVERY}

    TIMESTAMP_FIELD = {
        CONFIRMED: "confirmed_at",
        PREPARING: "preparing_at",
        READY_FOR_PICKUP: "ready_for_pickup_at",
        OUT_FOR_DELIVERY: "picked_up_at",
        DELIVERED: "delivered_at",
        COMPLETED: "completed_at",
        CANCELLED: "cancelled_at",
        DELIVERY_ISSUE: "issue_reported_at",
    }


def normalize_status(value: str | None) -> str:
    status = (value or "").strip().lower()
    return OrderStatus.ALIASES.get(status, status)


def can_transition(current: str, target: str) -> bool:
    return normalize_status(target) in OrderStatus.ALLOWED.get(normalize_status(current), set())


def _invalid_transition(current: str, target: str) -> dict:
    return fail(
        ErrorKind.INVALID_TRANSITION,
        f"Cannot transition order from {current} to {target}",
        current_status=current,
        requested_status=target,
    )


def _apply_status(order: Order, target: str, now: datetime) -> None:
    order.status = target
    field = OrderStatus.TIMESTAMP_FIELD.get(target)
    if field:
        setattr(order, field, now)
    order.updated_at = now
    db.session.add(order)


def _free_agent(order: Order, *, delivered: bool) -> None:
    if order.agent_id is None:
        return
    agent = Agent.query.filter_by(id=int(order.agent_id)).with_for_update().first()
    if agent is None:
        return
    if agent.status == "busy":
        agent.status = "available"
    if delivered:
        agent.total_deliveries = int(agent.total_deliveries or 0) + 1
        agent.successful_deliveries = int(agent.successful_deliveries or 0) + 1
    agent.last_active_at = datetime.utcnow()
    agent.updated_at = datetime.utcnow()
    db.session.add(agent)


def _release_pickup_slot(order: Order) -> None:
    if order.pickup_site_id is None:
        return
    site = PickupSite.query.filter_by(id=int(order.pickup_site_id)).with_for_update().first()
    if site is not None and int(site.current_load or 0) > 0:
        site.current_load = int(site.current_load) - 1
        db.session.add(site)


def _mark_earnings_payable(order: Order, now: datetime) -> int:
    rows = AgentEarning.query.filter_by(order_id=int(order.id), status="pending").all()
    for row in rows:
        if row.earnings_type == "referral":
            continue
        row.status = "payable"
        row.payable_at = now
        db.session.add(row)
    return len(rows)


def _pay_out_earnings(order: Order, now: datetime) -> float:
    paid_total = 0.0
    rows = (
        AgentEarning.query.filter(
            AgentEarning.order_id == int(order.id),
            AgentEarning.status.in_(("pending", "payable")),
            AgentEarning.earnings_type != "referral",
        )
        .with_for_update()
        .all()
    )
    for row in rows:
        amount = float(row.amount or 0.0)
        if amount > 0:
            post_txn(
                user_id=int(row.user_id),
                direction="credit",
                amount=amount,
                kind=f"{row.earnings_type}_commission",
                reference=order.order_number,
                note=f"Commission for order {order.order_number}",
                idempotency_key=f"agent_earning:{int(row.id)}",
            )
        if row.agent_id is not None:
            agent = db.session.get(Agent, int(row.agent_id))
            if agent is not None:
                agent.total_earnings = round(float(agent.total_earnings or 0.0) + amount, 2)
                db.session.add(agent)
        row.status = "paid"
        row.payable_at = row.payable_at or now
        row.paid_at = now
        db.session.add(row)
        paid_total += amount
    return round(paid_total, 2)


def _is_assigned_agent(order: Order, user: User) -> bool:
    profile = agent_profile(user)
    if profile is None:
        return False
    return int(profile.id) in {int(a) for a in (order.agent_id, order.psm_agent_id) if a is not None}


def update_tracking_status(
    order_id: int,
    actor: User | None,
    status: str | None,
    *,
    notes: str = "",
    location: dict | None = None,
) -> dict:
    """Move an order along the fulfilment pipeline and append a tracking row."""
    if actor is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    target = normalize_status(status)
    if target not in OrderStatus.ALLOWED:
        return fail(ErrorKind.INVALID_INPUT, f"Unknown status {status!r}")

    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        is_admin = (actor.role or "").strip().lower() == "admin"
        if not (is_admin or int(order.seller_id) == int(actor.id) or _is_assigned_agent(order, actor)):
            db.session.rollback()
            return fail(ErrorKind.FORBIDDEN, "Not allowed to update this order")

        current = normalize_status(order.status)
        if not can_transition(current, target):
            db.session.rollback()
            return _invalid_transition(current, target)
        # Confirmation follows payment approval; only an admin may re-push it for a paid order.
        if target == OrderStatus.CONFIRMED and not (is_admin and order.payment_status == "paid"):
            db.session.rollback()
            return fail(
                ErrorKind.INVALID_TRANSITION,
                "Order is confirmed by payment approval",
                current_status=current,
                requested_status=target,
            )

        now = datetime.utcnow()
        _apply_status(order, target, now)
        if target == OrderStatus.CANCELLED:
            order.cancellation_reason = (notes or "")[:240] or None
            _free_agent(order, delivered=False)
            _release_pickup_slot(order)
        elif target == OrderStatus.DELIVERED:
            _free_agent(order, delivered=True)
            _mark_earnings_payable(order, now)
        add_tracking(order, target, actor_id=int(actor.id), notes=notes, location=location)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("order_status_update_failed order_id=%s target=%s", order_id, target)
        return fail(ErrorKind.INTERNAL, "Failed to update order status")

    log_and_commit(
        "order_status_changed",
        actor_user_id=int(actor.id),
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        metadata={"from": current, "to": target, "notes": notes or ""},
    )
    if target == OrderStatus.DELIVERED:
        try:
            email_service.notify_order_delivered(order)
        except Exception:
            logger.exception("order_delivered_notify_failed order_id=%s", order.id)
    return ok(
        message=f"Order status updated to {target}",
        status=target,
        previous_status=current,
        order=order.to_dict(include_items=False),
    )


def _parse_rating(raw) -> tuple[int | None, dict | None]:
    if raw is None or raw == "":
        return None, None
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return None, fail(ErrorKind.INVALID_INPUT, "rating must be a number")
    if not math.isfinite(number):
        return None, fail(ErrorKind.INVALID_INPUT, "rating must be a finite number")
    return max(1, min(5, int(round(number)))), None


def confirm_delivery(
    order_id: int,
    buyer: User | None,
    *,
    verification_code: str | None = None,
    rating=None,
    feedback: str = "",
) -> dict:
    """Buyer acknowledges receipt; completes the order and pays agent commissions."""
    if buyer is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    score, error = _parse_rating(rating)
    if error:
        return error

    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        if int(order.buyer_id) != int(buyer.id):
            db.session.rollback()
            return fail(ErrorKind.FORBIDDEN, "Only the buyer can confirm delivery")
        current = normalize_status(order.status)
        if current != OrderStatus.DELIVERED:
            db.session.rollback()
            return _invalid_transition(current, OrderStatus.COMPLETED)
        code = (verification_code or "").strip()
        if code and order.delivery_code and code != order.delivery_code:
            db.session.rollback()
            return fail(ErrorKind.INVALID_INPUT, "Verification code does not match")

        now = datetime.utcnow()
        _apply_status(order, OrderStatus.COMPLETED, now)
        order.rating = score
        order.feedback = (feedback or "")[:2000] or None

        if score is not None and order.agent_id is not None:
            agent = Agent.query.filter_by(id=int(order.agent_id)).with_for_update().first()
            if agent is not None:
                db.session.add(
                    AgentRating(
                        order_id=int(order.id),
                        agent_id=int(agent.id),
                        buyer_id=int(buyer.id),
                        rating=score,
                        feedback=order.feedback,
                    )
                )
                reviews = int(agent.total_reviews or 0)
                agent.rating = round(((float(agent.rating or 0.0) * reviews) + score) / (reviews + 1), 2)
                agent.total_reviews = reviews + 1
                db.session.add(agent)

        paid_total = _pay_out_earnings(order, now)
        _release_pickup_slot(order)
        add_tracking(order, OrderStatus.COMPLETED, actor_id=int(buyer.id), notes="Delivery confirmed by buyer")
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("confirm_delivery_failed order_id=%s", order_id)
        return fail(ErrorKind.INTERNAL, "Failed to confirm delivery")

    log_and_commit(
        "order_completed",
        actor_user_id=int(buyer.id),
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_completed:{int(order.id)}",
        metadata={"rating": score, "commissions_paid": paid_total},
    )
    return ok(
        message="Delivery confirmed",
        status=order.status,
        commissions_paid=paid_total,
        order=order.to_dict(include_items=False),
    )


def cancel_order(order_id: int, actor: User | None, *, reason: str = "") -> dict:
    """Cancel before delivery. Booked agent earnings are left as they are."""
    if actor is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        is_admin = (actor.role or "").strip().lower() == "admin"
        if not is_admin and int(order.buyer_id) != int(actor.id):
            db.session.rollback()
            return fail(ErrorKind.FORBIDDEN, "Only the buyer or an admin can cancel this order")
        current = normalize_status(order.status)
        if current not in OrderStatus.CANCELLABLE:
            db.session.rollback()
            return _invalid_transition(current, OrderStatus.CANCELLED)

        now = datetime.utcnow()
        _apply_status(order, OrderStatus.CANCELLED, now)
        order.cancellation_reason = (reason or "")[:240] or None
        _free_agent(order, delivered=False)
        _release_pickup_slot(order)
        add_tracking(order, OrderStatus.CANCELLED, actor_id=int(actor.id), notes=reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("order_cancel_failed order_id=%s", order_id)
        return fail(ErrorKind.INTERNAL, "Failed to cancel order")

    log_and_commit(
        "order_cancelled",
        actor_user_id=int(actor.id),
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_cancelled:{int(order.id)}",
        metadata={"from": current, "reason": reason or ""},
    )
    return ok(message="Order cancelled", status=order.status, order=order.to_dict(include_items=False))


def report_issue(
    order_id: int,
    buyer: User | None,
    *,
    description: str | None,
    issue_type: str = "other",
) -> dict:
    if buyer is None:
        return fail(ErrorKind.UNAUTHORIZED, "Unauthorized")
    text = (description or "").strip()
    if not text:
        return fail(ErrorKind.INVALID_INPUT, "Issue description is required")
    try:
        order = Order.query.filter_by(id=int(order_id)).with_for_update().first()
        if order is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Order not found")
        if int(order.buyer_id) != int(buyer.id):
            db.session.rollback()
            return fail(ErrorKind.FORBIDDEN, "Only the buyer can report an issue")
        current = normalize_status(order.status)
        if current not in OrderStatus.ISSUE_REPORTABLE:
            db.session.rollback()
            return _invalid_transition(current, OrderStatus.DELIVERY_ISSUE)

        now = datetime.utcnow()
        issue = DeliveryIssue(
            order_id=int(order.id),
            reported_by=int(buyer.id),
            agent_id=order.agent_id,
            issue_type=(issue_type or "other").strip().lower()[:40] or "other",
            description=text[:4000],
        )
        db.session.add(issue)
        _apply_status(order, OrderStatus.DELIVERY_ISSUE, now)
        add_tracking(order, OrderStatus.DELIVERY_ISSUE, actor_id=int(buyer.id), notes=text)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("report_issue_failed order_id=%s", order_id)
        return fail(ErrorKind.INTERNAL, "Failed to report issue")

    log_and_commit(
        "order_delivery_issue",
        actor_user_id=int(buyer.id),
        order_id=int(order.id),
        subject_type="delivery_issue",
        subject_id=int(issue.id),
        severity="WARN",
        metadata={"issue_type": issue.issue_type},
    )
    try:
        email_service.notify_delivery_issue(order, issue.to_dict())
    except Exception:
        logger.exception("delivery_issue_notify_failed order_id=%s", order.id)
    return ok(message="Issue reported", status=order.status, issue=issue.to_dict())


def tracking_history(order: Order) -> list[dict]:
    rows = (
        OrderTracking.query.filter_by(order_id=int(order.id))
        .order_by(OrderTracking.created_at.asc(), OrderTracking.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]
