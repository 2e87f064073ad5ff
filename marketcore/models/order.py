from datetime import datetime
import json

from marketcore.extensions import db


def _iso(value):
    return value.isoformat() if value else None


def _load_json(raw, default):
    if not raw:
        return default
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, type(default)):
            return parsed
    except Exception:
        pass
    return default


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # Delivery agent and pickup-site-manager agent (agents.id).
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True, index=True)
    psm_agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True, index=True)
    pickup_site_id = db.Column(db.Integer, db.ForeignKey("pickup_sites.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    marketplace_type = db.Column(db.String(16), nullable=False, default="physical")
    delivery_type = db.Column(db.String(16), nullable=False, default="home")
    delivery_address_json = db.Column(db.Text, nullable=True)
    shipping_address_json = db.Column(db.Text, nullable=True)
    billing_address_json = db.Column(db.Text, nullable=True)
    delivery_code = db.Column(db.String(12), nullable=True)

    payment_method = db.Column(db.String(32), nullable=False, default="")
    payment_status = db.Column(db.String(24), nullable=False, default="unpaid", index=True)
    payment_reference = db.Column(db.String(120), nullable=True)
    payment_proof_url = db.Column(db.String(1024), nullable=True)

    # Money in major units, always rounded to 2 decimals.
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    platform_margin = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)
    final_buyer_price = db.Column(db.Float, nullable=False, default=0.0)
    seller_payout = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee_hidden = db.Column(db.Boolean, nullable=False, default=True)

    referral_code = db.Column(db.String(64), nullable=True)
    is_manual_order = db.Column(db.Boolean, nullable=False, default=False)
    commission_snapshot_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.String(240), nullable=True)
    rating = db.Column(db.Integer, nullable=True)
    feedback = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    preparing_at = db.Column(db.DateTime, nullable=True)
    ready_for_pickup_at = db.Column(db.DateTime, nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    issue_reported_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    def commission_snapshot(self) -> dict:
        return _load_json(self.commission_snapshot_json, {})

    def delivery_address(self) -> dict:
        return _load_json(self.delivery_address_json, {})

    def to_dict(self, *, include_items: bool = True) -> dict:
        out = {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "agent_id": int(self.agent_id) if self.agent_id is not None else None,
            "psm_agent_id": int(self.psm_agent_id) if self.psm_agent_id is not None else None,
            "pickup_site_id": int(self.pickup_site_id) if self.pickup_site_id is not None else None,
            "marketplace_type": self.marketplace_type or "physical",
            "delivery_type": self.delivery_type or "home",
            "delivery_address": self.delivery_address(),
            "shipping_address": _load_json(self.shipping_address_json, {}),
            "payment_method": self.payment_method or "",
            "payment_status": self.payment_status or "unpaid",
            "total_amount": float(self.total_amount or 0.0),
            "platform_margin": float(self.platform_margin or 0.0),
            "delivery_fee": 0.0 if self.delivery_fee_hidden else float(self.delivery_fee or 0.0),
            "delivery_fee_hidden": bool(self.delivery_fee_hidden),
            "final_buyer_price": float(self.final_buyer_price or 0.0),
            "referral_code": self.referral_code or "",
            "is_manual_order": bool(self.is_manual_order),
            "status": self.status or "pending",
            "rating": int(self.rating) if self.rating is not None else None,
            "cancellation_reason": self.cancellation_reason or "",
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "confirmed_at": _iso(self.confirmed_at),
            "preparing_at": _iso(self.preparing_at),
            "ready_for_pickup_at": _iso(self.ready_for_pickup_at),
            "assigned_at": _iso(self.assigned_at),
            "picked_up_at": _iso(self.picked_up_at),
            "delivered_at": _iso(self.delivered_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "issue_reported_at": _iso(self.issue_reported_at),
        }
        if include_items:
            out["items"] = [item.to_dict() for item in self.items]
        return out


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    total_price = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "quantity": int(self.quantity or 0),
            "unit_price": float(self.unit_price or 0.0),
            "total_price": float(self.total_price or 0.0),
        }


class OrderTracking(db.Model):
    __tablename__ = "order_tracking"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.String(500), nullable=True)
    location_json = db.Column(db.Text, nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "status": self.status or "",
            "notes": self.notes or "",
            "location": _load_json(self.location_json, {}),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "created_at": _iso(self.created_at),
        }
