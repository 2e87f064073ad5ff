from datetime import datetime

from marketcore.extensions import db


class ReferralLink(db.Model):
    __tablename__ = "referral_links"

    id = db.Column(db.Integer, primary_key=True)
    referrer_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, index=True
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    referral_code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    # active | inactive
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "referrer_user_id": int(self.referrer_user_id),
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "referral_code": self.referral_code or "",
            "status": self.status or "active",
            "usage_count": int(self.usage_count or 0),
        }


class ReferralPurchase(db.Model):
    __tablename__ = "referral_purchases"

    id = db.Column(db.Integer, primary_key=True)
    referral_link_id = db.Column(
        db.Integer, db.ForeignKey("referral_links.id"), nullable=False, index=True
    )
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    referrer_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    commission_amount = db.Column(db.Float, nullable=False, default=0.0)
    # pending | paid
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "referral_link_id": int(self.referral_link_id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "referrer_user_id": int(self.referrer_user_id),
            "commission_amount": float(self.commission_amount or 0.0),
            "status": self.status or "pending",
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
