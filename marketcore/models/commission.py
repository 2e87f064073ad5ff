from datetime import datetime

from marketcore.extensions import db


class AgentEarning(db.Model):
    __tablename__ = "agent_earnings"
    __table_args__ = (
        db.UniqueConstraint("order_id", "earnings_type", name="uq_agent_earnings_order_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Beneficiary user; agent_id is set for delivery and site-manager shares.
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    # fast_delivery | pickup_delivery | pickup_site_manager | referral
    earnings_type = db.Column(db.String(32), nullable=False)
    # pending | payable | paid
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    payable_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "agent_id": int(self.agent_id) if self.agent_id is not None else None,
            "order_id": int(self.order_id),
            "amount": float(self.amount or 0.0),
            "earnings_type": self.earnings_type or "",
            "status": self.status or "pending",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
