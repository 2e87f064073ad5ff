from datetime import datetime

from marketcore.extensions import db


class EscrowTransaction(db.Model):
    __tablename__ = "escrow_transactions"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    # held | released | refunded
    status = db.Column(db.String(16), nullable=False, default="held", index=True)
    hold_reason = db.Column(db.String(240), nullable=True)

    released_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    release_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    released_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "amount": float(self.amount or 0.0),
            "status": self.status or "held",
            "hold_reason": self.hold_reason or "",
            "released_by": int(self.released_by) if self.released_by is not None else None,
            "release_reason": self.release_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }
