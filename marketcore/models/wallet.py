from datetime import datetime

from marketcore.extensions import db


class UserWallet(db.Model):
    __tablename__ = "user_wallets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    balance = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(8), nullable=False, default="RWF")
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "user_id": int(self.user_id),
            "balance": round(float(self.balance or 0.0), 2),
            "currency": self.currency or "RWF",
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # credit | debit
    direction = db.Column(db.String(8), nullable=False, default="credit")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    balance_after = db.Column(db.Float, nullable=False, default=0.0)
    kind = db.Column(db.String(40), nullable=False, index=True)
    reference = db.Column(db.String(120), nullable=True, index=True)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "direction": self.direction or "credit",
            "amount": float(self.amount or 0.0),
            "balance_after": float(self.balance_after or 0.0),
            "kind": self.kind or "",
            "reference": self.reference or "",
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
