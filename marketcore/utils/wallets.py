from __future__ import annotations

from datetime import datetime

from marketcore.extensions import db
from marketcore.models import UserWallet, WalletTransaction
from marketcore.utils.money import round_money


def get_or_create_wallet(user_id: int, *, lock: bool = False) -> UserWallet:
    q = UserWallet.query.filter_by(user_id=int(user_id))
    if lock:
        q = q.with_for_update()
    wallet = q.first()
    if wallet is None:
        wallet = UserWallet(user_id=int(user_id), balance=0.0)
        db.session.add(wallet)
        db.session.flush()
    return wallet


def post_txn(
    *,
    user_id: int,
    direction: str,
    amount,
    kind: str,
    reference: str | None = None,
    note: str = "",
    idempotency_key: str | None = None,
) -> WalletTransaction:
    """Append a ledger row and move the running balance.

    Does not commit: the caller owns the transaction so the ledger write lands
    together with whatever state change it pays for.
    """
    if user_id is None:
        raise ValueError("user_id required")
    direction = (direction or "").strip().lower()
    if direction not in ("credit", "debit"):
        raise ValueError("direction must be credit or debit")
    value = round_money(amount)
    if value < 0:
        raise ValueError("amount must be non-negative")

    key = (idempotency_key or "").strip()[:160] or None
    if key:
        existing = WalletTransaction.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing

    wallet = get_or_create_wallet(int(user_id), lock=True)
    current = round_money(wallet.balance or 0)
    new_balance = current + value if direction == "credit" else current - value
    wallet.balance = float(new_balance)
    wallet.updated_at = datetime.utcnow()

    row = WalletTransaction(
        user_id=int(user_id),
        direction=direction,
        amount=float(value),
        balance_after=float(new_balance),
        kind=(kind or "adjustment")[:40],
        reference=(reference or "")[:120] or None,
        note=(note or "")[:240] or None,
        idempotency_key=key,
    )
    db.session.add(wallet)
    db.session.add(row)
    db.session.flush()
    return row


def wallet_summary(user_id: int, *, limit: int = 50) -> dict:
    wallet = UserWallet.query.filter_by(user_id=int(user_id)).first()
    rows = (
        WalletTransaction.query.filter_by(user_id=int(user_id))
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return {
        "balance": round(float(wallet.balance or 0.0), 2) if wallet else 0.0,
        "currency": (wallet.currency if wallet else "RWF") or "RWF",
        "transactions": [r.to_dict() for r in rows],
    }
