from __future__ import annotations

import logging
import secrets
from datetime import datetime

from marketcore.extensions import db
from marketcore.models import AgentEarning, Order, ReferralLink, ReferralPurchase, User
from marketcore.utils.wallets import post_txn

logger = logging.getLogger(__name__)

EARNING_TYPE_REFERRAL = "referral"


def _now() -> datetime:
    return datetime.utcnow()


def normalize_referral_code(value: str | None) -> str:
    text = (value or "").strip().upper().replace(" ", "")
    return "".join(ch for ch in text if ch.isalnum() or ch in "-_")[:64]


def create_referral_link(user: User, *, product_id: int | None = None) -> ReferralLink:
    if user is None:
        raise ValueError("user required")
    for _ in range(20):
        code = f"REF{int(user.id):04d}{secrets.token_hex(3).upper()}"
        if ReferralLink.query.filter_by(referral_code=code).first() is None:
            break
    else:
        code = f"REF{secrets.token_hex(6).upper()}"
    link = ReferralLink(
        referrer_user_id=int(user.id),
        product_id=int(product_id) if product_id is not None else None,
        referral_code=code,
        status="active",
    )
    db.session.add(link)
    db.session.commit()
    return link


def ensure_referral_link(user: User) -> ReferralLink:
    """The user's general (not product-bound) active link, created on first use."""
    link = (
        ReferralLink.query.filter_by(referrer_user_id=int(user.id), product_id=None, status="active")
        .order_by(ReferralLink.id.asc())
        .first()
    )
    return link or create_referral_link(user)


def resolve_referral(code: str | None, *, buyer_id: int) -> ReferralLink | None:
    """Active link for `code`, or None. Unknown codes and self-referrals are ignored."""
    normalized = normalize_referral_code(code)
    if not normalized:
        return None
    link = ReferralLink.query.filter_by(referral_code=normalized, status="active").first()
    if link is None:
        logger.info("referral_code_ignored code=%s reason=not_found_or_inactive", normalized)
        return None
    if int(link.referrer_user_id) == int(buyer_id):
        logger.warning("referral_code_ignored code=%s reason=self_referral buyer_id=%s", normalized, buyer_id)
        return None
    return link


def record_referral_purchase(order: Order, link: ReferralLink, *, commission_amount: float) -> ReferralPurchase:
    """Stage the referral bookkeeping for a new order. Caller commits."""
    purchase = ReferralPurchase(
        referral_link_id=int(link.id),
        order_id=int(order.id),
        buyer_id=int(order.buyer_id),
        referrer_user_id=int(link.referrer_user_id),
        commission_amount=float(commission_amount),
        status="pending",
    )
    earning = AgentEarning(
        user_id=int(link.referrer_user_id),
        agent_id=None,
        order_id=int(order.id),
        amount=float(commission_amount),
        earnings_type=EARNING_TYPE_REFERRAL,
        status="pending",
    )
    link.usage_count = int(link.usage_count or 0) + 1
    db.session.add_all([purchase, earning, link])
    return purchase


def settle_referral_for_order(order: Order) -> dict:
    """Credit the referrer once the buyer's payment is confirmed. Caller commits."""
    purchase = ReferralPurchase.query.filter_by(order_id=int(order.id)).first()
    if purchase is None:
        return {"ok": True, "settled": False, "reason": "NO_REFERRAL"}
    if (purchase.status or "") == "paid":
        return {"ok": True, "settled": False, "reason": "ALREADY_PAID"}

    now = _now()
    earning = AgentEarning.query.filter_by(
        order_id=int(order.id), earnings_type=EARNING_TYPE_REFERRAL
    ).first()
    amount = float(purchase.commission_amount or 0.0)
    if amount > 0:
        post_txn(
            user_id=int(purchase.referrer_user_id),
            direction="credit",
            amount=amount,
            kind="referral_commission",
            reference=order.order_number,
            note=f"Referral commission for order {order.order_number}",
            idempotency_key=f"referral_commission:{int(order.id)}",
        )
    purchase.status = "paid"
    purchase.paid_at = now
    db.session.add(purchase)
    if earning is not None:
        earning.status = "paid"
        earning.payable_at = earning.payable_at or now
        earning.paid_at = now
        db.session.add(earning)
    return {"ok": True, "settled": True, "amount": amount, "referrer_user_id": int(purchase.referrer_user_id)}


def referral_stats_for_user(user_id: int) -> dict:
    rows = ReferralPurchase.query.filter_by(referrer_user_id=int(user_id)).all()
    paid = [r for r in rows if (r.status or "") == "paid"]
    return {
        "ok": True,
        "purchases": len(rows),
        "paid": len(paid),
        "pending": len(rows) - len(paid),
        "earned": round(sum(float(r.commission_amount or 0.0) for r in paid), 2),
    }
