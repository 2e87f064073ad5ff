from __future__ import annotations

import json
import logging
from datetime import datetime

from marketcore.errors import ErrorKind, fail, ok
from marketcore.extensions import db
from marketcore.models import AdminAction, EscrowTransaction, Order
from marketcore.utils.events import log_and_commit
from marketcore.utils.wallets import post_txn

logger = logging.getLogger(__name__)


class EscrowStatus:
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"

    ALLOWED = {
        HELD: {RELEASED, REFUNDED},
        RELEASED: set(),
        REFUNDED: set(),
    }


def hold_escrow(order: Order, *, reason: str = "payment_confirmed") -> EscrowTransaction:
    """Stage a held escrow row for a paid order. Idempotent per order; caller commits."""
    if order is None:
        raise ValueError("order required")
    existing = EscrowTransaction.query.filter_by(order_id=int(order.id)).first()
    if existing:
        return existing
    row = EscrowTransaction(
        order_id=int(order.id),
        buyer_id=int(order.buyer_id),
        seller_id=int(order.seller_id),
        amount=float(order.seller_payout or 0.0),
        status=EscrowStatus.HELD,
        hold_reason=(reason or "")[:240],
    )
    db.session.add(row)
    db.session.flush()
    return row


def record_admin_action(admin_id: int, action_type: str, *, target_type: str, target_id: int, details: dict) -> AdminAction:
    row = AdminAction(
        admin_id=int(admin_id),
        action_type=action_type[:64],
        target_type=target_type[:64],
        target_id=int(target_id),
        details_json=json.dumps(details, default=str)[:4000],
    )
    db.session.add(row)
    return row


def _settle(escrow_id: int, *, admin_id: int | None, reason: str, target: str) -> dict:
    if admin_id is None:
        raise ValueError("admin_id required")
    verb = "release" if target == EscrowStatus.RELEASED else "refund"
    try:
        escrow = (
            EscrowTransaction.query.filter_by(id=int(escrow_id))
            .with_for_update()
            .first()
        )
        if escrow is None:
            db.session.rollback()
            return fail(ErrorKind.NOT_FOUND, "Escrow transaction not found")
        current = (escrow.status or "").strip().lower()
        if target not in EscrowStatus.ALLOWED.get(current, set()):
            db.session.rollback()
            return fail(
                ErrorKind.INVALID_STATE,
                f"Escrow is {current}, only held escrow can be {target}",
                current_status=current,
            )

        now = datetime.utcnow()
        beneficiary_id = int(escrow.seller_id) if target == EscrowStatus.RELEASED else int(escrow.buyer_id)
        amount = float(escrow.amount or 0.0)
        escrow.status = target
        escrow.released_at = now
        escrow.released_by = int(admin_id)
        escrow.release_reason = (reason or "")[:240] or None
        db.session.add(escrow)

        txn = post_txn(
            user_id=beneficiary_id,
            direction="credit",
            amount=amount,
            kind=f"escrow_{verb}",
            reference=f"escrow:{int(escrow.id)}",
            note=f"Escrow {verb} for order #{int(escrow.order_id)}",
            idempotency_key=f"escrow_{verb}:{int(escrow.id)}",
        )
        record_admin_action(
            int(admin_id),
            f"escrow_{verb}",
            target_type="escrow_transaction",
            target_id=int(escrow.id),
            details={
                "order_id": int(escrow.order_id),
                "amount": amount,
                "beneficiary_user_id": beneficiary_id,
                "reason": reason or "",
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("escrow_%s_failed escrow_id=%s", verb, escrow_id)
        return fail(ErrorKind.INTERNAL, f"Failed to {verb} escrow")

    log_and_commit(
        f"escrow_{target}",
        actor_user_id=int(admin_id),
        order_id=int(escrow.order_id),
        subject_type="escrow_transaction",
        subject_id=int(escrow.id),
        idempotency_key=f"escrow_{target}:{int(escrow.id)}",
        metadata={"amount": amount, "reason": reason or ""},
    )
    return ok(
        message=f"Escrow {target} successfully",
        escrow=escrow.to_dict(),
        transaction_id=int(escrow.id),
        wallet_transaction_id=int(txn.id),
        amount=amount,
        status=target,
    )


def release_escrow(escrow_id: int, *, admin_id: int | None, reason: str = "") -> dict:
    """Pay the held amount out to the seller's wallet."""
    return _settle(escrow_id, admin_id=admin_id, reason=reason, target=EscrowStatus.RELEASED)


def refund_escrow(escrow_id: int, *, admin_id: int | None, reason: str = "") -> dict:
    """Return the held amount, i.e. the seller payout, to the buyer's wallet."""
    return _settle(escrow_id, admin_id=admin_id, reason=reason, target=EscrowStatus.REFUNDED)


def list_escrow_transactions(*, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 100))
    q = EscrowTransaction.query
    wanted = (status or "").strip().lower()
    if wanted:
        if wanted not in EscrowStatus.ALLOWED:
            return fail(ErrorKind.INVALID_INPUT, f"Unknown escrow status {wanted}")
        q = q.filter_by(status=wanted)
    total = q.count()
    rows = (
        q.order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return ok(
        transactions=[r.to_dict() for r in rows],
        pagination={
            "page": page,
            "limit": limit,
            "total": int(total),
            "pages": (int(total) + limit - 1) // limit,
        },
    )


def escrow_stats() -> dict:
    out = {}
    for status in EscrowStatus.ALLOWED:
        rows = EscrowTransaction.query.filter_by(status=status).all()
        out[status] = {
            "count": len(rows),
            "amount": round(sum(float(r.amount or 0.0) for r in rows), 2),
        }
    return ok(stats=out)
