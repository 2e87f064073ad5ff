from __future__ import annotations

import logging
from decimal import Decimal

from marketcore.errors import ErrorKind, fail, ok
from marketcore.extensions import db
from marketcore.models import PlatformSetting, Product
from marketcore.services.commission_calculator import calculate_commissions, normalize_order_type
from marketcore.utils.money import round_money, to_decimal

logger = logging.getLogger(__name__)

DELIVERY_SETTINGS_CATEGORY = "delivery"

DEFAULT_DELIVERY_SETTINGS = {
    "home_delivery_fee_percent": Decimal("6.0"),
    "home_delivery_flat_fee": Decimal("0"),
    "pickup_delivery_fee": Decimal("0"),
}

DELIVERY_HOME = "home"
DELIVERY_PICKUP = "pickup"


def normalize_delivery_type(value: str | None) -> str:
    kind = (value or DELIVERY_HOME).strip().lower()
    if kind in ("pickup", "pickup_site", "pickup_delivery"):
        return DELIVERY_PICKUP
    return DELIVERY_HOME


def delivery_fee_settings() -> dict:
    """Delivery fee policy from platform_settings, falling back to defaults per key."""
    out = dict(DEFAULT_DELIVERY_SETTINGS)
    try:
        rows = PlatformSetting.query.filter_by(category=DELIVERY_SETTINGS_CATEGORY).all()
    except Exception as e:
        logger.warning("delivery_settings_unavailable err=%s", e)
        return out
    for row in rows:
        key = (row.setting_key or "").strip()
        if key not in out:
            continue
        try:
            value = to_decimal(row.setting_value)
        except ValueError:
            logger.warning("delivery_setting_invalid key=%s value=%r", key, row.setting_value)
            continue
        if value >= 0:
            out[key] = value
    return out


def compute_delivery_fee(base_price: Decimal, delivery_type: str, settings: dict | None = None) -> Decimal:
    cfg = settings or delivery_fee_settings()
    if normalize_delivery_type(delivery_type) == DELIVERY_PICKUP:
        return round_money(cfg["pickup_delivery_fee"])
    percent_part = base_price * cfg["home_delivery_fee_percent"] / Decimal("100")
    return round_money(percent_part + cfg["home_delivery_flat_fee"])


def calculate_buyer_price(
    base_price,
    delivery_type: str = DELIVERY_HOME,
    marketplace_type: str = "physical",
    *,
    show_delivery_fee: bool = False,
) -> dict:
    """Price a basket for the buyer.

    Regular buyers get "free delivery": the fee is still charged and kept in
    final_price, it is just not shown separately. Manual orders placed by a
    pickup-site manager surface the real fee.
    """
    try:
        base = round_money(base_price)
    except ValueError:
        return fail(ErrorKind.INVALID_INPUT, "base price must be a number")
    if base < 0:
        return fail(ErrorKind.INVALID_INPUT, "base price must be non-negative")

    kind = normalize_order_type(marketplace_type)
    breakdown = calculate_commissions(base, kind, has_delivery_agent=False)
    margin = round_money(breakdown["platform_profit"])
    fee = compute_delivery_fee(base, delivery_type)
    final = base + margin + fee

    hidden = not show_delivery_fee
    return ok(
        base_price=float(base),
        platform_margin=float(margin),
        delivery_fee=float(fee),
        final_price=float(final),
        display_price=float(final if hidden else base + margin),
        seller_payout=float(base),
        customer_visible_delivery_fee=0.0 if hidden else float(fee),
        delivery_fee_hidden=hidden,
        delivery_type=normalize_delivery_type(delivery_type),
        marketplace_type=kind,
    )


def quote_delivery(items: list | None, *, is_manual_order: bool = False, delivery_type: str = DELIVERY_HOME) -> dict:
    """Checkout preview for a list of {product_id, quantity} lines."""
    if not isinstance(items, list) or not items:
        return fail(ErrorKind.INVALID_INPUT, "items required")
    subtotal = Decimal("0")
    marketplace_type = None
    for line in items:
        if not isinstance(line, dict):
            return fail(ErrorKind.INVALID_INPUT, "each item must be an object")
        try:
            product_id = int(line.get("product_id"))
            quantity = int(line.get("quantity") or 1)
        except (TypeError, ValueError):
            return fail(ErrorKind.INVALID_INPUT, "product_id and quantity must be integers")
        if quantity < 1:
            return fail(ErrorKind.INVALID_INPUT, "quantity must be at least 1")
        product = db.session.get(Product, product_id)
        if product is None or not product.is_active:
            return fail(ErrorKind.NOT_FOUND, f"product {product_id} not found")
        subtotal += round_money(product.price or 0) * quantity
        marketplace_type = marketplace_type or product.marketplace_type

    pricing = calculate_buyer_price(
        subtotal,
        delivery_type if is_manual_order else DELIVERY_HOME,
        marketplace_type or "physical",
        show_delivery_fee=is_manual_order,
    )
    if not pricing.get("ok"):
        return pricing
    return ok(
        calculation={
            "subtotal": float(round_money(subtotal)),
            "delivery_fee": pricing["customer_visible_delivery_fee"],
            "actual_delivery_fee": pricing["delivery_fee"],
            "delivery_fee_hidden": pricing["delivery_fee_hidden"],
            "platform_margin": pricing["platform_margin"],
            "seller_payout": pricing["seller_payout"],
            "total": pricing["final_price"],
        },
        delivery_type=pricing["delivery_type"],
        free_delivery_message=None if is_manual_order else "Free home delivery included!",
    )
