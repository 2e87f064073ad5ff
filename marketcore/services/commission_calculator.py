"""Platform markup and commission distribution.

Buyers pay the seller's purchasing price plus a 21% platform markup. The
markup (platform profit) is split between the participants of an order:

* fast-delivery agent (local orders): 50%
* pickup-delivery agent (physical orders): 70%
* pickup-site manager: 15%
* referrer: 15%
* platform: whatever is left

Every share is rounded half-up to the cent on its own and the platform share is
taken as the remainder of the rounded profit, so the shares always add up to
the rounded profit exactly.
"""
from __future__ import annotations

from decimal import Decimal

from marketcore.utils.money import round_money, to_decimal

PLATFORM_MARKUP = Decimal("0.21")

FAST_DELIVERY_AGENT_RATE = Decimal("0.50")
PICKUP_DELIVERY_AGENT_RATE = Decimal("0.70")
SITE_MANAGER_AGENT_RATE = Decimal("0.15")
REFERRAL_BUYER_RATE = Decimal("0.15")

ORDER_TYPE_LOCAL = "local"
ORDER_TYPE_PHYSICAL = "physical"

SHARE_KEYS = (
    "fast_delivery_agent",
    "pickup_delivery_agent",
    "site_manager_agent",
    "referral_buyer",
)


def normalize_order_type(value: str | None) -> str:
    kind = (value or ORDER_TYPE_PHYSICAL).strip().lower()
    return ORDER_TYPE_LOCAL if kind == ORDER_TYPE_LOCAL else ORDER_TYPE_PHYSICAL


def calculate_commissions(
    purchasing_price,
    order_type: str = ORDER_TYPE_PHYSICAL,
    *,
    has_referral: bool = False,
    has_psm: bool = False,
    has_delivery_agent: bool = True,
) -> dict:
    """Return the full commission breakdown for one order.

    Raises ValueError for a negative or non-numeric purchasing price.
    """
    purchasing = to_decimal(purchasing_price)
    if purchasing < 0:
        raise ValueError("purchasing_price must be non-negative")
    kind = normalize_order_type(order_type)

    selling = purchasing * (Decimal("1") + PLATFORM_MARKUP)
    profit = selling - purchasing

    shares = {key: Decimal("0") for key in SHARE_KEYS}
    if has_delivery_agent:
        if kind == ORDER_TYPE_LOCAL:
            shares["fast_delivery_agent"] = profit * FAST_DELIVERY_AGENT_RATE
        else:
            shares["pickup_delivery_agent"] = profit * PICKUP_DELIVERY_AGENT_RATE
    if has_psm:
        shares["site_manager_agent"] = profit * SITE_MANAGER_AGENT_RATE
    if has_referral:
        shares["referral_buyer"] = profit * REFERRAL_BUYER_RATE

    # Local orders without a referral always reserve half the profit for the
    # fast-delivery agent, even when no agent is attached yet.
    if kind == ORDER_TYPE_LOCAL and not has_referral:
        shares["fast_delivery_agent"] = profit * FAST_DELIVERY_AGENT_RATE

    rounded_profit = round_money(profit)
    rounded_shares = {key: round_money(value) for key, value in shares.items()}
    platform = rounded_profit - sum(rounded_shares.values(), Decimal("0"))
    if platform < 0:
        # Half-up rounding on a fully distributed profit can overshoot by a cent.
        largest = max(SHARE_KEYS, key=lambda key: rounded_shares[key])
        rounded_shares[largest] += platform
        platform = Decimal("0.00")
    total = sum(rounded_shares.values(), Decimal("0")) + platform

    return {
        "order_type": kind,
        "purchasing_price": float(round_money(purchasing)),
        "selling_price": float(round_money(selling)),
        "platform_profit": float(rounded_profit),
        "seller_payout": float(round_money(purchasing)),
        "fast_delivery_agent": float(rounded_shares["fast_delivery_agent"]),
        "pickup_delivery_agent": float(rounded_shares["pickup_delivery_agent"]),
        "site_manager_agent": float(rounded_shares["site_manager_agent"]),
        "referral_buyer": float(rounded_shares["referral_buyer"]),
        "platform_commission": float(platform),
        "total_distributed": float(total),
        "flags": {
            "has_referral": bool(has_referral),
            "has_psm": bool(has_psm),
            "has_delivery_agent": bool(has_delivery_agent),
        },
    }


def agent_commission(breakdown: dict, agent_role: str) -> float:
    role = (agent_role or "").strip().lower()
    if role == "psm":
        return float(breakdown.get("site_manager_agent") or 0.0)
    if role == "delivery":
        if breakdown.get("order_type") == ORDER_TYPE_LOCAL:
            return float(breakdown.get("fast_delivery_agent") or 0.0)
        return float(breakdown.get("pickup_delivery_agent") or 0.0)
    if role == "referral":
        return float(breakdown.get("referral_buyer") or 0.0)
    return 0.0


def commission_summary(purchasing_price, order_type: str = ORDER_TYPE_PHYSICAL, **flags) -> dict:
    breakdown = calculate_commissions(purchasing_price, order_type, **flags)
    kind = breakdown["order_type"]
    is_local = kind == ORDER_TYPE_LOCAL
    return {
        "order_type": kind,
        "purchasing_price": breakdown["purchasing_price"],
        "selling_price": breakdown["selling_price"],
        "platform_profit": breakdown["platform_profit"],
        "breakdown": {
            "delivery_agent": {
                "type": "Fast Delivery" if is_local else "Pickup Delivery",
                "percentage": "50%" if is_local else "70%",
                "amount": agent_commission(breakdown, "delivery"),
            },
            "site_manager": {"percentage": "15%", "amount": breakdown["site_manager_agent"]},
            "referral": {"percentage": "15%", "amount": breakdown["referral_buyer"]},
            "platform": {"percentage": "remainder", "amount": breakdown["platform_commission"]},
        },
        "total_distributed": breakdown["total_distributed"],
        "verification": abs(breakdown["total_distributed"] - breakdown["platform_profit"]) < 0.01,
    }
