from marketcore.models.user import User
from marketcore.models.agent import Agent
from marketcore.models.product import Product, CartItem
from marketcore.models.pickup_site import PickupSite
from marketcore.models.order import Order, OrderItem, OrderTracking
from marketcore.models.commission import AgentEarning
from marketcore.models.referral import ReferralLink, ReferralPurchase
from marketcore.models.escrow import EscrowTransaction
from marketcore.models.wallet import UserWallet, WalletTransaction
from marketcore.models.audit import AdminAction
from marketcore.models.delivery_issue import DeliveryIssue, AgentRating
from marketcore.models.settings import PlatformSetting
from marketcore.models.platform_event import PlatformEvent

__all__ = [
    "User",
    "Agent",
    "Product",
    "CartItem",
    "PickupSite",
    "Order",
    "OrderItem",
    "OrderTracking",
    "AgentEarning",
    "ReferralLink",
    "ReferralPurchase",
    "EscrowTransaction",
    "UserWallet",
    "WalletTransaction",
    "AdminAction",
    "DeliveryIssue",
    "AgentRating",
    "PlatformSetting",
    "PlatformEvent",
]
