"""Models package."""

from .account import Account, SubscriptionStatus
from .consumption_audit import ConsumptionAuditEntry
from .purchase_event import PurchaseEvent
from .subscription_event import SubscriptionEvent
