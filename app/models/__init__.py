from .plan_model import SubscriptionPlan
from .subscription_model import Subscription
from .transaction_model import Transaction
from .subscription_history_model import SubscriptionHistory
from .payment_method_model import PaymentMethod

__all__ = [
    "SubscriptionPlan",
    "Subscription",
    "Transaction",
    "SubscriptionHistory",
    "PaymentMethod",
]
