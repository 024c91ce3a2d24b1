"""Models package."""

from .account import Account
from .subscription_record import SubscriptionRecord
from .processed_transaction import ProcessedTransaction
