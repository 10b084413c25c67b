"""Models package."""

from .user import User
from .payment_record import PaymentRecord
from .credit_transaction import CreditTransaction
from .webhook_event import WebhookEvent
