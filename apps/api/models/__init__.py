"""Models package."""

from .client import Client
from .order import Order
from .credit_log import CreditLogEntry
from .processed_event import ProcessedEvent
from .webhook_retry import RetryQueueEntry
from .payment_event import PaymentEvent
