"""PaymentEvent model linking provider events, orders and verification payloads."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from database import Base


class PaymentEvent(Base):
    """Traceability record for a settled (or unroutable) payment notification."""

    __tablename__ = "payment_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=True, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    provider = Column(String, nullable=False, default="paystack")
    reference = Column(String, nullable=True, index=True)
    event_name = Column(String, nullable=True)
    status = Column(String, nullable=True)
    outcome = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    verification = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
