"""Order model: a pending purchase intent keyed by provider reference."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, false
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Order(Base):
    """Purchase intent awaiting payment confirmation."""

    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.client_id"), nullable=False, index=True)
    requested_credits = Column(Integer, nullable=False, default=0)
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String, nullable=True)
    channel = Column(String, nullable=False, default="card")
    provider_reference = Column(String, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    webhook_processed = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    client = relationship("Client", back_populates="orders")
