"""CreditLogEntry model: append-only audit trail of balance mutations."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLogEntry(Base):
    """Immutable record of one balance change."""

    __tablename__ = "credit_logs"
    __table_args__ = (Index("ix_credit_logs_client_created", "client_id", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.client_id"), nullable=False, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    delta = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    actor = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    reference = Column(String, nullable=True, index=True)
    processed_event_id = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    client = relationship("Client", back_populates="credit_logs")
