"""Client balance model."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, false
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Client(Base):
    """Authoritative credits balance for a client."""

    __tablename__ = "clients"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_clients_credits_non_negative"),)

    client_id = Column(String, primary_key=True)
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    blocked = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    credit_logs = relationship("CreditLogEntry", back_populates="client")
    orders = relationship("Order", back_populates="client")
