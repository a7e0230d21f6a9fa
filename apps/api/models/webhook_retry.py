"""Retry queue model for webhook events that could not be settled yet."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class RetryQueueEntry(Base):
    """Unsettled notification, upserted by event id and replayed later."""

    __tablename__ = "webhook_retry_queue"

    event_id = Column(String, primary_key=True)
    event_name = Column(String, nullable=True)
    reference = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
