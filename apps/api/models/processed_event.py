"""ProcessedEvent model: the webhook idempotency gate."""

import uuid

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class ProcessedEvent(Base):
    """One row per distinct provider event id ever accepted."""

    __tablename__ = "processed_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_name = Column(String, nullable=False)
    reference = Column(String, nullable=True, index=True)
    status = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
