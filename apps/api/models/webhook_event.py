"""WebhookEvent model for deduplicating provider notifications."""

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, false
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """One row per provider event id; a second delivery finds the row and stops."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False, server_default=false())
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
