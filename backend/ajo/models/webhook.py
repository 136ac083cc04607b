"""
Webhook Event Model: One row per authentic gateway delivery.
The raw payload is not kept: charge events carry card metadata.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, String, Integer, DateTime, Text

from ajo.database import Base


class WebhookState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_VALID = "signature_valid"
    SIGNATURE_INVALID = "signature_invalid"   # logged only, never stored
    PROCESSED = "processed"
    IGNORED = "ignored"
    PROCESS_FAILED = "process_failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    event_type = Column(String(64), nullable=False)
    reference = Column(String(100), index=True)
    payload_digest = Column(String(64), nullable=False)   # SHA-256 of the raw body

    state = Column(String(24), default=WebhookState.SIGNATURE_VALID.value, nullable=False, index=True)
    outcome = Column(String(32))
    error = Column(Text)

    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
