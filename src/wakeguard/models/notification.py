# src/wakeguard/models/notification.py

from sqlalchemy import Column, String, ForeignKey, Enum
import enum

from .base import Base, TimestampedModel, UTCDateTime

class NotificationKind(enum.Enum):
    CHALLENGE_SUCCESS = "challenge_success"
    CHALLENGE_FAILED = "challenge_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_MANUAL_REQUIRED = "payment_manual_required"

class NotificationStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"

class NotificationRequest(Base, TimestampedModel):
    __tablename__ = "notification_requests"

    challenge_id    = Column(String(36), ForeignKey("challenges.id"), nullable=False, index=True)
    kind            = Column(Enum(NotificationKind), nullable=False)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    scheduled_at    = Column(UTCDateTime, nullable=False)
    status          = Column(Enum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING)
