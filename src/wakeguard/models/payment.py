# src/wakeguard/models/payment.py

from sqlalchemy import Column, String, ForeignKey, Enum, Integer
import enum

from .base import Base, TimestampedModel, UTCDateTime

class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

IN_FLIGHT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

class PaymentAttempt(Base, TimestampedModel):
    """One settlement record per challenge; the financial audit trail."""
    __tablename__ = "payment_attempts"

    challenge_id    = Column(String(36), ForeignKey("challenges.id"), nullable=False, unique=True)
    external_ref    = Column(String, nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=False)
    amount          = Column(Integer, nullable=False)
    currency        = Column(String(3), nullable=False)
    status          = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    retry_count     = Column(Integer, nullable=False, default=0)
    max_retries     = Column(Integer, nullable=False, default=3)
    next_retry_at   = Column(UTCDateTime, nullable=True)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    failure_code    = Column(String, nullable=True)
    failure_message = Column(String, nullable=True)

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries
