# src/wakeguard/models/challenge.py

from sqlalchemy import Column, String, Float, ForeignKey, Enum, Boolean, Integer, CheckConstraint
import enum

from .base import Base, TimestampedModel, UTCDateTime

class ChallengeStatus(enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SUCCESS = "success"
    FAIL = "fail"
    SETTLED = "settled"

PRE_JUDGMENT_STATUSES = (ChallengeStatus.SCHEDULED, ChallengeStatus.ACTIVE)
JUDGED_STATUSES = (ChallengeStatus.SUCCESS, ChallengeStatus.FAIL, ChallengeStatus.SETTLED)

class SettlementOutcome(enum.Enum):
    NO_PENALTY = "no_penalty"
    PENALTY_CHARGED = "penalty_charged"
    PAYMENT_PENDING_RETRY = "payment_pending_retry"
    MANUAL_PAYMENT_REQUIRED = "manual_payment_required"

class FailureReason(enum.Enum):
    OUT_OF_RANGE = "out_of_range"
    TIMEOUT = "timeout"

class PingSource(enum.Enum):
    GPS = "gps"
    NETWORK = "network"
    QR = "qr"
    MANUAL = "manual"

class Challenge(Base, TimestampedModel):
    __tablename__ = "challenges"
    __table_args__ = (
        CheckConstraint("start_at < end_at", name="ck_challenge_window"),
        CheckConstraint("penalty_amount >= 0", name="ck_challenge_penalty"),
    )

    user_id                = Column(String, nullable=False, index=True)
    customer_ref           = Column(String, nullable=True)
    start_at               = Column(UTCDateTime, nullable=False)
    end_at                 = Column(UTCDateTime, nullable=False, index=True)

    home_lat               = Column(Float, nullable=True)
    home_lng               = Column(Float, nullable=True)
    target_lat             = Column(Float, nullable=False)
    target_lng             = Column(Float, nullable=False)
    target_radius_meters   = Column(Float, nullable=False, default=100.0)

    penalty_amount         = Column(Integer, nullable=False, default=0)
    currency               = Column(String(3), nullable=False, default="jpy")
    payment_intent_ref     = Column(String, nullable=True)

    status                 = Column(Enum(ChallengeStatus), nullable=False, default=ChallengeStatus.SCHEDULED, index=True)
    failure_reason         = Column(Enum(FailureReason), nullable=True)
    judged_at              = Column(UTCDateTime, nullable=True)
    judgment_passed        = Column(Boolean, nullable=True)
    judged_distance_meters = Column(Float, nullable=True)

    settled_at             = Column(UTCDateTime, nullable=True)
    settlement_outcome     = Column(Enum(SettlementOutcome), nullable=True)
    payment_unresolved     = Column(Boolean, nullable=False, default=False)


class LocationPing(Base, TimestampedModel):
    __tablename__ = "location_pings"

    challenge_id    = Column(String(36), ForeignKey("challenges.id"), nullable=False, index=True)
    lat             = Column(Float, nullable=False)
    lng             = Column(Float, nullable=False)
    accuracy_meters = Column(Float, nullable=True)
    observed_at     = Column(UTCDateTime, nullable=False)
    source          = Column(Enum(PingSource), nullable=False, default=PingSource.GPS)
    is_valid        = Column(Boolean, nullable=False, default=False)
