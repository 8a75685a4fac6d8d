import math
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models.challenge import PingSource


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


class ArrivalRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_meters: Optional[float] = None
    observed_at: datetime
    source: PingSource = PingSource.GPS


class PaymentSummaryResponse(BaseModel):
    attempt_id: str
    status: str
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    external_ref: Optional[str] = None
    failure_code: Optional[str] = None


class ChallengeOutcomeResponse(BaseModel):
    challenge_id: str
    status: str
    passed: Optional[bool] = None
    distance_meters: Optional[float] = None
    failure_reason: Optional[str] = None
    outcome: Optional[str] = None
    payment: Optional[PaymentSummaryResponse] = None
    already_resolved: bool = False
    manual_payment_required: bool = False

    @classmethod
    def from_outcome(cls, outcome, manual_payment_required: bool = False) -> "ChallengeOutcomeResponse":
        payment = None
        if outcome.payment is not None:
            p = outcome.payment
            payment = PaymentSummaryResponse(
                attempt_id=p.attempt_id,
                status=p.status.value,
                retry_count=p.retry_count,
                max_retries=p.max_retries,
                next_retry_at=p.next_retry_at,
                external_ref=p.external_ref,
                failure_code=p.failure_code,
            )
        return cls(
            challenge_id=outcome.challenge_id,
            status=outcome.status.value,
            passed=outcome.passed,
            # JSON has no infinity; an unjudgeable ping goes out as null.
            distance_meters=outcome.distance_meters if _finite(outcome.distance_meters) else None,
            failure_reason=outcome.failure_reason.value if outcome.failure_reason else None,
            outcome=outcome.outcome.value if outcome.outcome else None,
            payment=payment,
            already_resolved=outcome.already_resolved,
            manual_payment_required=manual_payment_required,
        )


class ChargeEvent(BaseModel):
    """Asynchronous charge result pushed by the payment provider."""
    charge_ref: str
    status: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class TimeResponse(BaseModel):
    server_time: datetime
    offset_ms: Optional[int] = None
