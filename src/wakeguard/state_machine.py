"""Challenge lifecycle: ``scheduled -> active -> success | fail -> settled``.

``ChallengeEngine`` is the only writer of ``Challenge.status``. Every
transition is a conditional write on the expected source states; losing it
means another caller already moved the challenge and the operation reports
``already_resolved`` instead of failing.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .clients.payments import ChargeResult, ChargeStatus, parse_charge_status
from .config import settings
from .errors import (
    AlreadyResolved,
    ChallengeExpired,
    ChallengeNotActive,
    ChallengeNotExpired,
    ChallengeNotFound,
    TerminalSettlementFailure,
    ValidationError,
)
from .metrics import challenge_transitions_total, terminal_settlement_failures_total
from .models.challenge import (
    Challenge,
    ChallengeStatus,
    FailureReason,
    JUDGED_STATUSES,
    PRE_JUDGMENT_STATUSES,
    SettlementOutcome,
)
from .models.notification import NotificationKind
from .models.payment import PaymentAttempt, PaymentStatus
from .notifications import NotificationQueue, notify
from .repository import ChallengeRepository
from .settlement import SettlementDecision, SettlementService
from .utils import geofence
from .utils.logging import challenge_logger, setup_logger
from .utils.timeutils import Clock, as_utc

logger = setup_logger(__name__)


@dataclass(frozen=True)
class PaymentSummary:
    attempt_id: str
    status: PaymentStatus
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    external_ref: Optional[str]
    failure_code: Optional[str]

    @classmethod
    def from_attempt(cls, attempt: PaymentAttempt) -> "PaymentSummary":
        return cls(
            attempt_id=attempt.id,
            status=attempt.status,
            retry_count=attempt.retry_count,
            max_retries=attempt.max_retries,
            next_retry_at=as_utc(attempt.next_retry_at),
            external_ref=attempt.external_ref,
            failure_code=attempt.failure_code,
        )


@dataclass(frozen=True)
class ChallengeOutcome:
    """What callers see after any engine operation."""
    challenge_id: str
    status: ChallengeStatus
    passed: Optional[bool] = None
    distance_meters: Optional[float] = None
    failure_reason: Optional[FailureReason] = None
    outcome: Optional[SettlementOutcome] = None
    payment: Optional[PaymentSummary] = None
    already_resolved: bool = False


def _derive_outcome(challenge: Challenge) -> Optional[SettlementOutcome]:
    if challenge.settlement_outcome is not None:
        return challenge.settlement_outcome
    if challenge.status is ChallengeStatus.FAIL:
        return SettlementOutcome.PAYMENT_PENDING_RETRY
    if challenge.status is ChallengeStatus.SUCCESS:
        return SettlementOutcome.NO_PENALTY
    return None


def _derive_distance(challenge: Challenge) -> Optional[float]:
    # An unjudgeable ping is stored without a distance but reported as infinitely far.
    if challenge.judged_distance_meters is None and challenge.failure_reason is FailureReason.OUT_OF_RANGE:
        return float("inf")
    return challenge.judged_distance_meters


class ChallengeEngine:
    def __init__(
        self,
        repository: ChallengeRepository,
        settlement: SettlementService,
        notifier: NotificationQueue,
        clock: Clock,
        config=settings,
    ):
        self.repository = repository
        self.settlement = settlement
        self.notifier = notifier
        self.clock = clock
        self.arrival_grace = timedelta(seconds=config.arrival_grace_seconds)
        self.max_clock_skew = timedelta(seconds=config.max_clock_skew_seconds)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, challenge_id: str) -> Challenge:
        challenge = await self.repository.get_challenge(challenge_id)
        if challenge is None:
            raise ChallengeNotFound(challenge_id)
        return challenge

    async def _transition(self, challenge_id: str, expected: Iterable[ChallengeStatus],
                          new_status: ChallengeStatus, **fields) -> None:
        won = await self.repository.transition_challenge(
            challenge_id, tuple(expected), new_status, self.clock.now(), **fields
        )
        challenge_transitions_total.labels(to_status=new_status.value, result='won' if won else 'lost').inc()
        if not won:
            current = await self.repository.get_challenge(challenge_id)
            raise AlreadyResolved(challenge_id, current.status.value if current else None)
        challenge_logger(logger, challenge_id).info(f"-> {new_status.value}")

    async def _view(self, challenge_id: str, already_resolved: bool = False) -> ChallengeOutcome:
        challenge = await self._load(challenge_id)
        attempt = await self.repository.get_payment_attempt_for_challenge(challenge_id)
        return ChallengeOutcome(
            challenge_id=challenge.id,
            status=challenge.status,
            passed=challenge.judgment_passed,
            distance_meters=_derive_distance(challenge),
            failure_reason=challenge.failure_reason,
            outcome=_derive_outcome(challenge),
            payment=PaymentSummary.from_attempt(attempt) if attempt is not None else None,
            already_resolved=already_resolved,
        )

    async def _notify(self, challenge_id: str, kind: NotificationKind) -> None:
        await notify(self.notifier, challenge_id, kind, self.clock.now())

    async def _finalize(self, challenge: Challenge, outcome: SettlementOutcome,
                        payment_unresolved: bool = False, payment_intent_ref: Optional[str] = None) -> bool:
        """Move a judged challenge to ``settled``; False if someone else did."""
        fields = dict(
            settled_at=self.clock.now(),
            settlement_outcome=outcome,
            payment_unresolved=payment_unresolved,
        )
        if payment_intent_ref:
            fields["payment_intent_ref"] = payment_intent_ref
        try:
            await self._transition(challenge.id, (ChallengeStatus.SUCCESS, ChallengeStatus.FAIL),
                                   ChallengeStatus.SETTLED, **fields)
        except AlreadyResolved:
            return False
        return True

    async def _apply_decision(self, challenge: Challenge, decision: SettlementDecision) -> None:
        log = challenge_logger(logger, challenge.id)
        outcome = decision.outcome

        if outcome is SettlementOutcome.PENALTY_CHARGED:
            if await self._finalize(challenge, outcome, payment_intent_ref=decision.external_ref):
                await self._notify(challenge.id, NotificationKind.PAYMENT_SUCCEEDED)
            return

        if outcome is SettlementOutcome.NO_PENALTY:
            await self._finalize(challenge, outcome)
            return

        if outcome is SettlementOutcome.MANUAL_PAYMENT_REQUIRED:
            if not await self._finalize(challenge, outcome, payment_unresolved=True,
                                        payment_intent_ref=decision.external_ref):
                return
            await self._notify(challenge.id, NotificationKind.PAYMENT_MANUAL_REQUIRED)
            terminal_settlement_failures_total.inc()
            log.error(f"Settlement needs manual handling after {decision.retry_count} retries ({decision.reason})")
            raise TerminalSettlementFailure(challenge.id, decision.attempt_id,
                                            decision.retry_count, decision.reason or "unknown")

        # Payment pending retry: the challenge stays in fail.
        if decision.external_ref and decision.external_ref != challenge.payment_intent_ref:
            await self.repository.update_challenge(challenge.id, self.clock.now(),
                                                   payment_intent_ref=decision.external_ref)
        if decision.declined:
            await self._notify(challenge.id, NotificationKind.PAYMENT_FAILED)

    async def _settle(self, challenge: Challenge) -> None:
        decision = await self.settlement.settle(challenge)
        await self._apply_decision(challenge, decision)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def activate(self, challenge_id: str) -> ChallengeOutcome:
        """``scheduled -> active`` once the window has opened."""
        challenge = await self._load(challenge_id)
        if challenge.status is not ChallengeStatus.SCHEDULED:
            return await self._view(challenge_id, already_resolved=True)

        now = self.clock.now()
        if now < as_utc(challenge.start_at):
            raise ChallengeNotActive(f"Challenge {challenge_id} starts at {as_utc(challenge.start_at).isoformat()}")
        if now > as_utc(challenge.end_at):
            raise ChallengeExpired(f"Challenge {challenge_id} ended at {as_utc(challenge.end_at).isoformat()}")

        try:
            await self._transition(challenge_id, (ChallengeStatus.SCHEDULED,), ChallengeStatus.ACTIVE)
        except AlreadyResolved:
            return await self._view(challenge_id, already_resolved=True)
        return await self._view(challenge_id)

    async def record_arrival(self, challenge_id: str, ping) -> ChallengeOutcome:
        """Judge an arrival claim and settle the result.

        ``ping`` is a ``LocationPing`` (or anything with the same attributes)
        already recorded by the caller. A repeated claim on a judged challenge
        returns the stored outcome and is never re-judged.
        """
        challenge = await self._load(challenge_id)
        log = challenge_logger(logger, challenge_id)

        if challenge.status in JUDGED_STATUSES:
            return await self._view(challenge_id, already_resolved=True)

        now = self.clock.now()
        start_at, end_at = as_utc(challenge.start_at), as_utc(challenge.end_at)
        if now < start_at:
            raise ChallengeNotActive(f"Challenge {challenge_id} starts at {start_at.isoformat()}")

        ping_challenge_id = getattr(ping, "challenge_id", None)
        if ping_challenge_id is not None and ping_challenge_id != challenge_id:
            raise ValidationError("Ping belongs to a different challenge")
        observed_at = as_utc(getattr(ping, "observed_at", None))
        if observed_at is None:
            raise ValidationError("Ping has no observation time")
        if observed_at > end_at or now > end_at + self.arrival_grace:
            raise ChallengeExpired(f"Challenge {challenge_id} ended at {end_at.isoformat()}")
        if observed_at < start_at:
            raise ValidationError("Ping was observed before the challenge started")
        if observed_at > now + self.max_clock_skew:
            raise ValidationError("Ping is timestamped in the future")

        if challenge.status is ChallengeStatus.SCHEDULED:
            try:
                await self._transition(challenge_id, (ChallengeStatus.SCHEDULED,), ChallengeStatus.ACTIVE)
            except AlreadyResolved as e:
                if e.current_status != ChallengeStatus.ACTIVE.value:
                    return await self._view(challenge_id, already_resolved=True)

        judgment = geofence.judge(ping, challenge.target_lat, challenge.target_lng,
                                  challenge.target_radius_meters)
        log.info(f"Judged arrival: passed={judgment.passed} distance={judgment.distance_meters:.1f}m")

        fields = dict(
            judged_at=now,
            judgment_passed=judgment.passed,
            # Infinity is not storable everywhere; an unjudgeable ping records no distance.
            judged_distance_meters=judgment.distance_meters if judgment.distance_meters != float("inf") else None,
        )
        new_status = ChallengeStatus.SUCCESS if judgment.passed else ChallengeStatus.FAIL
        if not judgment.passed:
            fields["failure_reason"] = FailureReason.OUT_OF_RANGE
        try:
            await self._transition(challenge_id, (ChallengeStatus.ACTIVE,), new_status, **fields)
        except AlreadyResolved:
            return await self._view(challenge_id, already_resolved=True)

        challenge = await self._load(challenge_id)
        if judgment.passed:
            await self._notify(challenge_id, NotificationKind.CHALLENGE_SUCCESS)
            await self._finalize(challenge, SettlementOutcome.NO_PENALTY)
        else:
            await self._notify(challenge_id, NotificationKind.CHALLENGE_FAILED)
            await self._settle(challenge)
        return await self._view(challenge_id)

    async def reconcile_expired(self, challenge_id: str) -> ChallengeOutcome:
        """Force an expired, unjudged challenge to ``fail`` (timeout) and settle it."""
        challenge = await self._load(challenge_id)
        if challenge.status in JUDGED_STATUSES:
            return await self._view(challenge_id, already_resolved=True)

        now = self.clock.now()
        if now <= as_utc(challenge.end_at):
            raise ChallengeNotExpired(f"Challenge {challenge_id} is open until {as_utc(challenge.end_at).isoformat()}")

        try:
            await self._transition(
                challenge_id, PRE_JUDGMENT_STATUSES, ChallengeStatus.FAIL,
                failure_reason=FailureReason.TIMEOUT, judged_at=now, judgment_passed=False,
            )
        except AlreadyResolved:
            return await self._view(challenge_id, already_resolved=True)

        challenge = await self._load(challenge_id)
        await self._notify(challenge_id, NotificationKind.CHALLENGE_FAILED)
        await self._settle(challenge)
        return await self._view(challenge_id)

    async def get_status(self, challenge_id: str) -> ChallengeOutcome:
        return await self._view(challenge_id)

    async def resume_settlement(self, challenge_id: str) -> ChallengeOutcome:
        """Finish a challenge left in ``success`` or ``fail`` by an interrupted run."""
        challenge = await self._load(challenge_id)
        if challenge.status is ChallengeStatus.SUCCESS:
            await self._finalize(challenge, SettlementOutcome.NO_PENALTY)
        elif challenge.status is ChallengeStatus.FAIL:
            existing = await self.repository.get_payment_attempt_for_challenge(challenge_id)
            await self._settle(challenge)
            view = await self._view(challenge_id)
            # An attempt that is still being worked leaves nothing to do here.
            if existing is not None and view.status is ChallengeStatus.FAIL:
                return replace(view, already_resolved=True)
            return view
        else:
            return await self._view(challenge_id, already_resolved=True)
        return await self._view(challenge_id)

    async def _attempt_and_challenge(self, attempt_id: str):
        attempt = await self.repository.get_payment_attempt(attempt_id)
        if attempt is None:
            raise ValidationError(f"Payment attempt {attempt_id} not found")
        return attempt, await self._load(attempt.challenge_id)

    async def retry_payment(self, attempt_id: str) -> ChallengeOutcome:
        """Retry a declined penalty charge (sweeper or user initiated)."""
        attempt, challenge = await self._attempt_and_challenge(attempt_id)
        if challenge.status is not ChallengeStatus.FAIL:
            await self.settlement.retire(attempt)
            return await self._view(challenge.id, already_resolved=True)

        decision = await self.settlement.retry(challenge, attempt)
        await self._apply_decision(challenge, decision)
        return await self._view(challenge.id, already_resolved=decision.already_resolved)

    async def resume_payment(self, attempt_id: str) -> ChallengeOutcome:
        """Re-drive an attempt stuck in flight under its own idempotency key."""
        attempt, challenge = await self._attempt_and_challenge(attempt_id)
        decision = await self.settlement.resume(challenge, attempt)
        if challenge.status is ChallengeStatus.FAIL:
            await self._apply_decision(challenge, decision)
        elif challenge.status is ChallengeStatus.SETTLED:
            await self._heal_unresolved(challenge, decision)
        return await self._view(challenge.id, already_resolved=decision.already_resolved)

    async def apply_charge_update(self, external_ref: str, status, failure_code: Optional[str] = None,
                                  failure_message: Optional[str] = None) -> ChallengeOutcome:
        """Apply a provider callback for the charge ``external_ref``."""
        attempt = await self.repository.get_payment_attempt_by_ref(external_ref)
        if attempt is None:
            raise ValidationError(f"No payment attempt for charge {external_ref}")
        challenge = await self._load(attempt.challenge_id)

        if not isinstance(status, ChargeStatus):
            status = parse_charge_status(status)
        result = ChargeResult(ref=external_ref, status=status, failure_code=failure_code,
                              failure_message=failure_message)
        decision = await self.settlement.apply_update(challenge, attempt, result)

        if challenge.status is ChallengeStatus.FAIL:
            await self._apply_decision(challenge, decision)
        elif challenge.status is ChallengeStatus.SETTLED:
            await self._heal_unresolved(challenge, decision)
        return await self._view(challenge.id, already_resolved=decision.already_resolved)

    async def _heal_unresolved(self, challenge: Challenge, decision: SettlementDecision) -> None:
        """A charge confirmed after manual handling was flagged clears the marker."""
        if decision.outcome is not SettlementOutcome.PENALTY_CHARGED or not challenge.payment_unresolved:
            return
        challenge_logger(logger, challenge.id).info("Late charge confirmation; clearing unresolved marker")
        await self.repository.update_challenge(
            challenge.id, self.clock.now(),
            payment_unresolved=False,
            settlement_outcome=SettlementOutcome.PENALTY_CHARGED,
            payment_intent_ref=decision.external_ref,
        )
        await self._notify(challenge.id, NotificationKind.PAYMENT_SUCCEEDED)
