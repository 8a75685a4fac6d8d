"""Penalty settlement: everything that touches ``PaymentAttempt`` rows.

The settlement service never writes challenge status. It returns a
``SettlementDecision`` and the state machine applies it. Each provider call
goes out under a key from ``utils.idempotency`` and every attempt write is
conditional on the status the writer last observed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .clients.payments import ChargeMetadata, ChargeResult, ChargeStatus, PaymentGateway
from .config import settings
from .errors import PaymentProviderError
from .metrics import settlement_attempts_total
from .models.base import new_id
from .models.challenge import Challenge, SettlementOutcome
from .models.payment import IN_FLIGHT_STATUSES, PaymentAttempt, PaymentStatus
from .utils import idempotency
from .utils.logging import challenge_logger, setup_logger
from .utils.timeutils import Clock, as_utc

logger = setup_logger(__name__)

NO_PAYMENT_METHOD = "no_payment_method"

# Backoff exponents past this are always capped.
_MAX_BACKOFF_EXPONENT = 32


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base: timedelta = timedelta(minutes=15)
    backoff_cap: timedelta = timedelta(hours=24)
    retry_window: timedelta = timedelta(hours=24)
    stale_after: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, config=settings) -> "RetryPolicy":
        return cls(
            max_retries=config.max_payment_retries,
            backoff_base=timedelta(seconds=config.retry_backoff_base_seconds),
            backoff_cap=timedelta(seconds=config.retry_backoff_cap_seconds),
            retry_window=timedelta(hours=config.retry_window_hours),
            stale_after=timedelta(seconds=config.stale_after_seconds),
        )

    def backoff(self, retry_count: int) -> timedelta:
        """``base * 2**retry_count``, capped."""
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        if retry_count >= _MAX_BACKOFF_EXPONENT:
            return self.backoff_cap
        return min(self.backoff_base * (2 ** retry_count), self.backoff_cap)

    def next_retry_at(self, retry_count: int, now: datetime, previous: Optional[datetime] = None) -> datetime:
        candidate = now + self.backoff(retry_count)
        previous = as_utc(previous)
        if previous is not None and previous > candidate:
            return previous
        return candidate

    def outside_window(self, attempt: PaymentAttempt, now: datetime) -> bool:
        return now - as_utc(attempt.created_at) > self.retry_window

    def exhausted(self, attempt: PaymentAttempt, now: datetime) -> bool:
        return attempt.retries_exhausted or self.outside_window(attempt, now)


@dataclass(frozen=True)
class SettlementDecision:
    outcome: SettlementOutcome
    attempt_id: Optional[str] = None
    external_ref: Optional[str] = None
    retry_count: int = 0
    declined: bool = False
    already_resolved: bool = False
    reason: Optional[str] = None


class SettlementService:
    def __init__(self, repository, gateway: PaymentGateway, clock: Clock, policy: RetryPolicy = None):
        self.repository = repository
        self.gateway = gateway
        self.clock = clock
        self.policy = policy or RetryPolicy.from_settings()

    def decision_for(self, attempt: PaymentAttempt, already_resolved: bool = False) -> SettlementDecision:
        """What a stored attempt means for its challenge right now."""
        if attempt.status is PaymentStatus.SUCCEEDED:
            outcome = SettlementOutcome.PENALTY_CHARGED
        elif attempt.status is PaymentStatus.CANCELED:
            outcome = SettlementOutcome.MANUAL_PAYMENT_REQUIRED
        elif attempt.status is PaymentStatus.FAILED and self.policy.exhausted(attempt, self.clock.now()):
            outcome = SettlementOutcome.MANUAL_PAYMENT_REQUIRED
        else:
            outcome = SettlementOutcome.PAYMENT_PENDING_RETRY
        return SettlementDecision(
            outcome=outcome,
            attempt_id=attempt.id,
            external_ref=attempt.external_ref,
            retry_count=attempt.retry_count,
            already_resolved=already_resolved,
            reason=attempt.failure_code,
        )

    async def _reread(self, attempt_id: str) -> SettlementDecision:
        current = await self.repository.get_payment_attempt(attempt_id)
        return self.decision_for(current, already_resolved=True)

    async def settle(self, challenge: Challenge) -> SettlementDecision:
        """First settlement of a failed challenge."""
        log = challenge_logger(logger, challenge.id)
        existing = await self.repository.get_payment_attempt_for_challenge(challenge.id)
        if existing is not None:
            log.info(f"Payment attempt {existing.id} already exists ({existing.status.value})")
            return self.decision_for(existing)

        if challenge.penalty_amount == 0:
            log.info("No penalty configured; nothing to charge")
            return SettlementDecision(outcome=SettlementOutcome.NO_PENALTY)

        now = self.clock.now()
        attempt = PaymentAttempt(
            id=new_id(),
            challenge_id=challenge.id,
            idempotency_key=idempotency.settlement_create(challenge.id),
            amount=challenge.penalty_amount,
            currency=challenge.currency or settings.payment_currency,
            status=PaymentStatus.PENDING,
            retry_count=0,
            max_retries=self.policy.max_retries,
            created_at=now,
            updated_at=now,
        )
        if not await self.repository.create_payment_attempt(attempt):
            existing = await self.repository.get_payment_attempt_for_challenge(challenge.id)
            return self.decision_for(existing, already_resolved=True)

        log.info(f"Created payment attempt {attempt.id} for {attempt.amount} {attempt.currency}")
        return await self._charge(challenge, attempt, (PaymentStatus.PENDING,), attempt_number=0)

    async def retry(self, challenge: Challenge, attempt: PaymentAttempt) -> SettlementDecision:
        """Retry a declined attempt, unless it already succeeded or ran out of retries."""
        log = challenge_logger(logger, challenge.id)
        if attempt.status is not PaymentStatus.FAILED:
            return self.decision_for(attempt, already_resolved=True)

        now = self.clock.now()
        if self.policy.exhausted(attempt, now):
            log.warning(f"Attempt {attempt.id} exhausted after {attempt.retry_count} retries")
            await self.retire(attempt)
            return self.decision_for(attempt)

        if attempt.external_ref:
            # A charge that was declined synchronously can still succeed later.
            try:
                current = await asyncio.to_thread(self.gateway.retrieve_charge, attempt.external_ref)
            except PaymentProviderError as e:
                log.warning(f"Could not re-read charge {attempt.external_ref}, retry postponed: {e}")
                return self.decision_for(attempt)
            if current.status is ChargeStatus.SUCCEEDED or current.status.in_flight:
                log.info(f"Charge {attempt.external_ref} is now {current.status.value}; adopting it")
                if not await self.repository.claim_payment_attempt(
                        attempt.id, (PaymentStatus.FAILED,), attempt.retry_count, now, attempt.idempotency_key):
                    return await self._reread(attempt.id)
                return await self._record_result(challenge, attempt, current, attempt.retry_count, now)

        return await self._charge(challenge, attempt, (PaymentStatus.FAILED,),
                                  attempt_number=attempt.retry_count + 1)

    async def resume(self, challenge: Challenge, attempt: PaymentAttempt) -> SettlementDecision:
        """Finish an attempt left in flight by a crash, timeout or slow confirmation.

        The provider is asked again under the attempt's own idempotency key, so
        a charge that did go through is returned rather than repeated.
        """
        log = challenge_logger(logger, challenge.id)
        if attempt.status not in IN_FLIGHT_STATUSES:
            return self.decision_for(attempt, already_resolved=True)

        now = self.clock.now()
        if not await self.repository.claim_payment_attempt(
                attempt.id, IN_FLIGHT_STATUSES, attempt.retry_count, now, attempt.idempotency_key,
                untouched_since=now - self.policy.stale_after):
            return await self._reread(attempt.id)

        attempt_number = idempotency.settlement_attempt_number(attempt.idempotency_key)
        log.info(f"Resuming stale attempt {attempt.id} with key {attempt.idempotency_key}")
        try:
            if attempt.external_ref:
                result = await asyncio.to_thread(self.gateway.retrieve_charge, attempt.external_ref)
            else:
                result = await self._send(challenge, attempt, attempt.idempotency_key, attempt_number)
        except PaymentProviderError as e:
            log.warning(f"Provider unavailable while resuming attempt {attempt.id}: {e}")
            settlement_attempts_total.labels(kind='resume', status='unknown').inc()
            if self.policy.outside_window(attempt, now):
                return await self._give_up(challenge, attempt, attempt_number, now, "provider_unavailable")
            return self.decision_for(attempt)
        if result.status.in_flight and self.policy.outside_window(attempt, now):
            return await self._give_up(challenge, attempt, attempt_number, now, result.status.value, result.ref)
        return await self._record_result(challenge, attempt, result, attempt_number, now)

    async def retire(self, attempt: PaymentAttempt) -> bool:
        """Take a failed attempt off the retry schedule."""
        if attempt.status is not PaymentStatus.FAILED or attempt.next_retry_at is None:
            return False
        return await self.repository.update_payment_attempt(
            attempt.id, (PaymentStatus.FAILED,), self.clock.now(), next_retry_at=None,
        )

    async def _give_up(self, challenge: Challenge, attempt: PaymentAttempt, retry_count: int, now: datetime,
                       reason: str, ref: Optional[str] = None) -> SettlementDecision:
        """Close an attempt still unconfirmed at the end of the retry window.

        A provider callback that later reports success is still applied.
        """
        ref = ref or attempt.external_ref
        won = await self.repository.update_payment_attempt(
            attempt.id, (PaymentStatus.PROCESSING,), now,
            status=PaymentStatus.FAILED, external_ref=ref, retry_count=retry_count,
            next_retry_at=None, failure_code=reason,
            failure_message="Charge still unconfirmed when the retry window closed",
        )
        if not won:
            return await self._reread(attempt.id)
        challenge_logger(logger, challenge.id).error(f"Giving up on attempt {attempt.id} ({reason})")
        settlement_attempts_total.labels(kind='resume', status='abandoned').inc()
        return SettlementDecision(outcome=SettlementOutcome.MANUAL_PAYMENT_REQUIRED, attempt_id=attempt.id,
                                  external_ref=ref, retry_count=retry_count, reason=reason)

    async def apply_update(self, challenge: Challenge, attempt: PaymentAttempt,
                           result: ChargeResult) -> SettlementDecision:
        """Apply an asynchronous provider result (webhook) to an attempt."""
        now = self.clock.now()
        if attempt.status is PaymentStatus.SUCCEEDED or result.status.in_flight:
            return self.decision_for(attempt, already_resolved=True)

        if result.status is ChargeStatus.SUCCEEDED:
            expected = (PaymentStatus.PROCESSING, PaymentStatus.PENDING, PaymentStatus.FAILED)
        elif attempt.status is PaymentStatus.PROCESSING:
            expected = (PaymentStatus.PROCESSING,)
        else:
            return self.decision_for(attempt, already_resolved=True)
        attempt_number = idempotency.settlement_attempt_number(attempt.idempotency_key)
        return await self._record_result(challenge, attempt, result, attempt_number, now, expected=expected)

    async def _send(self, challenge: Challenge, attempt: PaymentAttempt, key: str, attempt_number: int) -> ChargeResult:
        if not challenge.customer_ref:
            return ChargeResult(ref=None, status=ChargeStatus.FAILED, failure_code=NO_PAYMENT_METHOD,
                                failure_message="No payment method on file")
        metadata = ChargeMetadata(challenge_id=challenge.id, user_id=challenge.user_id,
                                  attempt_number=attempt_number)
        if key == idempotency.settlement_create(challenge.id):
            return await asyncio.to_thread(self.gateway.create_charge, key, challenge.customer_ref,
                                           attempt.amount, attempt.currency, metadata)
        return await asyncio.to_thread(self.gateway.retry_charge, key, attempt.external_ref,
                                       challenge.customer_ref, attempt.amount, attempt.currency, metadata)

    async def _charge(self, challenge: Challenge, attempt: PaymentAttempt, expected, attempt_number: int):
        log = challenge_logger(logger, challenge.id)
        kind = 'create' if attempt_number == 0 else 'retry'
        key = (idempotency.settlement_create(challenge.id) if attempt_number == 0
               else idempotency.settlement_retry(challenge.id, attempt_number))
        now = self.clock.now()
        if not await self.repository.claim_payment_attempt(attempt.id, expected, attempt.retry_count, now, key):
            log.info(f"Attempt {attempt.id} claimed by another worker")
            return await self._reread(attempt.id)

        try:
            result = await self._send(challenge, attempt, key, attempt_number)
        except PaymentProviderError as e:
            # Outcome unknown: the attempt stays processing and the stale
            # sweep re-sends this same key.
            log.warning(f"Provider call {key} failed, left for stale sweep: {e}")
            settlement_attempts_total.labels(kind=kind, status='unknown').inc()
            if self.policy.outside_window(attempt, now):
                return await self._give_up(challenge, attempt, attempt_number, now, "provider_unavailable")
            return SettlementDecision(
                outcome=SettlementOutcome.PAYMENT_PENDING_RETRY,
                attempt_id=attempt.id,
                external_ref=attempt.external_ref,
                retry_count=attempt.retry_count,
                reason="provider_unavailable",
            )
        return await self._record_result(challenge, attempt, result, attempt_number, now)

    async def _record_result(self, challenge: Challenge, attempt: PaymentAttempt, result: ChargeResult,
                             retry_count: int, now: datetime, expected=(PaymentStatus.PROCESSING,)):
        log = challenge_logger(logger, challenge.id)
        kind = 'create' if retry_count == 0 else 'retry'
        ref = result.ref or attempt.external_ref
        settlement_attempts_total.labels(kind=kind, status=result.status.value).inc()

        if result.status is ChargeStatus.SUCCEEDED:
            won = await self.repository.update_payment_attempt(
                attempt.id, expected, now,
                status=PaymentStatus.SUCCEEDED, external_ref=ref, retry_count=retry_count,
                next_retry_at=None, failure_code=None, failure_message=None,
            )
            if not won:
                return await self._reread(attempt.id)
            log.info(f"Penalty charged ({ref})")
            return SettlementDecision(outcome=SettlementOutcome.PENALTY_CHARGED, attempt_id=attempt.id,
                                      external_ref=ref, retry_count=retry_count)

        if result.status.in_flight:
            won = await self.repository.update_payment_attempt(
                attempt.id, expected, now,
                status=PaymentStatus.PROCESSING, external_ref=ref, retry_count=retry_count,
            )
            if not won:
                return await self._reread(attempt.id)
            log.info(f"Charge {ref} awaiting provider confirmation")
            return SettlementDecision(outcome=SettlementOutcome.PAYMENT_PENDING_RETRY, attempt_id=attempt.id,
                                      external_ref=ref, retry_count=retry_count, reason=result.status.value)

        # Declined or canceled by the provider.
        exhausted = retry_count >= attempt.max_retries or self.policy.outside_window(attempt, now)
        next_retry_at = None if exhausted else self.policy.next_retry_at(retry_count, now, attempt.next_retry_at)
        won = await self.repository.update_payment_attempt(
            attempt.id, expected, now,
            status=PaymentStatus.FAILED, external_ref=ref, retry_count=retry_count,
            next_retry_at=next_retry_at,
            failure_code=result.failure_code or result.status.value,
            failure_message=result.failure_message,
        )
        if not won:
            return await self._reread(attempt.id)

        if exhausted:
            log.error(f"Charge declined ({result.failure_code}); retries exhausted at {retry_count}")
            outcome = SettlementOutcome.MANUAL_PAYMENT_REQUIRED
        else:
            log.warning(f"Charge declined ({result.failure_code}); retry {retry_count + 1} at {next_retry_at.isoformat()}")
            outcome = SettlementOutcome.PAYMENT_PENDING_RETRY
        return SettlementDecision(outcome=outcome, attempt_id=attempt.id, external_ref=ref,
                                  retry_count=retry_count, declined=True,
                                  reason=result.failure_code or result.status.value)
