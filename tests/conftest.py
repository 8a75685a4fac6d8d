import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from wakeguard.clients.payments import ChargeResult, ChargeStatus, PaymentGateway
from wakeguard.errors import PaymentProviderError
from wakeguard.models.base import new_id
from wakeguard.models.challenge import Challenge, ChallengeStatus, LocationPing, PingSource
from wakeguard.models.payment import IN_FLIGHT_STATUSES, PaymentStatus
from wakeguard.notifications import NotificationQueue
from wakeguard.repository import (
    CHALLENGE_MUTABLE_FIELDS,
    PAYMENT_MUTABLE_FIELDS,
    ChallengeRepository,
    _check_fields,
)
from wakeguard.settlement import RetryPolicy, SettlementService
from wakeguard.state_machine import ChallengeEngine
from wakeguard.utils import idempotency
from wakeguard.utils.timeutils import Clock, as_utc

# 06:00 in Tokyo
T0 = datetime(2026, 1, 5, 21, 0, tzinfo=timezone.utc)

# Tokyo Station
TARGET = (35.681236, 139.767125)


class FrozenClock(Clock):
    def __init__(self, now: datetime):
        self._now = now

    def now(self):
        return self._now

    def advance(self, **kwargs):
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, now: datetime):
        self._now = now


def _copy(row):
    if row is None:
        return None
    return type(row)(**{c.key: getattr(row, c.key) for c in row.__table__.columns})


class InMemoryChallengeRepository(ChallengeRepository):
    """Dict-backed repository with the same conditional-write semantics.

    Reads yield to the event loop first so that concurrent callers interleave;
    each conditional write checks and sets without yielding.
    """

    def __init__(self):
        self.challenges = {}
        self.attempts = {}
        self.pings = []
        self.notifications = {}

    def put_challenge(self, challenge):
        self.challenges[challenge.id] = _copy(challenge)

    def stored(self, challenge_id):
        return self.challenges[challenge_id]

    def attempt_for(self, challenge_id):
        return next((a for a in self.attempts.values() if a.challenge_id == challenge_id), None)

    async def get_challenge(self, challenge_id):
        await asyncio.sleep(0)
        return _copy(self.challenges.get(challenge_id))

    async def add_challenge(self, challenge):
        self.put_challenge(challenge)
        return challenge

    async def transition_challenge(self, challenge_id, expected, new_status, now, **fields):
        _check_fields(fields, CHALLENGE_MUTABLE_FIELDS)
        await asyncio.sleep(0)
        row = self.challenges.get(challenge_id)
        if row is None or row.status not in tuple(expected):
            return False
        row.status = new_status
        row.updated_at = max(as_utc(row.updated_at), now)
        for key, value in fields.items():
            setattr(row, key, value)
        return True

    async def update_challenge(self, challenge_id, now, **fields):
        _check_fields(fields, CHALLENGE_MUTABLE_FIELDS)
        row = self.challenges[challenge_id]
        row.updated_at = max(as_utc(row.updated_at), now)
        for key, value in fields.items():
            setattr(row, key, value)

    async def find_startable_challenge_ids(self, now, limit):
        return [c.id for c in self.challenges.values()
                if c.status is ChallengeStatus.SCHEDULED and c.start_at <= now <= c.end_at][:limit]

    async def find_expired_challenge_ids(self, now, limit):
        return [c.id for c in self.challenges.values()
                if c.status in (ChallengeStatus.SCHEDULED, ChallengeStatus.ACTIVE) and c.end_at < now][:limit]

    def _awaiting_payment_sweep(self, challenge_id):
        attempt = self.attempt_for(challenge_id)
        if attempt is None:
            return False
        return attempt.status in IN_FLIGHT_STATUSES or (
            attempt.status is PaymentStatus.FAILED and attempt.next_retry_at is not None)

    async def find_stranded_challenge_ids(self, untouched_since, limit):
        return [c.id for c in self.challenges.values()
                if as_utc(c.updated_at) <= untouched_since
                and (c.status is ChallengeStatus.SUCCESS
                     or (c.status is ChallengeStatus.FAIL and not self._awaiting_payment_sweep(c.id)))][:limit]

    async def get_payment_attempt(self, attempt_id):
        await asyncio.sleep(0)
        return _copy(self.attempts.get(attempt_id))

    async def get_payment_attempt_for_challenge(self, challenge_id):
        await asyncio.sleep(0)
        return _copy(self.attempt_for(challenge_id))

    async def get_payment_attempt_by_ref(self, external_ref):
        await asyncio.sleep(0)
        return _copy(next((a for a in self.attempts.values() if a.external_ref == external_ref), None))

    async def create_payment_attempt(self, attempt):
        await asyncio.sleep(0)
        if self.attempt_for(attempt.challenge_id) is not None:
            return False
        self.attempts[attempt.id] = _copy(attempt)
        return True

    async def claim_payment_attempt(self, attempt_id, expected, retry_count, now, idempotency_key,
                                    untouched_since=None):
        await asyncio.sleep(0)
        row = self.attempts.get(attempt_id)
        if row is None or row.status not in tuple(expected) or row.retry_count != retry_count:
            return False
        if untouched_since is not None and row.last_attempt_at is not None \
                and as_utc(row.last_attempt_at) > untouched_since:
            return False
        row.status = PaymentStatus.PROCESSING
        row.idempotency_key = idempotency_key
        row.last_attempt_at = now
        row.updated_at = now
        return True

    async def update_payment_attempt(self, attempt_id, expected, now, **fields):
        _check_fields(fields, PAYMENT_MUTABLE_FIELDS)
        await asyncio.sleep(0)
        row = self.attempts.get(attempt_id)
        if row is None or row.status not in tuple(expected):
            return False
        row.updated_at = now
        for key, value in fields.items():
            setattr(row, key, value)
        return True

    async def find_due_retry_ids(self, now, limit):
        return [a.id for a in self.attempts.values()
                if a.status is PaymentStatus.FAILED and a.retry_count < a.max_retries
                and a.next_retry_at is not None and as_utc(a.next_retry_at) <= now][:limit]

    async def find_stale_attempt_ids(self, untouched_since, limit):
        return [a.id for a in self.attempts.values()
                if a.status in IN_FLIGHT_STATUSES
                and as_utc(a.last_attempt_at or a.created_at) <= untouched_since][:limit]

    async def add_location_ping(self, ping):
        self.pings.append(_copy(ping))
        return ping

    async def add_notification(self, request):
        if request.idempotency_key in self.notifications:
            return False
        self.notifications[request.idempotency_key] = _copy(request)
        return True


class ScriptedGateway(PaymentGateway):
    """Provider double that honors idempotency keys like a real processor.

    Each new key consumes the next scripted item (a ``ChargeStatus`` or an
    exception); a repeated key returns the first result for that key.
    """

    def __init__(self):
        self.script = []
        self.default = ChargeStatus.SUCCEEDED
        self.by_key = {}
        self.by_ref = {}
        self.calls = []

    def queue(self, *items):
        self.script.extend(items)

    def queue_lost(self, status):
        """The provider processes the charge but the response never arrives."""
        self.script.append(("lost", status))

    @property
    def succeeded_charges(self):
        return [r for r in self.by_key.values() if r.status is ChargeStatus.SUCCEEDED]

    def _result(self, status, ref):
        if status is ChargeStatus.FAILED:
            return ChargeResult(ref=ref, status=status, failure_code="card_declined",
                                failure_message="Your card was declined.")
        return ChargeResult(ref=ref, status=status)

    def _charge(self, key, ref=None):
        if key in self.by_key:
            return self.by_key[key]
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        lost = isinstance(item, tuple)
        status = item[1] if lost else item
        result = self._result(status, ref or f"ch_{len(self.by_ref) + 1}")
        self.by_key[key] = result
        self.by_ref[result.ref] = result
        if lost:
            raise PaymentProviderError("read timed out")
        return result

    def create_charge(self, idempotency_key, customer_ref, amount, currency, metadata):
        self.calls.append(("create", idempotency_key))
        return self._charge(idempotency_key)

    def retrieve_charge(self, ref):
        self.calls.append(("retrieve", ref))
        return self.by_ref[ref]

    def retry_charge(self, idempotency_key, previous_ref, customer_ref, amount, currency, metadata):
        self.calls.append(("retry", idempotency_key))
        return self._charge(idempotency_key, ref=previous_ref)

    def settle_ref(self, ref, status):
        """The provider finishes a charge out of band."""
        self.by_ref[ref] = self._result(status, ref)
        for key, result in self.by_key.items():
            if result.ref == ref:
                self.by_key[key] = self.by_ref[ref]


class RecordingNotifier(NotificationQueue):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def enqueue(self, challenge_id, kind, scheduled_at):
        if self.fail:
            raise ConnectionError("push service unavailable")
        key = idempotency.notification(challenge_id, kind.value)
        if key in {k for k, _ in self.sent}:
            return False
        self.sent.append((key, kind))
        return True

    def kinds(self):
        return [kind for _, kind in self.sent]


@pytest.fixture
def clock():
    return FrozenClock(T0 + timedelta(minutes=30))


@pytest.fixture
def repo():
    return InMemoryChallengeRepository()


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def policy():
    return RetryPolicy()


@pytest.fixture
def settlement(repo, gateway, clock, policy):
    return SettlementService(repo, gateway, clock, policy)


@pytest.fixture
def engine(repo, settlement, notifier, clock):
    return ChallengeEngine(repo, settlement, notifier, clock)


@pytest.fixture
def make_challenge(repo):
    def _make(**overrides):
        fields = dict(
            id=new_id(),
            user_id="user-1",
            customer_ref="cus_123",
            start_at=T0,
            end_at=T0 + timedelta(hours=2),
            home_lat=35.6580,
            home_lng=139.7016,
            target_lat=TARGET[0],
            target_lng=TARGET[1],
            target_radius_meters=100.0,
            penalty_amount=1000,
            currency="jpy",
            payment_intent_ref=None,
            status=ChallengeStatus.ACTIVE,
            failure_reason=None,
            judged_at=None,
            judgment_passed=None,
            judged_distance_meters=None,
            settled_at=None,
            settlement_outcome=None,
            payment_unresolved=False,
            created_at=T0 - timedelta(days=1),
            updated_at=T0 - timedelta(days=1),
        )
        fields.update(overrides)
        challenge = Challenge(**fields)
        repo.put_challenge(challenge)
        return challenge
    return _make


@pytest.fixture
def make_ping(clock):
    def _make(challenge, lat=TARGET[0], lng=TARGET[1], accuracy_meters=10.0, observed_at=None, is_valid=True):
        return LocationPing(
            id=new_id(),
            challenge_id=challenge.id,
            lat=lat,
            lng=lng,
            accuracy_meters=accuracy_meters,
            observed_at=observed_at or clock.now(),
            source=PingSource.GPS,
            is_valid=is_valid,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
    return _make
