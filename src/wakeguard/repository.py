"""Persistence contract for the engine and its SQLAlchemy implementation.

Every status change is a single conditional write
(``UPDATE ... WHERE id = :id AND status IN (:expected)``); the boolean result
tells the caller whether it won.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, case, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import TransientError
from .models.base import UTCDateTime
from .models.challenge import Challenge, ChallengeStatus, LocationPing, PRE_JUDGMENT_STATUSES
from .models.notification import NotificationRequest
from .models.payment import IN_FLIGHT_STATUSES, PaymentAttempt, PaymentStatus
from .utils.logging import setup_logger

logger = setup_logger(__name__)

# Columns the conditional challenge write may set besides status/updated_at.
CHALLENGE_MUTABLE_FIELDS = frozenset({
    "failure_reason",
    "judged_at",
    "judgment_passed",
    "judged_distance_meters",
    "settled_at",
    "settlement_outcome",
    "payment_unresolved",
    "payment_intent_ref",
})

PAYMENT_MUTABLE_FIELDS = frozenset({
    "external_ref",
    "idempotency_key",
    "status",
    "retry_count",
    "next_retry_at",
    "last_attempt_at",
    "failure_code",
    "failure_message",
})


def _check_fields(fields: dict, allowed: frozenset):
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Fields not writable here: {sorted(unknown)}")


class ChallengeRepository(ABC):
    """Storage operations the engine relies on."""

    # Challenges
    @abstractmethod
    async def get_challenge(self, challenge_id: str) -> Optional[Challenge]: ...

    @abstractmethod
    async def add_challenge(self, challenge: Challenge) -> Challenge: ...

    @abstractmethod
    async def transition_challenge(
        self,
        challenge_id: str,
        expected: Iterable[ChallengeStatus],
        new_status: ChallengeStatus,
        now: datetime,
        **fields,
    ) -> bool:
        """Set ``status=new_status`` only if the current status is in ``expected``."""

    @abstractmethod
    async def update_challenge(self, challenge_id: str, now: datetime, **fields) -> None:
        """Write non-status bookkeeping fields."""

    @abstractmethod
    async def find_startable_challenge_ids(self, now: datetime, limit: int) -> List[str]: ...

    @abstractmethod
    async def find_expired_challenge_ids(self, now: datetime, limit: int) -> List[str]: ...

    @abstractmethod
    async def find_stranded_challenge_ids(self, untouched_since: datetime, limit: int) -> List[str]: ...

    # Payment attempts
    @abstractmethod
    async def get_payment_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]: ...

    @abstractmethod
    async def get_payment_attempt_for_challenge(self, challenge_id: str) -> Optional[PaymentAttempt]: ...

    @abstractmethod
    async def get_payment_attempt_by_ref(self, external_ref: str) -> Optional[PaymentAttempt]: ...

    @abstractmethod
    async def create_payment_attempt(self, attempt: PaymentAttempt) -> bool:
        """Insert ``attempt``; False if the challenge already has one."""

    @abstractmethod
    async def claim_payment_attempt(
        self,
        attempt_id: str,
        expected: Iterable[PaymentStatus],
        retry_count: int,
        now: datetime,
        idempotency_key: str,
        untouched_since: Optional[datetime] = None,
    ) -> bool:
        """Move an attempt to ``processing`` if it is still in ``expected`` at ``retry_count``.

        With ``untouched_since`` the claim also requires that no other caller
        has touched the attempt after that instant.
        """

    @abstractmethod
    async def update_payment_attempt(
        self,
        attempt_id: str,
        expected: Iterable[PaymentStatus],
        now: datetime,
        **fields,
    ) -> bool:
        """Write ``fields`` only if the attempt status is still in ``expected``."""

    @abstractmethod
    async def find_due_retry_ids(self, now: datetime, limit: int) -> List[str]: ...

    @abstractmethod
    async def find_stale_attempt_ids(self, untouched_since: datetime, limit: int) -> List[str]: ...

    # Append-only records
    @abstractmethod
    async def add_location_ping(self, ping: LocationPing) -> LocationPing: ...

    @abstractmethod
    async def add_notification(self, request: NotificationRequest) -> bool:
        """Insert ``request``; False if its idempotency key was already used."""


class SqlAlchemyChallengeRepository(ChallengeRepository):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            logger.error(f"Persistence error: {e}")
            raise TransientError(f"Persistence error: {e}") from e

    @staticmethod
    def _monotonic_updated_at(column, now: datetime):
        now_value = literal(now, UTCDateTime())
        return case((column > now_value, column), else_=now_value)

    async def get_challenge(self, challenge_id):
        async with self._session() as db:
            return await db.get(Challenge, challenge_id)

    async def add_challenge(self, challenge):
        async with self._session() as db:
            db.add(challenge)
            await db.commit()
            return challenge

    async def transition_challenge(self, challenge_id, expected, new_status, now, **fields):
        _check_fields(fields, CHALLENGE_MUTABLE_FIELDS)
        stmt = (
            update(Challenge)
            .where(Challenge.id == challenge_id, Challenge.status.in_(list(expected)))
            .values(
                status=new_status,
                updated_at=self._monotonic_updated_at(Challenge.updated_at, now),
                **fields,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def update_challenge(self, challenge_id, now, **fields):
        _check_fields(fields, CHALLENGE_MUTABLE_FIELDS)
        stmt = (
            update(Challenge)
            .where(Challenge.id == challenge_id)
            .values(updated_at=self._monotonic_updated_at(Challenge.updated_at, now), **fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            await db.execute(stmt)
            await db.commit()

    async def find_startable_challenge_ids(self, now, limit):
        stmt = (
            select(Challenge.id)
            .where(
                Challenge.status == ChallengeStatus.SCHEDULED,
                Challenge.start_at <= now,
                Challenge.end_at >= now,
            )
            .order_by(Challenge.start_at)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars())

    async def find_expired_challenge_ids(self, now, limit):
        stmt = (
            select(Challenge.id)
            .where(Challenge.status.in_(PRE_JUDGMENT_STATUSES), Challenge.end_at < now)
            .order_by(Challenge.end_at)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars())

    async def find_stranded_challenge_ids(self, untouched_since, limit):
        # A fail challenge whose attempt is in flight or scheduled for retry
        # belongs to the retry sweeper.
        stmt = (
            select(Challenge.id)
            .outerjoin(PaymentAttempt, PaymentAttempt.challenge_id == Challenge.id)
            .where(
                Challenge.updated_at <= untouched_since,
                or_(
                    Challenge.status == ChallengeStatus.SUCCESS,
                    and_(
                        Challenge.status == ChallengeStatus.FAIL,
                        or_(
                            PaymentAttempt.id.is_(None),
                            PaymentAttempt.status.in_([PaymentStatus.SUCCEEDED, PaymentStatus.CANCELED]),
                            and_(
                                PaymentAttempt.status == PaymentStatus.FAILED,
                                PaymentAttempt.next_retry_at.is_(None),
                            ),
                        ),
                    ),
                ),
            )
            .order_by(Challenge.updated_at)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars())

    async def get_payment_attempt(self, attempt_id):
        async with self._session() as db:
            return await db.get(PaymentAttempt, attempt_id)

    async def get_payment_attempt_for_challenge(self, challenge_id):
        stmt = select(PaymentAttempt).where(PaymentAttempt.challenge_id == challenge_id)
        async with self._session() as db:
            return (await db.execute(stmt)).scalars().first()

    async def get_payment_attempt_by_ref(self, external_ref):
        stmt = select(PaymentAttempt).where(PaymentAttempt.external_ref == external_ref)
        async with self._session() as db:
            return (await db.execute(stmt)).scalars().first()

    async def create_payment_attempt(self, attempt):
        try:
            async with self._session() as db:
                db.add(attempt)
                await db.commit()
                return True
        except IntegrityError:
            logger.info(f"Payment attempt for challenge {attempt.challenge_id} already exists")
            return False

    async def claim_payment_attempt(self, attempt_id, expected, retry_count, now, idempotency_key,
                                    untouched_since=None):
        conditions = [
            PaymentAttempt.id == attempt_id,
            PaymentAttempt.status.in_(list(expected)),
            PaymentAttempt.retry_count == retry_count,
        ]
        if untouched_since is not None:
            conditions.append(or_(
                PaymentAttempt.last_attempt_at.is_(None),
                PaymentAttempt.last_attempt_at <= untouched_since,
            ))
        stmt = (
            update(PaymentAttempt)
            .where(*conditions)
            .values(
                status=PaymentStatus.PROCESSING,
                idempotency_key=idempotency_key,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def update_payment_attempt(self, attempt_id, expected, now, **fields):
        _check_fields(fields, PAYMENT_MUTABLE_FIELDS)
        stmt = (
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id, PaymentAttempt.status.in_(list(expected)))
            .values(updated_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def find_due_retry_ids(self, now, limit):
        stmt = (
            select(PaymentAttempt.id)
            .where(
                PaymentAttempt.status == PaymentStatus.FAILED,
                PaymentAttempt.retry_count < PaymentAttempt.max_retries,
                PaymentAttempt.next_retry_at <= now,
            )
            .order_by(PaymentAttempt.next_retry_at)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars())

    async def find_stale_attempt_ids(self, untouched_since, limit):
        stmt = (
            select(PaymentAttempt.id)
            .where(
                PaymentAttempt.status.in_(IN_FLIGHT_STATUSES),
                or_(
                    PaymentAttempt.last_attempt_at <= untouched_since,
                    and_(
                        PaymentAttempt.last_attempt_at.is_(None),
                        PaymentAttempt.created_at <= untouched_since,
                    ),
                ),
            )
            .order_by(PaymentAttempt.created_at)
            .limit(limit)
        )
        async with self._session() as db:
            return list((await db.execute(stmt)).scalars())

    async def add_location_ping(self, ping):
        async with self._session() as db:
            db.add(ping)
            await db.commit()
            return ping

    async def add_notification(self, request):
        try:
            async with self._session() as db:
                db.add(request)
                await db.commit()
                return True
        except IntegrityError:
            return False
