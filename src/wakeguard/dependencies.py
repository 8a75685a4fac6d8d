from functools import lru_cache

from .clients.payments import HttpPaymentGateway, PaymentGateway
from .notifications import OutboxNotificationQueue
from .repository import SqlAlchemyChallengeRepository
from .settlement import RetryPolicy, SettlementService
from .state_machine import ChallengeEngine
from .utils.timeutils import Clock, SystemClock


def build_engine(session_factory, clock: Clock = None, gateway: PaymentGateway = None,
                 policy: RetryPolicy = None) -> ChallengeEngine:
    """Wire the engine over a SQLAlchemy session factory."""
    clock = clock or SystemClock()
    repository = SqlAlchemyChallengeRepository(session_factory)
    settlement = SettlementService(repository, gateway or HttpPaymentGateway(), clock, policy)
    return ChallengeEngine(repository, settlement, OutboxNotificationQueue(repository), clock)


@lru_cache()
def get_engine() -> ChallengeEngine:
    """Engine for the HTTP app, bound to the shared pooled session factory."""
    from .models.database import async_session
    return build_engine(async_session)
