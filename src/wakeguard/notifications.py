"""Fire-and-forget notification enqueueing.

The engine never waits on delivery. An outbox row is written per
``(challenge, kind)``; a push service outside this package picks rows up and
retires them.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .metrics import notifications_total
from .models.base import new_id
from .models.notification import NotificationKind, NotificationRequest, NotificationStatus
from .utils import idempotency
from .utils.logging import setup_logger

logger = setup_logger(__name__)


class NotificationQueue(ABC):
    @abstractmethod
    async def enqueue(self, challenge_id: str, kind: NotificationKind, scheduled_at: datetime) -> bool:
        """Queue a notification; False if an identical one was already queued."""


class OutboxNotificationQueue(NotificationQueue):
    def __init__(self, repository):
        self._repository = repository

    async def enqueue(self, challenge_id, kind, scheduled_at):
        request = NotificationRequest(
            id=new_id(),
            challenge_id=challenge_id,
            kind=kind,
            idempotency_key=idempotency.notification(challenge_id, kind.value),
            scheduled_at=scheduled_at,
            status=NotificationStatus.PENDING,
            created_at=scheduled_at,
            updated_at=scheduled_at,
        )
        created = await self._repository.add_notification(request)
        if not created:
            logger.debug(f"Notification {request.idempotency_key} already queued")
        return created


async def notify(queue: NotificationQueue, challenge_id: str, kind: NotificationKind, now: datetime) -> None:
    """Enqueue without letting a delivery-side failure affect the caller."""
    try:
        created = await queue.enqueue(challenge_id, kind, now)
        notifications_total.labels(kind=kind.value, status='queued' if created else 'duplicate').inc()
    except Exception as e:
        notifications_total.labels(kind=kind.value, status='error').inc()
        logger.error(f"Failed to enqueue {kind.value} notification for challenge {challenge_id}: {e}")
