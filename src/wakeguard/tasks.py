# src/wakeguard/tasks.py

import asyncio
import time

from .celery_app import celery_app
from .config import settings
from .dependencies import build_engine
from .errors import TransientError
from .metrics import task_total, task_duration
from .models.database import create_db_engine, create_session_factory
from .sweeps import ExpiryReconciler, RetrySweeper
from .utils.logging import setup_logger

logger = setup_logger(__name__, level=settings.log_level)


async def _with_engine(work):
    """Run ``work(engine)`` against a fresh non-pooled database engine.

    Every task invocation gets its own event loop, so connections cannot be
    shared between runs.
    """
    db_engine = create_db_engine(pooled=False)
    engine = build_engine(create_session_factory(db_engine))
    try:
        return await work(engine)
    finally:
        engine.settlement.gateway.close()
        await db_engine.dispose()


def _run_task(task, task_name: str, work):
    start_time = time.time()
    task_total.labels(task_name=task_name, status='started').inc()
    try:
        result = asyncio.run(_with_engine(work))
        task_total.labels(task_name=task_name, status='success').inc()
        return result
    except TransientError as e:
        logger.warning(f"{task_name} hit a transient error, retrying: {e}")
        task_total.labels(task_name=task_name, status='retry').inc()
        raise task.retry(exc=e, countdown=30)
    except Exception as e:
        logger.error(f"Error in {task_name}: {e}")
        task_total.labels(task_name=task_name, status='error').inc()
        raise
    finally:
        task_duration.labels(task_name=task_name).observe(time.time() - start_time)


@celery_app.task(name="reconcile_expired_challenges", bind=True, max_retries=3)
def reconcile_expired_challenges(self):
    """Activate started challenges, fail expired ones, resume stranded ones."""
    async def work(engine):
        report = await ExpiryReconciler(engine).run()
        return report.as_dict()

    return _run_task(self, "reconcile_expired_challenges", work)


@celery_app.task(name="retry_failed_payments", bind=True, max_retries=3)
def retry_failed_payments(self):
    """Retry declined charges that are due and resume stale in-flight ones."""
    async def work(engine):
        report = await RetrySweeper(engine).run()
        return report.as_dict()

    return _run_task(self, "retry_failed_payments", work)


@celery_app.task(name="retry_payment", bind=True, max_retries=3)
def retry_payment(self, attempt_id: str):
    """User-initiated retry of one declined charge."""
    async def work(engine):
        outcome = await engine.retry_payment(attempt_id)
        return {
            "challenge_id": outcome.challenge_id,
            "status": outcome.status.value,
            "outcome": outcome.outcome.value if outcome.outcome else None,
            "already_resolved": outcome.already_resolved,
        }

    return _run_task(self, "retry_payment", work)
