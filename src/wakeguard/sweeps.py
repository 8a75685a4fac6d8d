"""Periodic drivers over the engine.

Both sweepers are stateless: each run scans for due rows and hands every id to
the engine, which owns all the conditional writes. Running two sweeps at once
(or a sweep next to a user request) is safe; the loser of any race is counted
as ``already_resolved``.
"""

from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, List

from .config import settings
from .errors import TerminalSettlementFailure
from .state_machine import ChallengeEngine
from .utils.logging import setup_logger

logger = setup_logger(__name__)


@dataclass
class SweepReport:
    name: str
    examined: int = 0
    processed: int = 0
    already_resolved: int = 0
    failed: int = 0
    terminal_failures: int = 0

    def merge(self, other: "SweepReport") -> "SweepReport":
        for field in ("examined", "processed", "already_resolved", "failed", "terminal_failures"):
            setattr(self, field, getattr(self, field) + getattr(other, field))
        return self

    def as_dict(self) -> dict:
        return asdict(self)


async def _drive(name: str, ids: List[str], step: Callable[[str], Awaitable]) -> SweepReport:
    """Run ``step`` for each id; one bad row never stops the batch."""
    report = SweepReport(name=name, examined=len(ids))
    for record_id in ids:
        try:
            outcome = await step(record_id)
        except TerminalSettlementFailure as e:
            report.processed += 1
            report.terminal_failures += 1
            logger.error(f"{name}: {e}")
            continue
        except Exception as e:
            report.failed += 1
            logger.error(f"{name}: error processing {record_id}: {e}")
            continue
        if getattr(outcome, "already_resolved", False):
            report.already_resolved += 1
        else:
            report.processed += 1
    if ids:
        logger.info(f"{name}: {report.as_dict()}")
    return report


class ExpiryReconciler:
    def __init__(self, engine: ChallengeEngine, batch_size: int = None):
        self.engine = engine
        self.batch_size = batch_size or settings.sweep_batch_size

    async def activate_started(self) -> SweepReport:
        ids = await self.engine.repository.find_startable_challenge_ids(self.engine.clock.now(), self.batch_size)
        return await _drive("activation", ids, self.engine.activate)

    async def expire_overdue(self) -> SweepReport:
        ids = await self.engine.repository.find_expired_challenge_ids(self.engine.clock.now(), self.batch_size)
        return await _drive("expiry", ids, self.engine.reconcile_expired)

    async def resume_stranded(self) -> SweepReport:
        since = self.engine.clock.now() - self.engine.settlement.policy.stale_after
        ids = await self.engine.repository.find_stranded_challenge_ids(since, self.batch_size)
        return await _drive("stranded", ids, self.engine.resume_settlement)

    async def run(self) -> SweepReport:
        report = SweepReport(name="reconcile")
        report.merge(await self.activate_started())
        report.merge(await self.expire_overdue())
        report.merge(await self.resume_stranded())
        return report


class RetrySweeper:
    def __init__(self, engine: ChallengeEngine, batch_size: int = None):
        self.engine = engine
        self.batch_size = batch_size or settings.sweep_batch_size

    async def retry_due(self) -> SweepReport:
        ids = await self.engine.repository.find_due_retry_ids(self.engine.clock.now(), self.batch_size)
        return await _drive("retry", ids, self.engine.retry_payment)

    async def resume_stale(self) -> SweepReport:
        since = self.engine.clock.now() - self.engine.settlement.policy.stale_after
        ids = await self.engine.repository.find_stale_attempt_ids(since, self.batch_size)
        return await _drive("stale", ids, self.engine.resume_payment)

    async def run(self) -> SweepReport:
        report = SweepReport(name="retry_sweep")
        report.merge(await self.retry_due())
        report.merge(await self.resume_stale())
        return report
