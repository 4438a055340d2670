"""Periodic settlement of auctions whose end time has passed.

On-read and on-bid settlement in the engine are opportunistic; this job is
what guarantees every due auction eventually reaches sold or unsold. Several
sweepers may run at once: each settlement is a conditional write, so only
one of them wins per auction and the others see the terminal state.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock, SystemClock
from .contracts import AuctionRepository
from .engine import AuctionEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    settled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SettlementSweeper:
    def __init__(
        self,
        engine: AuctionEngine,
        repository: Optional[AuctionRepository] = None,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
    ) -> None:
        self.engine = engine
        self.repository = repository or engine.repository
        self.clock = clock or engine.clock or SystemClock()
        self.batch_size = batch_size
        self._scheduler: Optional[AsyncIOScheduler] = None
        # Auctions whose settlement failed on an earlier run; tried after fresh ones.
        self._failing: Set[str] = set()

    async def sweep_once(self) -> SweepReport:
        """Settle one batch of due auctions. Failures are logged per auction.

        Auctions that failed on an earlier run go to the back of the batch, so
        a set of persistently failing auctions cannot hold back newer ones.
        """
        report = SweepReport()
        limit = self.batch_size + len(self._failing)
        due = await self.engine.with_timeout(self.repository.find_due(self.clock.now(), limit=limit))
        fresh = [a for a in due if a.id not in self._failing]
        retried = [a for a in due if a.id in self._failing]
        batch = (fresh + retried)[:self.batch_size]
        report.examined = len(batch)

        for auction in batch:
            try:
                settled = await self.engine.settle_if_due(auction.id)
                if settled.data.status.is_terminal:
                    report.settled.append(auction.id)
            except Exception as e:
                report.failed.append(auction.id)
                logger.error(f"Settlement failed for auction {auction.id}: {e}", exc_info=True)

        still_due = {a.id for a in due}
        self._failing = ((self._failing - {a.id for a in batch}) & still_due) | set(report.failed)

        if report.examined:
            logger.info(
                f"Settlement sweep: {report.examined} due, {len(report.settled)} settled, "
                f"{len(report.failed)} failed"
            )
        return report

    async def _job(self) -> None:
        try:
            await self.sweep_once()
        except Exception as e:
            logger.error(f"Settlement sweep failed: {e}", exc_info=True)

    def start(self, interval_seconds: float = 30) -> AsyncIOScheduler:
        """Run ``sweep_once`` every *interval_seconds* on the running event loop."""
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id="settlement_sweep",
            name="Auction Settlement Sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Settlement sweeper started (every {interval_seconds}s, batch {self.batch_size})")
        return self._scheduler

    def shutdown(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Settlement sweeper shut down")

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
