from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from sharegate.errors import ShareGateError
from sharegate.repos.grant_ledger import GrantLedger
from sharegate.services.events import EventPublisher
from sharegate.services.purger import GrantPurger
from sharegate.telemetry.logging import get_logger
from sharegate.telemetry.metrics import sweep_duration_seconds, sweeps_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    found: int
    cleaned: int
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ReconciliationSweeper:
    """Finds terminal grants and purges them one by one.

    Candidates are rows past their expiry, exhausted rows older than the
    exhausted retention, soft-deleted rows older than the soft-delete
    retention, and ``purged`` rows an earlier purge left behind. A failing
    item is logged and counted; the batch carries on.
    """

    def __init__(
        self,
        ledger: GrantLedger,
        purger: GrantPurger,
        events: EventPublisher,
        *,
        batch_size: int = 500,
        exhausted_retention: timedelta = timedelta(0),
        soft_delete_retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.ledger = ledger
        self.purger = purger
        self.events = events
        self.batch_size = batch_size
        self.exhausted_retention = exhausted_retention
        self.soft_delete_retention = soft_delete_retention
        self.clock = clock

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        t0 = time.perf_counter()
        log = get_logger(action="sweep")

        try:
            candidates = await self.ledger.find_terminal(
                now,
                exhausted_retention=self.exhausted_retention,
                soft_delete_retention=self.soft_delete_retention,
                limit=self.batch_size,
            )
        except ShareGateError as e:
            logger.error("sweep: candidate scan failed: %s", e)
            sweeps_total.labels(outcome="scan_failed").inc()
            return SweepResult(found=0, cleaned=0)

        cleaned = failed = 0
        for grant in candidates:
            try:
                await self.purger.purge(grant)
                cleaned += 1
            except Exception as e:
                failed += 1
                logger.warning("sweep: purge failed for token=%s…: %s", grant.token[:8], e, exc_info=True)

        result = SweepResult(found=len(candidates), cleaned=cleaned, failed=failed)
        dt = time.perf_counter() - t0
        sweep_duration_seconds.observe(dt)
        sweeps_total.labels(outcome="ok" if failed == 0 else "partial").inc()
        log.info("sweep_completed", duration_ms=round(dt * 1000.0, 3), **result.as_dict())
        await self.events.publish("sweep_completed", source="sweeper", payload=result.as_dict())
        return result
